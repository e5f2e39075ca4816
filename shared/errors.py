"""
Shared error handling for the site cache service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class CacheLayerException(Exception):
    """Base exception for the cache layer."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class StoreUnavailableError(CacheLayerException):
    """Backing store connection down, erroring or timing out."""

    status_code = 503

    def __init__(self, message: str = "Cache store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class KeyDerivationError(CacheLayerException):
    """Request parameters could not be reduced to a cache key."""

    def __init__(self, message: str = "Cannot derive cache key", details: Optional[Dict[str, Any]] = None):
        super().__init__("KEY_DERIVATION_ERROR", message, details)


class ValidationError(CacheLayerException):
    """Validation-related errors."""

    def __init__(self, code: str = "VALIDATION_ERROR", message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class SerializationError(CacheLayerException):
    """Payload could not be encoded for, or decoded from, the backing store."""

    def __init__(self, message: str = "Cache payload is not serializable", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)
