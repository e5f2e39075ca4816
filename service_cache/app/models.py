"""
Request models for the administrative cache API.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AdminRequest(BaseModel):
    """Accepts both snake_case and camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SetValueRequest(AdminRequest):
    value: Any = None
    ttl: int = Field(default=3600, gt=0)


class PatternInvalidationRequest(AdminRequest):
    pattern: Optional[str] = None


class RelatedInvalidationRequest(AdminRequest):
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None


class ApiResponseRequest(AdminRequest):
    params: Optional[Dict[str, Any]] = None
    response: Any = None
    ttl: int = Field(default=3600, gt=0)


class SessionRequest(AdminRequest):
    data: Any = None
    ttl: int = Field(default=86400, gt=0)
