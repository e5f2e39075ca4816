"""
Shared configuration management for the site cache service.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="SITECACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Backing store
    cache_backend: str = Field(default="redis", description="redis, memory or none")
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(default=2.0)

    # Key namespaces
    cache_key_prefix: str = Field(default="api")
    session_key_prefix: str = Field(default="session")

    # Expiry defaults (seconds)
    default_response_ttl: int = Field(default=3600)
    default_session_ttl: int = Field(default=86400)

    # Request interceptors
    api_prefixes: List[str] = Field(default_factory=lambda: ["/api/admin", "/api"])
    session_header: str = Field(default="X-Session-Id")
    enable_response_cache: bool = Field(default=True)
    enable_invalidation: bool = Field(default=True)
    enable_sessions: bool = Field(default=True)

    # Administrative surface
    admin_api_enabled: bool = Field(default=True)

    @property
    def effective_backend(self) -> str:
        """Backend actually used; an empty Redis URL disables caching."""
        backend = self.cache_backend.lower()
        if backend == "redis" and not self.redis_url:
            return "none"
        return backend


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
