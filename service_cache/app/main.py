"""
Site cache service.

Hosts the request interceptors and the administrative surface that maps
1:1 onto the cache core: direct key access, pattern and entity
invalidation, flush, statistics, response-cache and session operations.
"""

from typing import Dict, Optional

from fastapi import Request

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ValidationError

from .caching.cache_service import CacheService
from .middleware.api_cache import install_cache_middleware
from .models import (
    ApiResponseRequest,
    PatternInvalidationRequest,
    RelatedInvalidationRequest,
    SessionRequest,
    SetValueRequest,
)


class SiteCacheService(BaseService):
    """Cache service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, cache: Optional[CacheService] = None):
        self._injected_cache = cache
        super().__init__("cache", 8020, config)

        if self.config.admin_api_enabled:
            self._setup_cache_routes()

    def _init_components(self) -> None:
        self.cache = self._injected_cache or CacheService.from_config(self.config, metrics=self.metrics)

    def _setup_service_middleware(self) -> None:
        install_cache_middleware(self.app, self.cache, self.config)

    async def startup(self) -> None:
        await super().startup()
        await self.cache.start()

    async def shutdown(self) -> None:
        await self.cache.close()
        await super().shutdown()

    async def _check_dependencies(self) -> Dict[str, str]:
        if not self.cache.store.enabled:
            return {"cache_store": "disabled"}
        return {"cache_store": "ok" if await self.cache.store.ping() else "unavailable"}

    def _setup_cache_routes(self):
        """Set up administrative cache routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "cache",
                "message": "Site cache layer - Cache Service",
                "version": "1.0.0",
                "capabilities": ["response_cache", "invalidation", "sessions"]
            }

        @self.app.get("/cache/status")
        async def cache_status():
            """Cache backend status."""
            return {"data": self.cache.status()}

        @self.app.get("/cache/stats")
        async def cache_stats():
            """Key counts and hit rates."""
            return {"data": await self.cache.stats()}

        @self.app.post("/cache/invalidate")
        async def invalidate_pattern(body: PatternInvalidationRequest):
            """Delete every key matching a glob pattern."""
            if not body.pattern:
                raise ValidationError("MISSING_PATTERN", "Pattern is required")
            deleted = await self.cache.invalidate_pattern(body.pattern)
            return {"data": {"pattern": body.pattern, "deleted_count": deleted}}

        @self.app.post("/cache/invalidate/related")
        async def invalidate_related(body: RelatedInvalidationRequest):
            """Fan-out invalidation for an entity change."""
            if not body.entity_type:
                raise ValidationError("MISSING_ENTITY_TYPE", "Entity type is required")
            result = await self.cache.invalidate_related_with_report(body.entity_type, body.entity_id)
            return {
                "data": {
                    "entity_type": result.entity_type,
                    "entity_id": result.entity_id,
                    "invalidated_count": result.deleted,
                    "failed_patterns": result.failed_patterns,
                }
            }

        @self.app.post("/cache/flush")
        async def flush_cache():
            """Flush the backing store."""
            return {"data": {"success": await self.cache.flush_all()}}

        @self.app.get("/cache/api/{endpoint:path}")
        async def get_api_response(endpoint: str, request: Request):
            """Look up a cached response; query string is the parameter bag."""
            params = dict(request.query_params)
            cached = await self.cache.get_api_response(endpoint, params)
            return {
                "data": {
                    "endpoint": endpoint,
                    "params": params,
                    "response": cached.body if cached else None,
                    "age_seconds": cached.age_seconds if cached else None,
                    "exists": cached is not None,
                }
            }

        @self.app.post("/cache/api/{endpoint:path}")
        async def put_api_response(endpoint: str, body: ApiResponseRequest):
            """Store a response body for an endpoint and parameter bag."""
            if body.params is None or "response" not in body.model_fields_set:
                raise ValidationError("MISSING_DATA", "Params and response are required")
            success = await self.cache.cache_api_response(endpoint, body.params, body.response, body.ttl)
            return {"data": {"endpoint": endpoint, "success": success, "ttl": body.ttl}}

        @self.app.delete("/cache/api/{endpoint:path}")
        async def invalidate_api_endpoint(endpoint: str):
            """Drop every cached parameter variant of an endpoint."""
            deleted = await self.cache.invalidate_endpoint(endpoint)
            return {"data": {"endpoint": endpoint, "deleted_count": deleted}}

        @self.app.get("/cache/keys/{key:path}")
        async def get_key(key: str):
            """Read a raw cache entry."""
            value = await self.cache.get(key)
            return {"data": {"key": key, "value": value, "exists": value is not None}}

        @self.app.post("/cache/keys/{key:path}")
        async def set_key(key: str, body: SetValueRequest):
            """Write a raw cache entry."""
            if "value" not in body.model_fields_set:
                raise ValidationError("MISSING_VALUE", "Value is required")
            success = await self.cache.set(key, body.value, body.ttl)
            return {"data": {"key": key, "success": success, "ttl": body.ttl}}

        @self.app.delete("/cache/keys/{key:path}")
        async def delete_key(key: str):
            """Delete a raw cache entry."""
            return {"data": {"key": key, "success": await self.cache.delete(key)}}

        @self.app.get("/session/{session_id}")
        async def get_session(session_id: str):
            """Read a session and slide its expiry."""
            data = await self.cache.get_session(session_id)
            return {"data": {"session_id": session_id, "session": data, "exists": data is not None}}

        @self.app.post("/session/{session_id}")
        async def set_session(session_id: str, body: SessionRequest):
            """Create or replace a session."""
            if not body.data:
                raise ValidationError("MISSING_SESSION_DATA", "Session data is required")
            success = await self.cache.set_session(session_id, body.data, body.ttl)
            return {"data": {"session_id": session_id, "success": success, "ttl": body.ttl}}

        @self.app.delete("/session/{session_id}")
        async def delete_session(session_id: str):
            """Delete a session."""
            return {"data": {"session_id": session_id, "success": await self.cache.delete_session(session_id)}}


def create_app(config: Optional[ServiceConfig] = None, cache: Optional[CacheService] = None):
    """Create cache service application."""
    service = SiteCacheService(config, cache)
    return service.app


if __name__ == "__main__":
    service = SiteCacheService()
    service.run()
