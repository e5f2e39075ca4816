"""
Cache service facade.

One instance is built at process start and handed to the request
interceptors, the admin API and the CLI; it owns the backing store and
the logic layers sharing it.
"""

import time
from typing import Any, Dict, Iterable, Mapping, Optional, TYPE_CHECKING

from shared.logging import get_logger
from .invalidation import ENTITY_DEPENDENCIES, InvalidationEngine, InvalidationResult
from .key_codec import DEFAULT_PREFIX
from .response_cache import CachedResponse, ResponseCache
from .session_store import DEFAULT_SESSION_TTL, SessionStore
from .store import CacheStore, Clock, create_cache_store

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from shared.metrics import MetricsCollector


DEFAULT_RESPONSE_TTL = 3600


class CacheService:
    """Entry point for every cache operation in the process."""

    def __init__(
        self,
        store: CacheStore,
        *,
        api_prefix: str = DEFAULT_PREFIX,
        session_prefix: str = "session",
        default_ttl: int = DEFAULT_RESPONSE_TTL,
        default_session_ttl: int = DEFAULT_SESSION_TTL,
        dependencies: Mapping[str, Iterable[str]] = ENTITY_DEPENDENCIES,
        clock: Clock = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.api_prefix = api_prefix
        self.session_prefix = session_prefix
        self.default_ttl = default_ttl
        self.logger = get_logger("cache.service")

        self.responses = ResponseCache(store, prefix=api_prefix, clock=clock, metrics=metrics)
        self.invalidation = InvalidationEngine(
            store,
            api_prefix=api_prefix,
            dependencies=dependencies,
            metrics=metrics,
        )
        self.sessions = SessionStore(
            store,
            prefix=session_prefix,
            default_ttl=default_session_ttl,
            clock=clock,
            metrics=metrics,
        )

    @classmethod
    def from_config(
        cls,
        config: "BaseConfig",
        *,
        clock: Clock = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ) -> "CacheService":
        store = create_cache_store(config, clock=clock, metrics=metrics)
        return cls(
            store,
            api_prefix=config.cache_key_prefix,
            session_prefix=config.session_key_prefix,
            default_ttl=config.default_response_ttl,
            default_session_ttl=config.default_session_ttl,
            clock=clock,
            metrics=metrics,
        )

    async def start(self) -> bool:
        """Probe the backing store; an unreachable store leaves caching inert."""
        if not self.store.enabled:
            self.logger.info("Cache disabled, requests will go straight to origin")
            return False
        connected = await self.store.ping()
        if connected:
            self.logger.info("Cache store connected", backend=self.store.backend_name)
        else:
            self.logger.warning("Cache store unreachable, continuing without cache", backend=self.store.backend_name)
        return connected

    async def close(self) -> None:
        await self.store.close()

    # Direct key operations

    async def get(self, key: str) -> Optional[Any]:
        return await self.store.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        return await self.store.set(key, value, ttl_seconds if ttl_seconds is not None else self.default_ttl)

    async def delete(self, key: str) -> bool:
        return await self.store.delete(key)

    async def exists(self, key: str) -> bool:
        return await self.store.exists(key)

    async def invalidate_pattern(self, pattern: str) -> int:
        return await self.store.delete_pattern(pattern)

    async def flush_all(self) -> bool:
        return await self.store.flush_all()

    # Response cache

    async def get_api_response(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> Optional[CachedResponse]:
        return await self.responses.get_response(endpoint, params)

    async def cache_api_response(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]],
        body: Any,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        return await self.responses.put_response(endpoint, params, body, ttl)

    async def invalidate_endpoint(self, endpoint: str) -> int:
        return await self.responses.invalidate_endpoint(endpoint)

    # Invalidation

    async def invalidate_related(self, entity_type: str, entity_id: Optional[str] = None) -> int:
        return await self.invalidation.invalidate(entity_type, entity_id)

    async def invalidate_related_with_report(self, entity_type: str, entity_id: Optional[str] = None) -> InvalidationResult:
        return await self.invalidation.invalidate_with_report(entity_type, entity_id)

    # Sessions

    async def set_session(self, session_id: str, payload: Any, ttl_seconds: Optional[int] = None) -> bool:
        return await self.sessions.set_session(session_id, payload, ttl_seconds)

    async def get_session(self, session_id: str) -> Optional[Any]:
        return await self.sessions.get_session(session_id)

    async def delete_session(self, session_id: str) -> bool:
        return await self.sessions.delete_session(session_id)

    # Introspection

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.store.enabled,
            "backend": self.store.backend_name,
            "url": self.store.url,
        }

    async def stats(self) -> Dict[str, Any]:
        """Key counts and hit/miss totals for operators."""
        connected = await self.store.ping() if self.store.enabled else False
        if connected:
            keys = {
                "total": await self.store.count("*"),
                "api": await self.store.count(f"{self.api_prefix}:*"),
                "sessions": await self.store.count(f"{self.session_prefix}:*"),
            }
        else:
            keys = {"total": 0, "api": 0, "sessions": 0}

        hits = self.responses.hits + self.sessions.hits
        misses = self.responses.misses + self.sessions.misses
        lookups = hits + misses
        return {
            "enabled": self.store.enabled,
            "connected": connected,
            "backend": self.store.backend_name,
            "keys": keys,
            "hits": {
                "total": hits,
                "misses": misses,
                "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
                "responses": {"hits": self.responses.hits, "misses": self.responses.misses},
                "sessions": {"hits": self.sessions.hits, "misses": self.sessions.misses},
            },
        }
