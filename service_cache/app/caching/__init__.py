"""
Cache core package.

Provides the key codec, backing stores and the logic layers built on top
of them. Every public store operation fails open: an unreachable store
behaves like an empty cache and never fails the caller's request.
"""

from .key_codec import derive_key, fingerprint, canonicalize
from .store import CacheStore, RedisCacheStore, MemoryCacheStore, NullCacheStore, create_cache_store
from .response_cache import ResponseCache, CachedResponse
from .invalidation import InvalidationEngine, InvalidationResult, ENTITY_DEPENDENCIES
from .session_store import SessionStore
from .cache_service import CacheService

__all__ = [
    "derive_key",
    "fingerprint",
    "canonicalize",
    "CacheStore",
    "RedisCacheStore",
    "MemoryCacheStore",
    "NullCacheStore",
    "create_cache_store",
    "ResponseCache",
    "CachedResponse",
    "InvalidationEngine",
    "InvalidationResult",
    "ENTITY_DEPENDENCIES",
    "SessionStore",
    "CacheService",
]
