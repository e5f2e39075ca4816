"""Request interceptors for the cache service."""

from .api_cache import (
    CACHE_CONFIGS,
    CACHE_EXEMPT_PATTERNS,
    CacheInvalidationMiddleware,
    ResponseCacheMiddleware,
    RouteCachePolicy,
    SessionMiddleware,
    install_cache_middleware,
)

__all__ = [
    "CACHE_CONFIGS",
    "CACHE_EXEMPT_PATTERNS",
    "CacheInvalidationMiddleware",
    "ResponseCacheMiddleware",
    "RouteCachePolicy",
    "SessionMiddleware",
    "install_cache_middleware",
]
