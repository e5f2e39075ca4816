"""
Request interceptors gluing the cache core into the request lifecycle.

- Read path: serve GET responses from the response cache, store fresh 2xx
  JSON bodies on a miss.
- Write path: after a successful mutating request, invalidate the caches
  of the entity named by the request path.
- Sessions: load the session named by a request header into request state.
"""

import json
import re
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple, TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from shared.logging import get_logger, set_session_context

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from ..caching.cache_service import CacheService


MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class RouteCachePolicy:
    """TTL and enablement of the response cache for one route pattern."""

    ttl: int
    enabled: bool = True


NO_CACHE = RouteCachePolicy(ttl=0, enabled=False)

# Patterns are matched against the path without its leading slash
CACHE_CONFIGS: Dict[str, RouteCachePolicy] = {
    "api/services": RouteCachePolicy(ttl=3600),
    "api/services/*": RouteCachePolicy(ttl=3600),
    "api/cases": RouteCachePolicy(ttl=1800),
    "api/cases/*": RouteCachePolicy(ttl=1800),
    "api/reviews": RouteCachePolicy(ttl=7200),
    "api/reviews/*": RouteCachePolicy(ttl=7200),
    "api/banners": RouteCachePolicy(ttl=86400),
    "api/settings": RouteCachePolicy(ttl=86400),
    "api/contact": NO_CACHE,
    "api/admin/*": RouteCachePolicy(ttl=300),
}

CACHE_EXEMPT_PATTERNS: List[Pattern[str]] = [
    re.compile(r"/api/contact"),
    re.compile(r"/api/auth"),
    re.compile(r"/api/admin/users"),
    re.compile(r"/api/backup"),
]


def get_cache_policy(path: str, policies: Mapping[str, RouteCachePolicy] = CACHE_CONFIGS) -> RouteCachePolicy:
    """Exact route patterns win over wildcard ones; unknown routes are not cached."""
    route = path.strip("/")
    if route in policies:
        return policies[route]
    for pattern, policy in policies.items():
        if fnmatchcase(route, pattern):
            return policy
    return NO_CACHE


def is_cache_exempt(path: str, patterns: Iterable[Pattern[str]] = CACHE_EXEMPT_PATTERNS) -> bool:
    return any(pattern.search(path) for pattern in patterns)


def extract_entity_info(path: str, api_prefixes: Sequence[str]) -> Optional[Tuple[str, Optional[str]]]:
    """``/api/services/s1`` -> ``("services", "s1")``; None outside the API prefixes."""
    for prefix in sorted((p.rstrip("/") for p in api_prefixes), key=len, reverse=True):
        if path != prefix and not path.startswith(prefix + "/"):
            continue
        segments = [segment for segment in path[len(prefix):].split("/") if segment]
        if not segments:
            return None
        entity_id = segments[1] if len(segments) > 1 else None
        return segments[0], entity_id
    return None


def _primary_locale(accept_language: Optional[str]) -> Optional[str]:
    if not accept_language:
        return None
    locale = accept_language.split(",")[0].split(";")[0].strip().lower()
    return locale or None


def build_request_params(request: Request) -> Dict[str, Any]:
    """Parameter bag that distinguishes cached variants of one endpoint."""
    query: Dict[str, Any] = {}
    for name in request.query_params.keys():
        values = request.query_params.getlist(name)
        query[name] = values[0] if len(values) == 1 else values

    params: Dict[str, Any] = {"query": query}

    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        session = getattr(request.state, "session", None)
        if isinstance(session, dict):
            user_id = session.get("user_id")
    if user_id is not None:
        params["user_id"] = str(user_id)

    locale = _primary_locale(request.headers.get("accept-language"))
    if locale:
        params["locale"] = locale
    return params


class ResponseCacheMiddleware:
    """Read-path interceptor for GET requests."""

    def __init__(
        self,
        cache: "CacheService",
        *,
        policies: Mapping[str, RouteCachePolicy] = CACHE_CONFIGS,
        exempt_patterns: Iterable[Pattern[str]] = CACHE_EXEMPT_PATTERNS,
    ):
        self.cache = cache
        self.policies = policies
        self.exempt_patterns = list(exempt_patterns)
        self.logger = get_logger("cache.middleware.read")

    async def __call__(self, request: Request, call_next):
        path = request.url.path
        if request.method != "GET" or is_cache_exempt(path, self.exempt_patterns):
            return await call_next(request)

        policy = get_cache_policy(path, self.policies)
        if not policy.enabled:
            return await call_next(request)

        endpoint = f"GET {path}"
        params = build_request_params(request)

        cached = await self.cache.get_api_response(endpoint, params)
        if cached is not None:
            self.logger.info("Cache hit for API endpoint", path=path)
            return JSONResponse(
                content=cached.body,
                headers={
                    "X-Cache": "HIT",
                    "X-Cache-Age": str(int(cached.age_seconds)),
                    "X-Cache-TTL": str(cached.ttl_seconds),
                },
            )

        response = await call_next(request)
        content_type = response.headers.get("content-type", "")
        if not 200 <= response.status_code < 300 or "json" not in content_type:
            response.headers["X-Cache"] = "BYPASS"
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        replay = Response(content=body, status_code=response.status_code, background=response.background)
        # Raw headers keep repeated fields such as Set-Cookie
        replay.raw_headers = list(response.raw_headers)
        replay.headers["X-Cache"] = "MISS"
        replay.headers["X-Cache-TTL"] = str(policy.ttl)

        try:
            payload = json.loads(body)
        except ValueError:
            self.logger.debug("Response body is not JSON, not caching", path=path)
        else:
            if await self.cache.cache_api_response(endpoint, params, payload, policy.ttl):
                replay.headers["X-Cache-Status"] = "STORED"

        return replay


class CacheInvalidationMiddleware:
    """Write-path interceptor for mutating requests."""

    def __init__(self, cache: "CacheService", *, api_prefixes: Sequence[str] = ("/api/admin", "/api")):
        self.cache = cache
        self.api_prefixes = list(api_prefixes)
        self.logger = get_logger("cache.middleware.write")

    async def __call__(self, request: Request, call_next):
        response = await call_next(request)
        if request.method not in MUTATING_METHODS or not 200 <= response.status_code < 300:
            return response

        entity = extract_entity_info(request.url.path, self.api_prefixes)
        if entity is None:
            return response

        entity_type, entity_id = entity
        result = await self.cache.invalidate_related_with_report(entity_type, entity_id)
        if result.deleted:
            self.logger.info(
                "Cache invalidated after data modification",
                entity_type=result.entity_type,
                entity_id=entity_id,
                invalidated=result.deleted,
                path=request.url.path,
            )
            response.headers["X-Cache-Invalidated"] = "true"
            response.headers["X-Cache-Invalidated-Count"] = str(result.deleted)
        return response


class SessionMiddleware:
    """Attach the session named by a request header to ``request.state.session``."""

    def __init__(self, cache: "CacheService", *, header: str = "X-Session-Id"):
        self.cache = cache
        self.header = header
        self.logger = get_logger("cache.middleware.session")

    async def __call__(self, request: Request, call_next):
        request.state.session = None
        session_id = request.headers.get(self.header)
        if session_id:
            set_session_context(session_id)
            session = await self.cache.get_session(session_id)
            if session is not None:
                request.state.session = session
                self.logger.debug("Session loaded", session_id=session_id)
        return await call_next(request)


def install_cache_middleware(app: FastAPI, cache: "CacheService", config: "BaseConfig") -> None:
    """Register the interceptors enabled by configuration.

    Starlette runs the last registered middleware first, so the session
    interceptor is added last to populate request state before the read path
    derives its parameters.
    """
    if config.enable_invalidation:
        app.middleware("http")(CacheInvalidationMiddleware(cache, api_prefixes=config.api_prefixes))
    if config.enable_response_cache:
        app.middleware("http")(ResponseCacheMiddleware(cache))
    if config.enable_sessions:
        app.middleware("http")(SessionMiddleware(cache, header=config.session_header))
