"""
TTL-indexed key/value stores backing every cache layer.

Backends implement the underscore hooks and are free to raise; the public
methods on :class:`CacheStore` absorb failures, log them at warning level
and return a miss/no-op result instead.
"""

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import CacheLayerException, SerializationError, StoreUnavailableError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from shared.metrics import MetricsCollector


Clock = Callable[[], float]

_GLOB_SPECIALS = "*?[\\"


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Compile a Redis-style glob (``*``, ``?``, ``[...]``, ``\\``) to a regex."""
    parts: List[str] = []
    i = 0
    length = len(pattern)
    while i < length:
        char = pattern[i]
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "\\" and i + 1 < length:
            i += 1
            parts.append(re.escape(pattern[i]))
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(char))
            else:
                body = pattern[i + 1:end]
                if body.startswith("^"):
                    body = "^" + re.escape(body[1:]).replace("\\-", "-")
                else:
                    body = re.escape(body).replace("\\-", "-")
                parts.append(f"[{body}]")
                i = end
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


def literal_prefix(pattern: str) -> str:
    """Longest leading part of a glob pattern without wildcards."""
    for index, char in enumerate(pattern):
        if char in _GLOB_SPECIALS:
            return pattern[:index]
    return pattern


def mask_url(url: Optional[str]) -> Optional[str]:
    """Hide credentials in a connection URL."""
    if not url:
        return None
    parts = urlsplit(url)
    if parts.password or parts.username:
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))
    return url


def encode_payload(value: Any) -> str:
    """Serialize a payload to JSON text."""
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(details={"error": str(exc)}) from exc


def decode_payload(raw: Any) -> Any:
    """Deserialize JSON text produced by :func:`encode_payload`."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise SerializationError("Cached payload is corrupt", details={"error": str(exc)}) from exc


class CacheStore(ABC):
    """Fail-open key/value store with per-key TTL and glob deletion."""

    backend_name = "abstract"

    def __init__(self, metrics: Optional["MetricsCollector"] = None):
        self.logger = get_logger("cache.store")
        self.metrics = metrics

    # Backend hooks. Implementations raise CacheLayerException on failure.

    @abstractmethod
    async def _get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def _set(self, key: str, raw: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def _delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def _exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def _delete_pattern(self, pattern: str) -> int:
        ...

    @abstractmethod
    async def _count(self, pattern: str) -> int:
        ...

    @abstractmethod
    async def _flush(self) -> None:
        ...

    @abstractmethod
    async def _ping(self) -> bool:
        ...

    @property
    def enabled(self) -> bool:
        return True

    @property
    def url(self) -> Optional[str]:
        return None

    async def close(self) -> None:
        """Release backend resources."""
        return None

    def _record_failure(self, operation: str, exc: CacheLayerException, **context) -> None:
        self.logger.warning(
            "Cache store operation failed",
            operation=operation,
            backend=self.backend_name,
            code=exc.code,
            error=exc.message,
            **context,
        )
        if self.metrics:
            self.metrics.increment_counter("cache_store_errors_total", operation=operation)

    # Public API

    async def get(self, key: str) -> Optional[Any]:
        """Return the stored payload, or None when absent, expired or unreachable."""
        try:
            raw = await self._get(key)
            if raw is None:
                return None
            return decode_payload(raw)
        except CacheLayerException as exc:
            self._record_failure("get", exc, key=key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Overwrite ``key`` and restart its TTL clock."""
        if ttl_seconds is None or int(ttl_seconds) <= 0:
            self.logger.debug("Refusing to store entry without positive TTL", key=key, ttl=ttl_seconds)
            return False
        try:
            raw = encode_payload(value)
            await self._set(key, raw, int(ttl_seconds))
            return True
        except CacheLayerException as exc:
            self._record_failure("set", exc, key=key)
            return False

    async def delete(self, key: str) -> bool:
        """Delete a key; True when an entry was removed."""
        try:
            return await self._delete(key)
        except CacheLayerException as exc:
            self._record_failure("delete", exc, key=key)
            return False

    async def exists(self, key: str) -> bool:
        try:
            return await self._exists(key)
        except CacheLayerException as exc:
            self._record_failure("exists", exc, key=key)
            return False

    async def delete_pattern(self, pattern: str, strict: bool = False) -> int:
        """Delete every key matching a glob pattern and return the count.

        With ``strict`` the failure is raised so fan-out callers can tell a
        failed pattern apart from one that matched nothing.
        """
        try:
            return await self._delete_pattern(pattern)
        except CacheLayerException as exc:
            if strict:
                raise
            self._record_failure("delete_pattern", exc, pattern=pattern)
            return 0

    async def count(self, pattern: str = "*") -> int:
        try:
            return await self._count(pattern)
        except CacheLayerException as exc:
            self._record_failure("count", exc, pattern=pattern)
            return 0

    async def flush_all(self) -> bool:
        try:
            await self._flush()
        except CacheLayerException as exc:
            self._record_failure("flush_all", exc)
            return False
        self.logger.info("Cache flushed", backend=self.backend_name)
        return True

    async def ping(self) -> bool:
        try:
            return await self._ping()
        except CacheLayerException as exc:
            self._record_failure("ping", exc)
            return False


class RedisCacheStore(CacheStore):
    """Redis backend using SETEX for physical expiry and SCAN for patterns."""

    backend_name = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 2.0,
        scan_count: int = 500,
        metrics: Optional["MetricsCollector"] = None,
    ):
        super().__init__(metrics)
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.scan_count = scan_count
        self._redis: Optional[redis.Redis] = None

    @property
    def url(self) -> Optional[str]:
        return mask_url(self.redis_url)

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30,
            )
        return self._redis

    async def _call(self, operation: str, func: Callable[[redis.Redis], Any]) -> Any:
        try:
            client = await self._get_redis()
            return await func(client)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StoreUnavailableError(details={"operation": operation, "error": str(exc)}) from exc
        except UnicodeDecodeError as exc:
            raise SerializationError("Cached payload is not UTF-8", details={"operation": operation, "error": str(exc)}) from exc

    async def _get(self, key: str) -> Optional[str]:
        return await self._call("get", lambda client: client.get(key))

    async def _set(self, key: str, raw: str, ttl_seconds: int) -> None:
        await self._call("set", lambda client: client.setex(key, ttl_seconds, raw))

    async def _delete(self, key: str) -> bool:
        removed = await self._call("delete", lambda client: client.delete(key))
        return bool(removed)

    async def _exists(self, key: str) -> bool:
        found = await self._call("exists", lambda client: client.exists(key))
        return bool(found)

    async def _scan(self, client: redis.Redis, pattern: str) -> List[str]:
        keys = []
        async for key in client.scan_iter(match=pattern, count=self.scan_count):
            keys.append(key)
        return keys

    async def _delete_pattern(self, pattern: str) -> int:
        async def run(client: redis.Redis) -> int:
            keys = await self._scan(client, pattern)
            deleted = 0
            for start in range(0, len(keys), self.scan_count):
                deleted += await client.delete(*keys[start:start + self.scan_count])
            return deleted

        return await self._call("delete_pattern", run)

    async def _count(self, pattern: str) -> int:
        async def run(client: redis.Redis) -> int:
            return len(await self._scan(client, pattern))

        return await self._call("count", run)

    async def _flush(self) -> None:
        await self._call("flush_all", lambda client: client.flushdb())

    async def _ping(self) -> bool:
        return bool(await self._call("ping", lambda client: client.ping()))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


@dataclass
class _MemoryEntry:
    raw: str
    expires_at: float


class MemoryCacheStore(CacheStore):
    """Single-process backend.

    Keys are indexed by their first colon-delimited segment so pattern
    deletion only scans the family named by the pattern's literal prefix.
    Expired entries are dropped lazily on access and by :meth:`purge_expired`.
    """

    backend_name = "memory"

    def __init__(self, clock: Clock = time.time, metrics: Optional["MetricsCollector"] = None):
        super().__init__(metrics)
        self.clock = clock
        self._entries: Dict[str, _MemoryEntry] = {}
        self._families: Dict[str, Set[str]] = {}

    @staticmethod
    def _family(key: str) -> str:
        return key.split(":", 1)[0]

    def _live(self, key: str) -> Optional[_MemoryEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() >= entry.expires_at:
            self._remove(key)
            return None
        return entry

    def _remove(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        family = self._family(key)
        members = self._families.get(family)
        if members is not None:
            members.discard(key)
            if not members:
                del self._families[family]
        return True

    def _candidates(self, pattern: str) -> List[str]:
        prefix = literal_prefix(pattern)
        if ":" in prefix:
            return list(self._families.get(self._family(prefix), ()))
        if prefix:
            return [
                key
                for family, members in self._families.items()
                if family.startswith(prefix)
                for key in members
            ]
        return list(self._entries)

    def _matching(self, pattern: str) -> List[str]:
        regex = glob_to_regex(pattern)
        return [key for key in self._candidates(pattern) if regex.match(key) and self._live(key)]

    def purge_expired(self) -> int:
        """Physically evict logically expired entries."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            self._remove(key)
        return len(expired)

    async def _get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry.raw if entry else None

    async def _set(self, key: str, raw: str, ttl_seconds: int) -> None:
        self._entries[key] = _MemoryEntry(raw=raw, expires_at=self.clock() + ttl_seconds)
        self._families.setdefault(self._family(key), set()).add(key)

    async def _delete(self, key: str) -> bool:
        return self._live(key) is not None and self._remove(key)

    async def _exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def _delete_pattern(self, pattern: str) -> int:
        deleted = 0
        for key in self._matching(pattern):
            if self._remove(key):
                deleted += 1
        return deleted

    async def _count(self, pattern: str) -> int:
        return len(self._matching(pattern))

    async def _flush(self) -> None:
        self._entries.clear()
        self._families.clear()

    async def _ping(self) -> bool:
        return True


class NullCacheStore(CacheStore):
    """Disabled cache: every read misses and every write is a no-op."""

    backend_name = "none"

    @property
    def enabled(self) -> bool:
        return False

    async def _get(self, key: str) -> Optional[str]:
        return None

    async def _set(self, key: str, raw: str, ttl_seconds: int) -> None:
        return None

    async def _delete(self, key: str) -> bool:
        return False

    async def _exists(self, key: str) -> bool:
        return False

    async def _delete_pattern(self, pattern: str) -> int:
        return 0

    async def _count(self, pattern: str) -> int:
        return 0

    async def _flush(self) -> None:
        return None

    async def _ping(self) -> bool:
        return False

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        return False

    async def flush_all(self) -> bool:
        return False


def create_cache_store(
    config: "BaseConfig",
    *,
    clock: Clock = time.time,
    metrics: Optional["MetricsCollector"] = None,
) -> CacheStore:
    """Build the backing store selected by configuration."""
    backend = config.effective_backend
    if backend == "redis":
        return RedisCacheStore(config.redis_url, socket_timeout=config.redis_socket_timeout, metrics=metrics)
    if backend == "memory":
        return MemoryCacheStore(clock=clock, metrics=metrics)
    if backend == "none":
        return NullCacheStore(metrics=metrics)
    raise ValueError(f"Unknown cache backend: {config.cache_backend}")
