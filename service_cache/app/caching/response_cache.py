"""
Read-through cache for HTTP GET response bodies.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING

from shared.errors import KeyDerivationError
from shared.logging import get_logger
from .key_codec import DEFAULT_PREFIX, FINGERPRINT_GLOB, derive_key, escape_glob, fingerprint, normalize_endpoint
from .store import CacheStore, Clock

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass
class CachedResponse:
    """A fresh cached body plus the freshness metadata of its envelope."""

    body: Any
    age_seconds: float
    ttl_seconds: int
    stored_at: float
    endpoint: str

    @property
    def remaining_seconds(self) -> float:
        return max(0.0, self.ttl_seconds - self.age_seconds)


class ResponseCache:
    """Caches response bodies keyed by endpoint and normalized params.

    Entries carry an envelope with the write time and declared TTL. Reads
    re-check freshness against the envelope so an entry the store has not
    physically evicted yet is still reported as a miss once it is stale.
    Status-code and per-route policy belong to the caller.
    """

    cache_type = "response"

    def __init__(
        self,
        store: CacheStore,
        *,
        prefix: str = DEFAULT_PREFIX,
        clock: Clock = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.prefix = prefix
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("cache.response")
        self.hits = 0
        self.misses = 0

    def _record(self, hit: bool) -> None:
        if hit:
            self.hits += 1
        else:
            self.misses += 1
        if self.metrics:
            self.metrics.record_cache_access(self.cache_type, hit)

    def key_for(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> str:
        return derive_key(endpoint, params, prefix=self.prefix)

    @staticmethod
    def _valid_envelope(envelope: Any) -> bool:
        if not isinstance(envelope, dict) or "payload" not in envelope:
            return False
        stored_at = envelope.get("stored_at")
        ttl = envelope.get("ttl_seconds")
        return (
            isinstance(stored_at, (int, float))
            and isinstance(ttl, (int, float))
            and not isinstance(ttl, bool)
        )

    async def get_response(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> Optional[CachedResponse]:
        """Return the cached body and its age, or None on a miss."""
        try:
            key = self.key_for(endpoint, params)
        except KeyDerivationError as exc:
            self.logger.warning("Cache key derivation failed", endpoint=endpoint, error=exc.message, details=exc.details)
            self._record(False)
            return None

        envelope = await self.store.get(key)
        if envelope is None:
            self._record(False)
            self.logger.debug("Response cache miss", endpoint=endpoint, key=key)
            return None

        if not self._valid_envelope(envelope):
            self.logger.warning("Discarding malformed cache envelope", endpoint=endpoint, key=key)
            await self.store.delete(key)
            self._record(False)
            return None

        # A negative age means the writer's clock ran ahead of ours
        age = max(0.0, self.clock() - envelope["stored_at"])
        if age >= envelope["ttl_seconds"]:
            self.logger.debug("Evicting stale response", endpoint=endpoint, key=key, age=age)
            await self.store.delete(key)
            self._record(False)
            return None

        self._record(True)
        self.logger.debug("Response cache hit", endpoint=endpoint, key=key, age=age)
        return CachedResponse(
            body=envelope["payload"],
            age_seconds=age,
            ttl_seconds=int(envelope["ttl_seconds"]),
            stored_at=envelope["stored_at"],
            endpoint=envelope.get("endpoint", endpoint),
        )

    async def put_response(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]],
        body: Any,
        ttl_seconds: int,
    ) -> bool:
        """Store a response body under the derived key for ``ttl_seconds``."""
        try:
            key = self.key_for(endpoint, params)
            params_hash = fingerprint(params)
        except KeyDerivationError as exc:
            self.logger.warning("Cache key derivation failed", endpoint=endpoint, error=exc.message, details=exc.details)
            return False

        envelope: Dict[str, Any] = {
            "payload": body,
            "stored_at": self.clock(),
            "ttl_seconds": int(ttl_seconds),
            "endpoint": endpoint,
            "params_hash": params_hash,
        }
        stored = await self.store.set(key, envelope, ttl_seconds)
        if stored:
            self.logger.debug("Response cached", endpoint=endpoint, key=key, ttl=ttl_seconds)
        return stored

    async def invalidate_endpoint(self, endpoint: str) -> int:
        """Drop every parameter variant cached for one endpoint."""
        try:
            pattern = f"{self.prefix}:{escape_glob(normalize_endpoint(endpoint))}:{FINGERPRINT_GLOB}"
        except KeyDerivationError as exc:
            self.logger.warning("Cannot build endpoint pattern", endpoint=endpoint, error=exc.message)
            return 0
        return await self.store.delete_pattern(pattern)
