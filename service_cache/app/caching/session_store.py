"""
Sliding-expiry session storage on the shared backing store.
"""

import time
from typing import Any, Dict, Optional, TYPE_CHECKING

from shared.logging import get_logger
from .store import CacheStore, Clock

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_SESSION_TTL = 86400


class SessionStore:
    """Opaque session payloads under ``{prefix}:{session_id}``.

    Every successful read rewrites the envelope with a fresh
    ``last_accessed_at`` and the TTL the session was created with, so the
    expiry window slides with activity. The read-then-rewrite is not
    atomic; concurrent reads both extend the TTL and the last write wins.
    """

    cache_type = "session"

    def __init__(
        self,
        store: CacheStore,
        *,
        prefix: str = "session",
        default_ttl: int = DEFAULT_SESSION_TTL,
        clock: Clock = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("cache.session")
        self.hits = 0
        self.misses = 0

    def key_for(self, session_id: str) -> str:
        return f"{self.prefix}:{session_id}"

    @staticmethod
    def _is_timestamp(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool)

    @classmethod
    def _valid_envelope(cls, envelope: Any) -> bool:
        if not isinstance(envelope, dict) or "data" not in envelope:
            return False
        if not cls._is_timestamp(envelope.get("created_at")):
            return False
        return "last_accessed_at" not in envelope or cls._is_timestamp(envelope["last_accessed_at"])

    def _record(self, hit: bool) -> None:
        if hit:
            self.hits += 1
        else:
            self.misses += 1
        if self.metrics:
            self.metrics.record_cache_access(self.cache_type, hit)

    async def set_session(self, session_id: str, payload: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Create or replace a session; ``created_at`` starts now."""
        if not session_id:
            return False
        ttl = int(ttl_seconds if ttl_seconds is not None else self.default_ttl)
        now = self.clock()
        envelope: Dict[str, Any] = {
            "data": payload,
            "created_at": now,
            "last_accessed_at": now,
            "ttl_seconds": ttl,
        }
        return await self.store.set(self.key_for(session_id), envelope, ttl)

    async def get_session(self, session_id: str) -> Optional[Any]:
        """Return the session payload and re-arm its TTL, or None."""
        if not session_id:
            return None

        key = self.key_for(session_id)
        envelope = await self.store.get(key)
        if envelope is None:
            self._record(False)
            return None
        if not self._valid_envelope(envelope):
            self.logger.warning("Discarding malformed session envelope", session_id=session_id)
            await self.store.delete(key)
            self._record(False)
            return None

        ttl = envelope.get("ttl_seconds")
        if not isinstance(ttl, int) or isinstance(ttl, bool) or ttl <= 0:
            ttl = self.default_ttl
        last_accessed = envelope.get("last_accessed_at", envelope["created_at"])

        now = self.clock()
        if now - last_accessed >= ttl:
            await self.store.delete(key)
            self._record(False)
            return None

        envelope["last_accessed_at"] = now
        envelope["ttl_seconds"] = ttl
        if not await self.store.set(key, envelope, ttl):
            self.logger.debug("Session TTL refresh skipped", session_id=session_id)

        self._record(True)
        return envelope["data"]

    async def delete_session(self, session_id: str) -> bool:
        if not session_id:
            return False
        return await self.store.delete(self.key_for(session_id))
