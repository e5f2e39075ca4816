"""
Entity-driven cache invalidation.

A change to one entity erases every cache family that may embed it: the
entity's own endpoints, its collection endpoint, its list/stats
aggregates, and all endpoints of the entity types declared as dependent
on it. The strategy deliberately over-invalidates.
"""

import asyncio
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import FrozenSet, Iterable, List, Mapping, Optional, Tuple, TYPE_CHECKING

from shared.logging import get_logger
from .key_codec import DEFAULT_PREFIX, FINGERPRINT_GLOB, escape_glob
from .store import CacheStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


ENTITY_DEPENDENCIES: Mapping[str, FrozenSet[str]] = MappingProxyType({
    "service": frozenset({"case", "review"}),
    "case": frozenset({"service", "review"}),
    "review": frozenset({"service", "case"}),
    "user": frozenset({"session"}),
})

LIST_PREFIX = "list"
STATS_PREFIX = "stats"


def singularize(name: str) -> str:
    if name.endswith("ies") and len(name) > 3:
        return name[:-3] + "y"
    if name.endswith("s") and not name.endswith(("ss", "us")) and len(name) > 1:
        return name[:-1]
    return name


def pluralize(name: str) -> str:
    if name.endswith("y") and len(name) > 1 and name[-2] not in "aeiou":
        return name[:-1] + "ies"
    if name.endswith("s"):
        return name
    return name + "s"


def canonical_entity_type(name: str) -> str:
    """Map a path segment such as ``Services`` to the entity type ``service``."""
    return singularize(name.strip().lower())


def entity_aliases(entity_type: str) -> Tuple[str, ...]:
    """Spellings of an entity type that may appear in endpoint keys."""
    singular = canonical_entity_type(entity_type)
    plural = pluralize(singular)
    return (singular,) if plural == singular else (singular, plural)


@dataclass
class InvalidationResult:
    """Outcome of one fan-out invalidation."""

    entity_type: str
    entity_id: Optional[str]
    deleted: int = 0
    patterns: List[str] = field(default_factory=list)
    failed_patterns: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed_patterns)


class InvalidationEngine:
    """Turns ``(entity_type, entity_id)`` change notifications into pattern deletes."""

    def __init__(
        self,
        store: CacheStore,
        *,
        api_prefix: str = DEFAULT_PREFIX,
        dependencies: Mapping[str, Iterable[str]] = ENTITY_DEPENDENCIES,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.api_prefix = api_prefix
        self.metrics = metrics
        self.logger = get_logger("cache.invalidation")
        self.dependencies: Mapping[str, FrozenSet[str]] = MappingProxyType({
            canonical_entity_type(entity): frozenset(canonical_entity_type(related) for related in related_types)
            for entity, related_types in dependencies.items()
        })

    def related_entities(self, entity_type: str) -> FrozenSet[str]:
        return self.dependencies.get(canonical_entity_type(entity_type), frozenset())

    def _endpoint_heads(self, alias: str) -> Tuple[str, ...]:
        # Entity segment either leads the endpoint or follows other segments
        return (f"{self.api_prefix}:{alias}", f"{self.api_prefix}:*:{alias}")

    def _family_patterns(self, entity_type: str) -> List[str]:
        patterns = []
        for alias in entity_aliases(entity_type):
            for head in self._endpoint_heads(escape_glob(alias)):
                patterns.extend([head, f"{head}:*"])
        return patterns

    def _aggregate_patterns(self, entity_type: str) -> List[str]:
        escaped = escape_glob(entity_type)
        return [f"{LIST_PREFIX}:{escaped}:*", f"{STATS_PREFIX}:{escaped}:*"]

    def patterns_for(self, entity_type: str, entity_id: Optional[str] = None) -> List[str]:
        """Every key pattern erased for a change to ``entity_type``/``entity_id``."""
        canonical = canonical_entity_type(entity_type)
        patterns: List[str] = []

        if entity_id:
            entity_id = escape_glob(str(entity_id))
            for alias in entity_aliases(canonical):
                for head in self._endpoint_heads(escape_glob(alias)):
                    patterns.extend([
                        # Id prefix match: may also catch ids sharing the prefix
                        f"{head}:{entity_id}*",
                        f"{head}:*:{entity_id}",
                        f"{head}:*:{entity_id}:*",
                        # Collection endpoint: ordering and counts may change
                        head,
                        f"{head}:{FINGERPRINT_GLOB}",
                    ])
        else:
            patterns.extend(self._family_patterns(canonical))

        patterns.extend(self._aggregate_patterns(canonical))

        for related in sorted(self.related_entities(canonical)):
            patterns.extend(self._family_patterns(related))
            patterns.extend(self._aggregate_patterns(related))

        return list(dict.fromkeys(patterns))

    async def invalidate_with_report(self, entity_type: str, entity_id: Optional[str] = None) -> InvalidationResult:
        """Run all pattern deletes concurrently and report failures without raising."""
        canonical = canonical_entity_type(entity_type)
        result = InvalidationResult(entity_type=canonical, entity_id=entity_id)
        if not canonical:
            self.logger.warning("Ignoring invalidation without entity type", entity_id=entity_id)
            return result

        result.patterns = self.patterns_for(canonical, entity_id)
        started = time.perf_counter()
        outcomes = await asyncio.gather(
            *(self.store.delete_pattern(pattern, strict=True) for pattern in result.patterns),
            return_exceptions=True,
        )
        if self.metrics:
            self.metrics.observe_histogram(
                "cache_operation_duration_seconds",
                time.perf_counter() - started,
                operation="invalidate",
            )

        for pattern, outcome in zip(result.patterns, outcomes):
            if isinstance(outcome, BaseException):
                result.failed_patterns.append(pattern)
                self.logger.warning(
                    "Invalidation pattern failed",
                    entity_type=canonical,
                    entity_id=entity_id,
                    pattern=pattern,
                    error=str(outcome),
                )
                if self.metrics:
                    self.metrics.increment_counter("cache_store_errors_total", operation="delete_pattern")
                continue
            result.deleted += outcome

        if self.metrics and result.deleted:
            self.metrics.increment_counter("cache_invalidated_keys_total", result.deleted, entity_type=canonical)

        if result.deleted or result.partial:
            self.logger.info(
                "Cache invalidated",
                entity_type=canonical,
                entity_id=entity_id,
                deleted=result.deleted,
                failed_patterns=len(result.failed_patterns),
            )
        return result

    async def invalidate(self, entity_type: str, entity_id: Optional[str] = None) -> int:
        """Erase caches affected by a change and return the number of keys deleted."""
        result = await self.invalidate_with_report(entity_type, entity_id)
        return result.deleted
