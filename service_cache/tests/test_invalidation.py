"""
Unit tests for entity-driven invalidation.
"""

import pytest
from unittest.mock import patch

from service_cache.app.caching.invalidation import (
    ENTITY_DEPENDENCIES,
    InvalidationEngine,
    canonical_entity_type,
    entity_aliases,
    pluralize,
    singularize,
)
from service_cache.app.caching.key_codec import derive_key
from service_cache.app.caching.store import MemoryCacheStore
from shared.errors import StoreUnavailableError


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        self.counters.append((metric_name, amount, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))


class TestEntityNames:
    """Test cases for entity type canonicalization."""

    @pytest.mark.parametrize("name,expected", [
        ("services", "service"),
        ("Services", "service"),
        ("case", "case"),
        ("categories", "category"),
        ("status", "status"),
        ("address", "address"),
    ])
    def test_canonical_entity_type(self, name, expected):
        assert canonical_entity_type(name) == expected

    def test_singular_plural_pairs(self):
        assert pluralize("category") == "categories"
        assert pluralize("day") == "days"
        assert singularize("reviews") == "review"

    def test_aliases(self):
        assert entity_aliases("services") == ("service", "services")
        assert entity_aliases("status") == ("status",)

    def test_dependency_table_is_immutable(self):
        with pytest.raises(TypeError):
            ENTITY_DEPENDENCIES["banner"] = frozenset({"service"})


class TestInvalidationEngine:
    """Test cases for InvalidationEngine."""

    @pytest.fixture
    def store(self):
        return MemoryCacheStore()

    @pytest.fixture
    def metrics(self):
        return DummyMetrics()

    @pytest.fixture
    def engine(self, store, metrics):
        return InvalidationEngine(store, metrics=metrics)

    async def _seed(self, store, *keys):
        for key in keys:
            await store.set(key, {"seeded": key}, 3600)

    def test_related_entities(self, engine):
        assert engine.related_entities("service") == frozenset({"case", "review"})
        assert engine.related_entities("cases") == frozenset({"service", "review"})
        assert engine.related_entities("banner") == frozenset()

    def test_patterns_are_unique(self, engine):
        patterns = engine.patterns_for("service", "s1")

        assert len(patterns) == len(set(patterns))
        assert "list:service:*" in patterns
        assert "stats:service:*" in patterns
        assert "list:case:*" in patterns
        assert "list:review:*" in patterns

    def test_entity_id_is_escaped(self, engine):
        patterns = engine.patterns_for("service", "a*b")

        assert "api:services:a\\*b*" in patterns
        assert not any(":a*b" in pattern for pattern in patterns)

    @pytest.mark.asyncio
    async def test_invalidation_completeness(self, engine, store):
        """The entity's endpoint key and its list caches are both removed."""
        await self._seed(store, "api:services:X", "list:service:page1")

        deleted = await engine.invalidate("service", "X")

        assert deleted == 2
        assert await store.get("api:services:X") is None
        assert await store.get("list:service:page1") is None

    @pytest.mark.asyncio
    async def test_path_derived_keys(self, engine, store):
        """Keys derived from request paths are matched through the plural alias."""
        item = derive_key("GET /api/services/s1", {"query": {}})
        child = derive_key("GET /api/services/s1/reviews", {})
        collection = derive_key("GET /api/services", {"query": {"page": "2"}})
        sibling = derive_key("GET /api/services/s2", {})
        await self._seed(store, item, child, collection, sibling)

        await engine.invalidate("services", "s1")

        assert await store.get(item) is None
        assert await store.get(child) is None
        assert await store.get(collection) is None
        assert await store.get(sibling) is not None

    @pytest.mark.asyncio
    async def test_related_entity_cascade(self, engine, store):
        """Invalidating a service also clears case and review caches."""
        case_list = derive_key("GET /api/cases", {})
        await self._seed(
            store,
            "list:case:all",
            "list:review:all",
            "stats:review:totals",
            case_list,
        )

        await engine.invalidate("service", "s1")

        assert await store.count("list:*") == 0
        assert await store.get("stats:review:totals") is None
        assert await store.get(case_list) is None

    @pytest.mark.asyncio
    async def test_case_change_cascades_to_services(self, engine, store):
        services = derive_key("GET /api/services", {})
        await store.set(services, [{"id": "s1"}], 3600)

        await engine.invalidate("case", "c1")

        assert await store.get(services) is None

    @pytest.mark.asyncio
    async def test_unrelated_keys_survive(self, engine, store):
        banners = derive_key("GET /api/banners", {})
        await self._seed(store, banners, "session:abc", "list:banner:all")

        await engine.invalidate("service", "s1")

        assert await store.count() == 3

    @pytest.mark.asyncio
    async def test_type_wide_invalidation(self, engine, store):
        """Without an id every endpoint of the type is removed."""
        await self._seed(
            store,
            derive_key("GET /api/reviews/r1", {}),
            derive_key("GET /api/reviews/r2", {}),
            "api:review:r3",
        )

        assert await engine.invalidate("reviews") == 3

    @pytest.mark.asyncio
    async def test_user_cascades_to_session_endpoints(self, engine, store):
        sessions = derive_key("GET /api/sessions", {})
        await self._seed(store, sessions, "session:raw-store-key")

        await engine.invalidate("user", "u1")

        assert await store.get(sessions) is None
        assert await store.get("session:raw-store-key") is not None

    @pytest.mark.asyncio
    async def test_report_and_metrics(self, engine, store, metrics):
        await self._seed(store, "list:service:all")

        result = await engine.invalidate_with_report("Services", "s1")

        assert result.entity_type == "service"
        assert result.entity_id == "s1"
        assert result.deleted == 1
        assert result.partial is False
        assert metrics.counters == [("cache_invalidated_keys_total", 1, {"entity_type": "service"})]
        assert [(name, labels) for name, _, labels in metrics.histograms] == [
            ("cache_operation_duration_seconds", {"operation": "invalidate"}),
        ]

    @pytest.mark.asyncio
    async def test_partial_failure_sums_successes(self, engine, store, metrics):
        """Failed pattern deletes are reported; successful ones still count."""
        await self._seed(store, "list:service:all", "stats:service:totals")
        original = store.delete_pattern

        async def flaky_delete(pattern, strict=False):
            if pattern.startswith("stats:"):
                raise StoreUnavailableError()
            return await original(pattern, strict=strict)

        with patch.object(store, "delete_pattern", new=flaky_delete):
            result = await engine.invalidate_with_report("service", "s1")

        assert result.deleted == 1
        assert result.partial is True
        assert all(pattern.startswith("stats:") for pattern in result.failed_patterns)
        store_errors = [entry for entry in metrics.counters if entry[0] == "cache_store_errors_total"]
        assert store_errors == [
            ("cache_store_errors_total", 1, {"operation": "delete_pattern"}),
        ] * len(result.failed_patterns)
        assert await store.get("stats:service:totals") is not None

    @pytest.mark.asyncio
    async def test_empty_entity_type_is_ignored(self, engine, store):
        await self._seed(store, "list:service:all")

        result = await engine.invalidate_with_report("  ")

        assert result.deleted == 0
        assert result.patterns == []
        assert await store.count() == 1

    def test_custom_dependencies(self, store):
        engine = InvalidationEngine(store, dependencies={"posts": ["comments"]})

        assert engine.related_entities("post") == frozenset({"comment"})
