"""Tests for registry snapshots and the refreshing cache."""

import pytest

from pricecatalog.models import RegistryEntry, RegistryType
from pricecatalog.services.registry_cache import (
    DEFAULT_BRAND_MODIFIERS,
    RegistryCache,
    RegistrySnapshot,
    build_snapshot,
    compile_storage_patterns,
    load_registry_snapshot,
)


class TestBuildSnapshot:
    """Tests for build_snapshot."""

    def test_normalizes_and_orders(self):
        snapshot = build_snapshot(
            brands=["Samsung", " APPLE ", "samsung"],
            colors=["gray", "Space  Gray", "black"],
            common_words=["Mobitel"],
        )
        assert snapshot.brands == ("apple", "samsung")
        assert snapshot.colors == ("space gray", "black", "gray")
        assert snapshot.common_words == frozenset({"mobitel"})
        assert snapshot.brand_modifiers == DEFAULT_BRAND_MODIFIERS

    def test_not_brands_removed_from_brands(self):
        snapshot = build_snapshot(brands=["samsung", "novi"], not_brands=["Novi"])
        assert snapshot.brands == ("samsung",)
        assert snapshot.not_brands == frozenset({"novi"})

    def test_invalid_storage_pattern_dropped(self):
        patterns = compile_storage_patterns([r"(\d+GB)", r"(\d+", "  "])
        assert [p.pattern for p in patterns] == [r"(\d+GB)"]

    def test_snapshot_is_immutable(self):
        snapshot = RegistrySnapshot.empty()
        with pytest.raises(AttributeError):
            snapshot.brands = ("x",)

    def test_counts(self, registry):
        assert registry.counts() == {
            "brands": 4,
            "common_words": 3,
            "colors": 5,
            "storage_patterns": 2,
        }


class TestRegistryCache:
    """Tests for loading and refreshing from the store."""

    @pytest.mark.asyncio
    async def test_load_only_enabled(self, session_factory):
        async with session_factory() as session:
            session.add_all(
                [
                    RegistryEntry(entry_type=RegistryType.BRAND, key="samsung", enabled=True),
                    RegistryEntry(entry_type=RegistryType.BRAND, key="nokia", enabled=False),
                    RegistryEntry(entry_type=RegistryType.COLOR, key="black", enabled=True),
                    RegistryEntry(entry_type=RegistryType.STORAGE_PATTERN, key=r"(\d+GB)", enabled=True),
                ]
            )
            await session.commit()

        async with session_factory() as session:
            snapshot = await load_registry_snapshot(session, version=7)

        assert snapshot.version == 7
        assert snapshot.brands == ("samsung",)
        assert snapshot.colors == ("black",)
        assert len(snapshot.storage_patterns) == 1
        assert snapshot.loaded_at is not None

    @pytest.mark.asyncio
    async def test_refresh_swaps_snapshot_and_bumps_version(self, session_factory, seeded_registry):
        cache = RegistryCache()
        before = cache.snapshot()
        assert before.version == 0
        assert before.brands == ()

        after = await cache.refresh_from(session_factory)

        assert cache.snapshot() is after
        assert after.version == 1
        assert "samsung" in after.brands
        # The old snapshot a reader may still hold is untouched.
        assert before.brands == ()

        again = await cache.refresh_from(session_factory)
        assert again.version == 2
