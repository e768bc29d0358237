"""Tests for unmappable tracking and brand mining."""

import pytest

from pricecatalog.models import RawItem, UnmappableReason
from pricecatalog.services.matching import process_unprocessed_items
from pricecatalog.services.registry_cache import build_snapshot
from pricecatalog.services.unmappable import (
    analyze_potential_missing_brands,
    get_unmappable_item_details,
    get_unmappable_stats,
    remove_unmappable_item,
    track_unmappable_item,
)


@pytest.fixture
async def parked(session_factory, registry, categories, add_raw_item):
    """Raw items parked for missing brands and one invalid row."""
    ids = {
        "nokia1": await add_raw_item("Nokia 3310 Blue", link="https://shop.ba/p/1"),
        "nokia2": await add_raw_item("Nokia G21 64GB", link="https://shop.ba/p/2"),
        "huawei": await add_raw_item("Huawei P30 128GB", link="https://shop.ba/p/3"),
        "short": await add_raw_item("LG K42", link="https://shop.ba/p/4"),
        "number": await add_raw_item("2024 phone deal", link="https://shop.ba/p/5"),
        "noprice": await add_raw_item("Samsung Galaxy S21", link="https://shop.ba/p/6", price=None),
    }
    await process_unprocessed_items(session_factory=session_factory, registry=registry)
    return ids


class TestTracking:
    """Tests for track_unmappable_item / remove_unmappable_item."""

    @pytest.mark.asyncio
    async def test_second_failure_bumps_attempts(self, session_factory, categories, add_raw_item):
        raw_id = await add_raw_item("Nokia 3310")

        async with session_factory() as session:
            raw = await session.get(RawItem, raw_id)
            first = await track_unmappable_item(
                session, raw, reason_code=UnmappableReason.MISSING_BRAND, reason="no brand", category="smartphones"
            )
            await session.flush()
            second = await track_unmappable_item(
                session,
                raw,
                reason_code=UnmappableReason.NO_SIMILAR_ITEMS,
                reason="x" * 2000,
                category="smartphones",
                extracted={"brand": "Nokia"},
            )
            await session.commit()

        assert second is first
        assert second.attempts == 2
        assert second.reason_code is UnmappableReason.NO_SIMILAR_ITEMS
        assert len(second.reason) == 1000

        async with session_factory() as session:
            await remove_unmappable_item(session, raw_id)
            await session.commit()
            assert await get_unmappable_item_details(session, raw_id) is None


class TestAnalytics:
    """Tests for stats, details and brand mining."""

    @pytest.mark.asyncio
    async def test_stats(self, session_factory, parked):
        async with session_factory() as session:
            stats = await get_unmappable_stats(session)

        assert stats["total"] == 6
        assert stats["byReason"] == {"missing_brand": 5, "invalid_data": 1}
        assert stats["byCategory"] == {"smartphones": 6}

    @pytest.mark.asyncio
    async def test_details(self, session_factory, parked):
        async with session_factory() as session:
            details = await get_unmappable_item_details(session, parked["huawei"])

        assert details["reasonCode"] == "missing_brand"
        assert details["attempts"] == 1
        assert details["extractedData"]["storageInfo"] == "128GB"
        assert details["firstSeen"] is not None

    @pytest.mark.asyncio
    async def test_brand_mining(self, session_factory, registry, parked):
        async with session_factory() as session:
            candidates = await analyze_potential_missing_brands(session, registry=registry)

        assert [c.brand for c in candidates] == ["nokia"]
        assert candidates[0].frequency == 2
        assert candidates[0].exists_in_registry is False
        assert candidates[0].sample_raw_item_ids == [parked["nokia1"], parked["nokia2"]]

    @pytest.mark.asyncio
    async def test_brand_mining_min_frequency_and_not_brands(self, session_factory, registry, parked):
        snapshot = build_snapshot(
            brands=registry.brands,
            colors=registry.colors,
            not_brands=["huawei"],
        )
        async with session_factory() as session:
            candidates = await analyze_potential_missing_brands(session, registry=snapshot, min_frequency=1)

        # huawei is a NotBrand, "lg" is too short and "2024" is a number.
        assert [(c.brand, c.frequency) for c in candidates] == [("nokia", 2)]
