"""Tests for the matching engine (raw items -> products / variants)."""

import json

import pytest
from sqlalchemy import func, select

from pricecatalog.models import (
    PriceHistory,
    Product,
    ProductVariant,
    RawItem,
    UnmappableItem,
    UnmappableReason,
)
from pricecatalog.services import matching
from pricecatalog.services.matching import (
    MatchingConfig,
    MatchStatus,
    process_unprocessed_items,
    retry_unmappable_items,
)
from pricecatalog.services.registry_cache import build_snapshot

from tests.conftest import DAY1, DAY2

S21_TITLE = "Samsung Galaxy S21 128GB Phantom Black"


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        res = await session.execute(select(func.count()).select_from(model))
        return int(res.scalar_one())


async def _all(session_factory, model):
    async with session_factory() as session:
        res = await session.execute(select(model))
        return list(res.scalars().all())


class TestEndToEnd:
    """Scenario tests over a real (SQLite) store."""

    @pytest.mark.asyncio
    async def test_new_listing_creates_product_and_variant(
        self, session_factory, registry, categories, add_raw_item
    ):
        raw_id = await add_raw_item(S21_TITLE, price=899.0)

        stats = await process_unprocessed_items(session_factory=session_factory, registry=registry)

        assert stats.scanned == 1
        assert stats.created_products == 1
        assert stats.created_variants == 1

        [product] = await _all(session_factory, Product)
        assert product.brand == "Samsung"
        assert product.model == "S21"
        assert product.category_code == "smartphones"
        assert product.version == 1

        [variant] = await _all(session_factory, ProductVariant)
        assert variant.product_id == product.id
        assert variant.size == "128GB"
        assert variant.color == "phantom black"
        assert variant.price == 899.0
        assert variant.raw_product_id == raw_id

        [raw] = await _all(session_factory, RawItem)
        assert raw.processed is True
        assert raw.matched_product_id == product.id
        assert await _count(session_factory, PriceHistory) == 1

    @pytest.mark.asyncio
    async def test_next_day_recrawl_updates_price_and_adds_history_row(
        self, session_factory, registry, categories, add_raw_item
    ):
        await add_raw_item(S21_TITLE, price=899.0, created_at=DAY1)
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        await add_raw_item(S21_TITLE, price=849.0, created_at=DAY2)
        stats = await process_unprocessed_items(session_factory=session_factory, registry=registry)

        assert stats.matched_existing == 1
        assert stats.updated_variants == 1
        assert await _count(session_factory, Product) == 1
        assert await _count(session_factory, ProductVariant) == 1

        [product] = await _all(session_factory, Product)
        assert product.version == 2

        [variant] = await _all(session_factory, ProductVariant)
        assert variant.price == 849.0

        async with session_factory() as session:
            res = await session.execute(select(PriceHistory.price).order_by(PriceHistory.recorded_at))
            assert list(res.scalars().all()) == [899.0, 849.0]

    @pytest.mark.asyncio
    async def test_rematch_keeps_variant_attributes(self, session_factory, registry, categories, add_raw_item):
        await add_raw_item(S21_TITLE, created_at=DAY1)
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        await add_raw_item("Samsung Galaxy S21 128GB Blue (renamed)", price=860.0, created_at=DAY2)
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        [variant] = await _all(session_factory, ProductVariant)
        assert variant.color == "phantom black"
        assert variant.title == S21_TITLE
        assert variant.price == 860.0

    @pytest.mark.asyncio
    async def test_tier_model_gets_its_own_product(self, session_factory, registry, categories, add_raw_item):
        await add_raw_item(S21_TITLE, link="https://shop.ba/p/1")
        await add_raw_item("Samsung S21 Ultra 256GB", link="https://shop.ba/p/2", price=1299.0)

        stats = await process_unprocessed_items(session_factory=session_factory, registry=registry)

        assert stats.created_products == 2
        models = sorted(p.model for p in await _all(session_factory, Product))
        assert models == ["S21", "S21 Ultra"]

    @pytest.mark.asyncio
    async def test_large_brand_still_finds_existing_product(
        self, session_factory, registry, categories, add_raw_item
    ):
        """Brand candidates are not capped, so product #41 is still reachable."""
        async with session_factory() as session:
            session.add_all(
                [
                    Product(name=f"samsung a{n}", brand="Samsung", model=f"A{n}", category_code="smartphones")
                    for n in range(50, 90)
                ]
            )
            await session.flush()
            existing = Product(name="samsung s21", brand="Samsung", model="S21", category_code="smartphones")
            session.add(existing)
            await session.commit()
            existing_id = existing.id

        raw_id = await add_raw_item(S21_TITLE)
        stats = await process_unprocessed_items(session_factory=session_factory, registry=registry)

        assert stats.matched_existing == 1
        assert stats.created_products == 0
        assert await _count(session_factory, Product) == 41
        async with session_factory() as session:
            raw = await session.get(RawItem, raw_id)
        assert raw.matched_product_id == existing_id

    @pytest.mark.asyncio
    async def test_processed_items_are_not_rematched(self, session_factory, registry, categories, add_raw_item):
        raw_id = await add_raw_item(S21_TITLE)
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        async with session_factory() as session:
            raw = await session.get(RawItem, raw_id)
            outcome = await matching.process_raw_item(session, raw, registry=registry, config=MatchingConfig())
            await session.commit()

        assert outcome.status is MatchStatus.SKIPPED
        assert await _count(session_factory, ProductVariant) == 1
        assert await _count(session_factory, PriceHistory) == 1

    @pytest.mark.asyncio
    async def test_ram_only_for_smartphones(self, session_factory, registry, categories, add_raw_item):
        await add_raw_item("Xiaomi Redmi Note 12 8+256GB", link="https://shop.ba/p/1")
        await add_raw_item(
            "Xiaomi Pad 6 8+256GB", link="https://shop.ba/p/2", config_code="shop.ba/tablets"
        )
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        variants = {v.source_url: v for v in await _all(session_factory, ProductVariant)}
        assert variants["https://shop.ba/p/1"].property1 == "8GB"
        assert variants["https://shop.ba/p/1"].size == "256GB"
        assert variants["https://shop.ba/p/2"].property1 is None

    @pytest.mark.asyncio
    async def test_category_filter(self, session_factory, registry, categories, add_raw_item):
        await add_raw_item(S21_TITLE, link="https://shop.ba/p/1")
        await add_raw_item("Apple iPad 10 64GB", link="https://shop.ba/p/2", config_code="shop.ba/tablets")

        stats = await process_unprocessed_items(
            session_factory=session_factory, registry=registry, category="tablets"
        )

        assert stats.scanned == 1
        async with session_factory() as session:
            res = await session.execute(select(RawItem).where(RawItem.processed.is_(False)))
            [pending] = res.scalars().all()
            assert pending.config_code == "shop.ba/smartphones"


class TestUnmappableRouting:
    """Items that cannot be mapped are parked with a reason."""

    async def _reason(self, session_factory, raw_id: int) -> UnmappableItem:
        async with session_factory() as session:
            item = await session.get(UnmappableItem, raw_id)
            assert item is not None
            return item

    @pytest.mark.asyncio
    async def test_missing_brand(self, session_factory, registry, categories, add_raw_item):
        raw_id = await add_raw_item("Nokia 3310 Blue")
        stats = await process_unprocessed_items(session_factory=session_factory, registry=registry)

        assert stats.unmappable == 1
        item = await self._reason(session_factory, raw_id)
        assert item.reason_code is UnmappableReason.MISSING_BRAND
        assert item.attempts == 1
        assert json.loads(item.extracted_data_json)["brand"] is None
        assert await _count(session_factory, Product) == 0

        [raw] = await _all(session_factory, RawItem)
        assert raw.processed is True
        assert raw.matched_product_id is None

    @pytest.mark.asyncio
    async def test_invalid_data(self, session_factory, registry, categories, add_raw_item):
        raw_id = await add_raw_item(S21_TITLE, price=None)
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        item = await self._reason(session_factory, raw_id)
        assert item.reason_code is UnmappableReason.INVALID_DATA
        assert "price" in item.reason

    @pytest.mark.asyncio
    async def test_invalid_category(self, session_factory, registry, categories, add_raw_item):
        raw_id = await add_raw_item(S21_TITLE, config_code="shop.ba/fridges")
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        item = await self._reason(session_factory, raw_id)
        assert item.reason_code is UnmappableReason.INVALID_CATEGORY

    @pytest.mark.asyncio
    async def test_low_confidence_without_candidates(self, session_factory, registry, categories, add_raw_item):
        raw_id = await add_raw_item("Samsung 128GB")
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        item = await self._reason(session_factory, raw_id)
        assert item.reason_code is UnmappableReason.NO_SIMILAR_ITEMS

    @pytest.mark.asyncio
    async def test_low_confidence_with_candidates(self, session_factory, registry, categories, add_raw_item):
        await add_raw_item(S21_TITLE, link="https://shop.ba/p/1")
        raw_id = await add_raw_item("Samsung 512GB", link="https://shop.ba/p/2")
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        item = await self._reason(session_factory, raw_id)
        assert item.reason_code is UnmappableReason.INSUFFICIENT_SIMILARITY
        assert await _count(session_factory, Product) == 1

    @pytest.mark.asyncio
    async def test_item_failure_is_isolated(
        self, session_factory, registry, categories, add_raw_item, monkeypatch: pytest.MonkeyPatch
    ):
        bad_id = await add_raw_item(S21_TITLE, link="https://shop.ba/p/1")
        good_id = await add_raw_item("Apple iPhone 13 128GB", link="https://shop.ba/p/2")

        original = matching.process_raw_item

        async def flaky(session, raw, **kwargs):
            if raw.id == bad_id:
                raise RuntimeError("boom")
            return await original(session, raw, **kwargs)

        monkeypatch.setattr(matching, "process_raw_item", flaky)

        stats = await process_unprocessed_items(session_factory=session_factory, registry=registry)

        assert stats.errors == 1
        assert stats.created_products == 1
        async with session_factory() as session:
            bad = await session.get(RawItem, bad_id)
            good = await session.get(RawItem, good_id)
            parked = await session.get(UnmappableItem, bad_id)
        assert bad.processed is False
        assert good.processed is True
        assert parked.reason_code is UnmappableReason.OTHER
        assert "boom" in parked.reason


class TestRetry:
    """Tests for retry_unmappable_items."""

    @pytest.mark.asyncio
    async def test_registry_fix_maps_parked_item(self, session_factory, registry, categories, add_raw_item):
        raw_id = await add_raw_item("Nokia G21 64GB Blue")
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        fixed = build_snapshot(
            brands=[*registry.brands, "nokia"],
            colors=registry.colors,
            storage_patterns=[p.pattern for p in registry.storage_patterns],
            version=2,
        )
        stats = await retry_unmappable_items(session_factory=session_factory, registry=fixed, max_attempts=5)

        assert stats.before == 1
        assert stats.after == 0
        assert stats.mapped == 1
        [product] = await _all(session_factory, Product)
        assert product.brand == "Nokia"
        assert product.model == "G21"
        async with session_factory() as session:
            raw = await session.get(RawItem, raw_id)
        assert raw.matched_product_id == product.id

    @pytest.mark.asyncio
    async def test_still_unmappable_bumps_attempts(self, session_factory, registry, categories, add_raw_item):
        raw_id = await add_raw_item("Nokia 3310")
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        stats = await retry_unmappable_items(session_factory=session_factory, registry=registry, max_attempts=5)
        assert stats.still_unmappable == 1

        async with session_factory() as session:
            item = await session.get(UnmappableItem, raw_id)
        assert item.attempts == 2

    @pytest.mark.asyncio
    async def test_respects_max_attempts(self, session_factory, registry, categories, add_raw_item):
        await add_raw_item("Nokia 3310")
        await process_unprocessed_items(session_factory=session_factory, registry=registry)

        stats = await retry_unmappable_items(session_factory=session_factory, registry=registry, max_attempts=1)
        assert stats.attempted == 0
