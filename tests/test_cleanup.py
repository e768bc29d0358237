"""Tests for the cleanup job."""

import pytest
from sqlalchemy import func, select

from pricecatalog.models import Product
from pricecatalog.services.cleanup import (
    ALL_STEPS,
    CleanupResult,
    parse_cleanup_steps,
    process_cleanup_job,
    update_product_names_from_registry,
)


async def _seed_products(session_factory, rows) -> list[int]:
    async with session_factory() as session:
        products = [Product(name=n, brand=b, model=m, category_code="smartphones") for n, b, m in rows]
        session.add_all(products)
        await session.commit()
        return [p.id for p in products]


async def _product_count(session_factory) -> int:
    async with session_factory() as session:
        res = await session.execute(select(func.count()).select_from(Product))
        return int(res.scalar_one())


class TestParseSteps:
    """Tests for parse_cleanup_steps."""

    @pytest.mark.parametrize("parameters", [None, "", "all", "ALL", "names, all"])
    def test_all(self, parameters):
        assert parse_cleanup_steps(parameters) == ALL_STEPS

    def test_subset_keeps_canonical_order(self):
        assert parse_cleanup_steps("duplicates,names") == ("names", "duplicates")
        assert parse_cleanup_steps(" Duplicates ") == ("duplicates",)

    def test_unknown_words_ignored(self):
        assert parse_cleanup_steps("bogus") == ()

    def test_summary(self):
        result = CleanupResult(steps=("names", "duplicates"), names_updated=4, products_merged=2)
        assert result.summary() == "Cleanup steps: names, duplicates | Results: updated=4, merged=2"


class TestNames:
    """Tests for update_product_names_from_registry."""

    @pytest.mark.asyncio
    async def test_rebuilds_names(self, session_factory, registry, categories):
        blank, nokia, mystery = await _seed_products(
            session_factory,
            [
                ("samsung galaxy s21 ultra 256gb", None, None),
                ("Nokia G21", "Nokia", "G21"),
                ("mystery box", None, None),
            ],
        )

        updated = await update_product_names_from_registry(session_factory=session_factory, registry=registry)

        assert updated == 1
        async with session_factory() as session:
            p = await session.get(Product, blank)
            assert (p.brand, p.model, p.name) == ("Samsung", "S21 Ultra", "Samsung S21 Ultra")
            assert (await session.get(Product, nokia)).name == "Nokia G21"
            untouched = await session.get(Product, mystery)
            assert untouched.brand is None
            assert untouched.name == "mystery box"


class TestProcessCleanupJob:
    """Tests for process_cleanup_job."""

    @pytest.mark.asyncio
    async def test_all_steps(self, session_factory, registry, categories):
        await _seed_products(
            session_factory,
            [
                ("samsung galaxy s21 128gb", "Samsung", "S21"),
                ("samsung galaxy s21 256gb", "Samsung", "S21"),
                ("samsung s21 ultra 256gb", "Samsung", "S21 Ultra"),
            ],
        )

        result = await process_cleanup_job("all", session_factory=session_factory, registry=registry)

        assert result.names_updated == 3
        assert result.products_merged == 1
        assert result.merge_errors == 0
        assert await _product_count(session_factory) == 2
        assert result.summary() == "Cleanup steps: names, duplicates | Results: updated=3, merged=1"

    @pytest.mark.asyncio
    async def test_names_only_does_not_merge(self, session_factory, registry, categories):
        await _seed_products(
            session_factory,
            [
                ("Samsung S21", "Samsung", "S21"),
                ("Samsung S21", "Samsung", "S21"),
            ],
        )

        result = await process_cleanup_job("names", session_factory=session_factory, registry=registry)

        assert result.steps == ("names",)
        assert result.products_merged == 0
        assert await _product_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_cleanup_threshold_is_stricter(self, session_factory, registry, categories):
        # Scores 0.92: enough for the consistency sweep (0.8), not for 0.95.
        await _seed_products(
            session_factory,
            [
                ("samsung galaxy s21 128gb", "Samsung", "S21"),
                ("samsung galaxy s21 256gb", "Samsung", "S21"),
            ],
        )

        result = await process_cleanup_job(
            "duplicates", session_factory=session_factory, registry=registry, threshold=0.95
        )

        assert result.products_merged == 0
        assert await _product_count(session_factory) == 2
