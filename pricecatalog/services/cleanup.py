"""Cleanup job: lighter, operator-triggered catalog fixes.

Parameters (comma-separated, case-insensitive):
- "all" or empty: every step
- "names": re-extract brand/model and rebuild names from the registry
- "duplicates": merge near-duplicate products at the stricter cleanup
  threshold (same scorer and merge path as the consistency engine)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricecatalog.services.consistency import (
    DEFAULT_BATCH_SIZE,
    MergeSweepResult,
    build_product_name,
    load_product_page,
    merge_similar_products,
)
from pricecatalog.services.registry_cache import RegistrySnapshot
from pricecatalog.services.text_normalizer import extract_brand_and_model
from pricecatalog.stores.postgres import run_in_transaction

logger = logging.getLogger("uvicorn.error")


CLEANUP_MERGE_THRESHOLD = 0.85

STEP_NAMES = "names"
STEP_DUPLICATES = "duplicates"
ALL_STEPS = (STEP_NAMES, STEP_DUPLICATES)


@dataclass
class CleanupResult:
    steps: tuple[str, ...]
    names_updated: int = 0
    products_merged: int = 0
    merge_errors: int = 0

    def summary(self) -> str:
        return (
            f"Cleanup steps: {', '.join(self.steps)} | "
            f"Results: updated={self.names_updated}, merged={self.products_merged}"
        )


def parse_cleanup_steps(parameters: str | None) -> tuple[str, ...]:
    """Steps requested by a job parameters string; unknown words are ignored."""
    words = [w.strip().lower() for w in (parameters or "").split(",") if w.strip()]
    if not words or "all" in words:
        return ALL_STEPS
    return tuple(step for step in ALL_STEPS if step in words)


async def update_product_names_from_registry(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    registry: RegistrySnapshot,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """Re-extract brand/model from each name and rebuild "brand model" names.

    A product whose name yields no brand keeps its stored brand; products
    that end up without a model are left untouched.

    Returns:
        Number of products changed.
    """
    updated = 0
    last_id = 0
    while True:

        async def _page(session: AsyncSession) -> tuple[int, int | None]:
            products = await load_product_page(session, last_id=last_id, batch_size=batch_size)
            n = 0
            for p in products:
                brand, model = extract_brand_and_model(p.name, registry=registry)
                brand = brand or p.brand
                model = model or p.model
                if not brand or not model:
                    continue
                name = build_product_name(brand, model)
                if (brand, model, name) == (p.brand, p.model, p.name):
                    continue
                p.brand, p.model, p.name = brand, model, name
                n += 1
            return n, (products[-1].id if products else None)

        n, page_last_id = await run_in_transaction(
            session_factory, _page, retries=2, label=f"cleanup names page after id={last_id}"
        )
        if page_last_id is None:
            break
        updated += n
        last_id = page_last_id

    logger.info(f"[cleanup] names updated={updated}")
    return updated


async def merge_product_duplicates(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    registry: RegistrySnapshot,
    threshold: float = CLEANUP_MERGE_THRESHOLD,
) -> MergeSweepResult:
    """Duplicate sweep at the cleanup threshold."""
    return await merge_similar_products(session_factory=session_factory, registry=registry, threshold=threshold)


async def process_cleanup_job(
    parameters: str | None,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    registry: RegistrySnapshot,
    threshold: float = CLEANUP_MERGE_THRESHOLD,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> CleanupResult:
    """Run the cleanup steps selected by `parameters`.

    Args:
        parameters: "all", "names", "duplicates" or a comma list of them.
        session_factory: Factory for per-page / per-group transactions.
        registry: Snapshot used for extraction and scoring.
        threshold: Duplicate merge threshold.
        batch_size: Page size for the names step.

    Returns:
        Counts and a one-line summary.
    """
    result = CleanupResult(steps=parse_cleanup_steps(parameters))

    if STEP_NAMES in result.steps:
        result.names_updated = await update_product_names_from_registry(
            session_factory=session_factory, registry=registry, batch_size=batch_size
        )
    if STEP_DUPLICATES in result.steps:
        sweep = await merge_product_duplicates(
            session_factory=session_factory, registry=registry, threshold=threshold
        )
        result.products_merged = sweep.products_merged
        result.merge_errors = len(sweep.errors)

    logger.info(f"[cleanup] {result.summary()}")
    return result
