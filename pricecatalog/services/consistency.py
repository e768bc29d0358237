"""Consistency engine: catalog-wide re-normalization and merging.

Sub-operations (each independently callable, each safe to re-run):
- update_brand_and_model: re-extract brand/model from product names
- merge_similar_products: fold near-duplicate products of the same brand
- update_product_categories: infer missing categories from variant URLs
- normalize_product_names: rebuild names from brand + model (+ RAM/storage)

Paging:
- Every sweep walks products by id (`id > last_id`) and commits per page, so
  an interrupted run keeps finished pages and a restart redoes nothing
  harmful. Unchanged values are never written.

Merges:
- One transaction per merge group. A group that fails (including an
  optimistic-lock conflict with a concurrent matching run) is rolled back,
  recorded under its survivor id, and the sweep moves on.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricecatalog.models import PriceHistory, Product, ProductCategory, ProductVariant, RawItem
from pricecatalog.services.matching import find_variant
from pricecatalog.services.price_history import move_price_history
from pricecatalog.services.registry_cache import RegistryCache, RegistrySnapshot
from pricecatalog.services.similarity import MERGE_THRESHOLD, ScoringMode, is_match, score_products
from pricecatalog.services.text_normalizer import extract_brand_and_model
from pricecatalog.stores.postgres import run_in_transaction

logger = logging.getLogger("uvicorn.error")


DEFAULT_BATCH_SIZE = 100


@dataclass
class FieldChange:
    product_id: int
    before: dict[str, str | None]
    after: dict[str, str | None]

    def to_dict(self) -> dict[str, Any]:
        return {"productId": self.product_id, "before": self.before, "after": self.after}


@dataclass
class MergeResult:
    variants_moved: int = 0
    variants_folded: int = 0
    raw_items_repointed: int = 0
    products_deleted: int = 0


@dataclass
class MergeSweepResult:
    groups_found: int = 0
    groups_merged: int = 0
    products_merged: int = 0
    variants_moved: int = 0
    errors: dict[int, str] = field(default_factory=dict)


@dataclass
class ConsistencyReport:
    registry_version: int = 0
    brand_model_changes: list[FieldChange] = field(default_factory=list)
    merge: MergeSweepResult = field(default_factory=MergeSweepResult)
    categories_updated: int = 0
    names_updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "registryVersion": self.registry_version,
            "brandModelUpdated": len(self.brand_model_changes),
            "brandModelChanges": [c.to_dict() for c in self.brand_model_changes],
            "mergeGroups": self.merge.groups_merged,
            "productsMerged": self.merge.products_merged,
            "variantsMoved": self.merge.variants_moved,
            "categoriesUpdated": self.categories_updated,
            "namesUpdated": self.names_updated,
            "errors": {str(k): v for k, v in self.merge.errors.items()},
        }


async def load_product_page(
    session: AsyncSession,
    *,
    last_id: int,
    batch_size: int,
    where: tuple[Any, ...] = (),
) -> list[Product]:
    query = select(Product).where(Product.id > last_id)
    for clause in where:
        query = query.where(clause)
    res = await session.execute(query.order_by(Product.id).limit(batch_size))
    return list(res.scalars().all())


def _touch(product: Product) -> None:
    """Mark a product modified so its version is bumped on flush."""
    product.updated_at = datetime.now(timezone.utc)


# ============================================================
# Brand / model re-extraction
# ============================================================


async def update_brand_and_model(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    registry: RegistrySnapshot,
    batch_size: int = DEFAULT_BATCH_SIZE,
    retries: int = 2,
) -> list[FieldChange]:
    """Re-run brand/model extraction on every product name.

    Values are only replaced when extraction yields something and it differs
    from what is stored.

    Returns:
        Before/after pairs for every product that changed.
    """
    changes: list[FieldChange] = []
    last_id = 0

    while True:

        async def _page(session: AsyncSession) -> tuple[list[FieldChange], int | None]:
            products = await load_product_page(session, last_id=last_id, batch_size=batch_size)
            page_changes: list[FieldChange] = []
            for p in products:
                brand, model = extract_brand_and_model(p.name, registry=registry)
                new_brand = brand or p.brand
                new_model = model or p.model
                if new_brand == p.brand and new_model == p.model:
                    continue
                page_changes.append(
                    FieldChange(
                        product_id=p.id,
                        before={"brand": p.brand, "model": p.model},
                        after={"brand": new_brand, "model": new_model},
                    )
                )
                p.brand = new_brand
                p.model = new_model
            return page_changes, (products[-1].id if products else None)

        page_changes, page_last_id = await run_in_transaction(
            session_factory, _page, retries=retries, label=f"brand/model page after id={last_id}"
        )
        if page_last_id is None:
            break
        changes.extend(page_changes)
        last_id = page_last_id

    logger.info(f"[consistency] brand/model updated={len(changes)}")
    return changes


# ============================================================
# Merging
# ============================================================


def find_merge_groups(
    products: list[Product],
    *,
    registry: RegistrySnapshot,
    threshold: float = MERGE_THRESHOLD,
) -> list[list[Product]]:
    """Greedy grouping of mutually similar products.

    Each product joins at most one group per pass: once it is absorbed, later
    comparisons skip it, so chains (A~B, B~C) never cascade within one run.
    The first member of each group is the product that seeded it.
    """
    processed: set[int] = set()
    groups: list[list[Product]] = []

    for i, a in enumerate(products):
        if a.id in processed:
            continue
        group = [a]
        for b in products[i + 1 :]:
            if b.id in processed:
                continue
            score = score_products(a, b, registry=registry)
            if is_match(score, ScoringMode.MERGE, threshold):
                group.append(b)
                processed.add(b.id)
        if len(group) > 1:
            processed.add(a.id)
            groups.append(group)

    return groups


async def _latest_recorded_at(session: AsyncSession, variant_id: int) -> datetime | None:
    res = await session.execute(
        select(func.max(PriceHistory.recorded_at)).where(PriceHistory.variant_id == variant_id)
    )
    return res.scalar_one_or_none()


async def _fold_variant(session: AsyncSession, loser: ProductVariant, target: ProductVariant) -> None:
    """Fold a duplicate variant into the survivor's variant with the same listing key."""
    loser_seen = await _latest_recorded_at(session, loser.id)
    target_seen = await _latest_recorded_at(session, target.id)
    if loser_seen is not None and (target_seen is None or loser_seen > target_seen):
        target.price = loser.price
        target.old_price = loser.old_price
        target.discount = loser.discount
        target.price_string = loser.price_string

    await move_price_history(session, from_variant_id=loser.id, to_variant_id=target.id)
    await session.delete(loser)
    await session.flush()


async def merge_products(
    session: AsyncSession,
    *,
    survivor_id: int,
    loser_ids: list[int],
) -> MergeResult:
    """Merge loser products into the survivor.

    Variants move to the survivor; a variant whose (website_code, source_url)
    already exists there is folded into that variant instead. Raw items that
    pointed at a loser point at the survivor. Losers are deleted with a
    version check and the survivor's version is bumped.

    Args:
        session: DB session (caller controls commit/rollback; the whole merge
            must be committed or rolled back together).
        survivor_id: Product that keeps its identity.
        loser_ids: Products folded into the survivor.

    Returns:
        Counts of what moved.
    """
    result = MergeResult()
    survivor = await session.get(Product, survivor_id)
    if survivor is None:
        raise ValueError(f"Survivor product {survivor_id} no longer exists")

    for loser_id in loser_ids:
        if loser_id == survivor_id:
            continue
        loser = await session.get(Product, loser_id)
        if loser is None:
            raise ValueError(f"Product {loser_id} no longer exists")

        res = await session.execute(
            select(ProductVariant).where(ProductVariant.product_id == loser_id).order_by(ProductVariant.id)
        )
        for variant in res.scalars().all():
            existing = await find_variant(
                session,
                product_id=survivor_id,
                website_code=variant.website_code,
                source_url=variant.source_url,
            )
            if existing is not None:
                await _fold_variant(session, variant, existing)
                result.variants_folded += 1
            else:
                variant.product_id = survivor_id
                result.variants_moved += 1
        await session.flush()

        repointed = await session.execute(
            update(RawItem).where(RawItem.matched_product_id == loser_id).values(matched_product_id=survivor_id)
        )
        result.raw_items_repointed += repointed.rowcount or 0

        await session.delete(loser)
        await session.flush()
        result.products_deleted += 1

    _touch(survivor)
    await session.flush()
    return result


async def _variant_counts(session: AsyncSession, product_ids: list[int]) -> dict[int, int]:
    res = await session.execute(
        select(ProductVariant.product_id, func.count())
        .where(ProductVariant.product_id.in_(product_ids))
        .group_by(ProductVariant.product_id)
    )
    return {pid: int(n) for pid, n in res.all()}


def pick_survivor(group: list[Product], variant_counts: dict[int, int]) -> Product:
    """Most variants wins; ties go to the oldest (lowest id) product."""
    return max(group, key=lambda p: (variant_counts.get(p.id, 0), -p.id))


async def _brands_with_multiple_products(session: AsyncSession) -> list[str]:
    res = await session.execute(
        select(Product.brand)
        .where(Product.brand.is_not(None))
        .group_by(Product.brand)
        .having(func.count(Product.id) > 1)
        .order_by(Product.brand)
    )
    return [b for b in res.scalars().all() if b]


async def _products_of_brand(session: AsyncSession, brand: str) -> list[Product]:
    res = await session.execute(select(Product).where(Product.brand == brand).order_by(Product.id))
    return list(res.scalars().all())


async def merge_similar_products(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    registry: RegistrySnapshot,
    threshold: float = MERGE_THRESHOLD,
) -> MergeSweepResult:
    """Find and merge near-duplicate products within each brand.

    Args:
        session_factory: Factory for the read session and per-group transactions.
        registry: Snapshot used for title similarity.
        threshold: Merge threshold (0.8 for consistency, 0.85 for cleanup).

    Returns:
        Sweep counts plus per-group errors keyed by survivor id.
    """
    sweep = MergeSweepResult()

    async with session_factory() as session:
        brands = await _brands_with_multiple_products(session)

    for brand in brands:
        async with session_factory() as session:
            products = await _products_of_brand(session, brand)
            groups = find_merge_groups(products, registry=registry, threshold=threshold)
            counts = await _variant_counts(session, [p.id for g in groups for p in g]) if groups else {}

        for group in groups:
            sweep.groups_found += 1
            survivor = pick_survivor(group, counts)
            loser_ids = [p.id for p in group if p.id != survivor.id]

            async def _merge(session: AsyncSession) -> MergeResult:
                return await merge_products(session, survivor_id=survivor.id, loser_ids=loser_ids)

            try:
                merged = await run_in_transaction(session_factory, _merge, label=f"merge into {survivor.id}")
            except Exception as e:
                logger.exception(f"[consistency] merge failed survivor_id={survivor.id} losers={loser_ids}")
                sweep.errors[survivor.id] = f"{type(e).__name__}: {e}"
                continue

            sweep.groups_merged += 1
            sweep.products_merged += merged.products_deleted
            sweep.variants_moved += merged.variants_moved + merged.variants_folded
            logger.info(
                f"[consistency] merged brand={brand} survivor_id={survivor.id} losers={loser_ids} "
                f"moved={merged.variants_moved} folded={merged.variants_folded}"
            )

    logger.info(
        f"[consistency] merge sweep threshold={threshold} groups={sweep.groups_found} "
        f"merged={sweep.products_merged} errors={len(sweep.errors)}"
    )
    return sweep


async def find_potential_duplicates(
    session: AsyncSession,
    *,
    registry: RegistrySnapshot,
    threshold: float = MERGE_THRESHOLD,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Read-only preview of product pairs a merge sweep would consider."""
    pairs: list[dict[str, Any]] = []
    for brand in await _brands_with_multiple_products(session):
        products = await _products_of_brand(session, brand)
        for i, a in enumerate(products):
            for b in products[i + 1 :]:
                score = score_products(a, b, registry=registry)
                if not is_match(score, ScoringMode.MERGE, threshold):
                    continue
                pairs.append(
                    {
                        "productA": {"id": a.id, "name": a.name, "model": a.model},
                        "productB": {"id": b.id, "name": b.name, "model": b.model},
                        "brand": brand,
                        "score": round(score, 4),
                    }
                )
                if len(pairs) >= limit:
                    return pairs
    return pairs


# ============================================================
# Category inference
# ============================================================


def infer_category_from_url(url: str | None, known_codes: set[str]) -> str | None:
    """Right-most URL path segment that is a known category code."""
    if not url:
        return None
    segments = [s.strip().lower() for s in urlparse(url).path.split("/") if s.strip()]
    for segment in reversed(segments):
        if segment in known_codes:
            return segment
    return None


async def update_product_categories(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """Fill missing product categories from their variants' source URLs.

    The most frequent inferred category wins; products whose URLs name no
    known category are left alone.

    Returns:
        Number of products updated.
    """
    async with session_factory() as session:
        res = await session.execute(select(ProductCategory.code))
        known_codes = {c.lower(): c for c in res.scalars().all()}
    lookup = set(known_codes)

    updated = 0
    last_id = 0
    while True:

        async def _page(session: AsyncSession) -> tuple[int, int | None]:
            products = await load_product_page(
                session,
                last_id=last_id,
                batch_size=batch_size,
                where=(Product.category_code.is_(None),),
            )
            n = 0
            for p in products:
                urls = await session.execute(
                    select(ProductVariant.source_url).where(ProductVariant.product_id == p.id)
                )
                votes = Counter(
                    code
                    for code in (infer_category_from_url(u, lookup) for u in urls.scalars().all())
                    if code
                )
                if not votes:
                    continue
                p.category_code = known_codes[votes.most_common(1)[0][0]]
                n += 1
            return n, (products[-1].id if products else None)

        n, page_last_id = await run_in_transaction(
            session_factory, _page, retries=2, label=f"categories page after id={last_id}"
        )
        if page_last_id is None:
            break
        updated += n
        last_id = page_last_id

    logger.info(f"[consistency] categories updated={updated}")
    return updated


# ============================================================
# Name normalization
# ============================================================


def format_memory_suffix(ram: str | None, storage: str | None) -> str | None:
    """RAM+storage label: ("8GB", "128GB") -> "8+128GB", ("12GB", "1TB") -> "12+1TB"."""
    if not ram or not storage:
        return None
    ram_digits = "".join(ch for ch in ram if ch.isdigit())
    storage = storage.strip().upper().replace(" ", "")
    if not ram_digits:
        return None
    if storage.endswith("TB"):
        return f"{ram_digits}+{storage}"
    storage_digits = "".join(ch for ch in storage if ch.isdigit())
    if not storage_digits:
        return None
    return f"{ram_digits}+{storage_digits}GB"


def build_product_name(brand: str, model: str, memory_suffix: str | None = None) -> str:
    name = f"{brand} {model}".strip()
    return f"{name} {memory_suffix}" if memory_suffix else name


async def _most_common_memory(session: AsyncSession, product_id: int) -> str | None:
    res = await session.execute(
        select(ProductVariant.property1, ProductVariant.size)
        .where(ProductVariant.product_id == product_id)
        .where(ProductVariant.property1.is_not(None))
        .where(ProductVariant.size.is_not(None))
        .order_by(ProductVariant.id)
    )
    combos = Counter(format_memory_suffix(ram, storage) for ram, storage in res.all())
    combos.pop(None, None)
    if not combos:
        return None
    return combos.most_common(1)[0][0]


async def normalize_product_names(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    smartphone_category: str = "smartphones",
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """Rebuild names as "brand model", plus "{ram}+{storage}GB" for smartphones.

    Returns:
        Number of products renamed.
    """
    updated = 0
    last_id = 0
    while True:

        async def _page(session: AsyncSession) -> tuple[int, int | None]:
            products = await load_product_page(
                session,
                last_id=last_id,
                batch_size=batch_size,
                where=(Product.brand.is_not(None), Product.model.is_not(None)),
            )
            n = 0
            for p in products:
                suffix = None
                if p.category_code == smartphone_category:
                    suffix = await _most_common_memory(session, p.id)
                name = build_product_name(p.brand, p.model, suffix)
                if name != p.name:
                    p.name = name
                    n += 1
            return n, (products[-1].id if products else None)

        n, page_last_id = await run_in_transaction(
            session_factory, _page, retries=2, label=f"names page after id={last_id}"
        )
        if page_last_id is None:
            break
        updated += n
        last_id = page_last_id

    logger.info(f"[consistency] names updated={updated}")
    return updated


# ============================================================
# Full check
# ============================================================


async def perform_consistency_check(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    merge_threshold: float = MERGE_THRESHOLD,
    smartphone_category: str = "smartphones",
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ConsistencyReport:
    """Refresh the registry, then run every consistency step in order."""
    registry = await cache.refresh_from(session_factory)
    report = ConsistencyReport(registry_version=registry.version)

    report.brand_model_changes = await update_brand_and_model(
        session_factory=session_factory, registry=registry, batch_size=batch_size
    )
    report.merge = await merge_similar_products(
        session_factory=session_factory, registry=registry, threshold=merge_threshold
    )
    report.categories_updated = await update_product_categories(
        session_factory=session_factory, batch_size=batch_size
    )
    report.names_updated = await normalize_product_names(
        session_factory=session_factory,
        smartphone_category=smartphone_category,
        batch_size=batch_size,
    )

    logger.info(
        f"[consistency] done brand_model={len(report.brand_model_changes)} merged={report.merge.products_merged} "
        f"categories={report.categories_updated} names={report.names_updated} errors={len(report.merge.errors)}"
    )
    return report
