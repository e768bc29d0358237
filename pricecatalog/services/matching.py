"""Matching engine: raw_items -> products / variants.

Each unprocessed raw item ends in exactly one of two states:
- Matched: attached (as a variant) to the best-scoring existing product, or
  to a newly created product when nothing clears the match threshold
- Unmappable: parked in `unmappable_items` with a reason code

Notes:
- Items never get a guessed brand; no registry brand means MissingBrand.
- Low-confidence models are only allowed to join existing products; they
  never seed a new product (NoSimilarItems / InsufficientSimilarity instead).
- Re-matching an existing variant refreshes price fields only.
- Each raw item runs in its own transaction. One item's failure is logged,
  parked as Other, and left processed=false for the next run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricecatalog.models import (
    Product,
    ProductCategory,
    ProductVariant,
    RawItem,
    UnmappableItem,
    UnmappableReason,
)
from pricecatalog.services.price_history import RecordOutcome, record_price
from pricecatalog.services.registry_cache import RegistrySnapshot
from pricecatalog.services.similarity import (
    MATCH_THRESHOLD,
    ExtractedAttributes,
    ScoringMode,
    is_match,
    score_candidate,
)
from pricecatalog.services.text_normalizer import (
    ExtractionConfidence,
    NormalizedTitle,
    extract_category,
    key_search_term,
    normalize_title,
)
from pricecatalog.services.unmappable import (
    count_unmappable_items,
    remove_unmappable_item,
    track_unmappable_item,
)
from pricecatalog.settings import Settings
from pricecatalog.stores.postgres import run_in_transaction, session_scope

logger = logging.getLogger("uvicorn.error")


MAX_CANDIDATES = 30
ENOUGH_BRAND_CANDIDATES = 10
ENOUGH_CATEGORY_CANDIDATES = 5


class MatchStatus(Enum):
    MATCHED = "matched"  # attached to an existing product
    CREATED = "created"  # new product created
    UNMAPPABLE = "unmappable"
    SKIPPED = "skipped"  # already processed


@dataclass
class MatchingConfig:
    """Knobs for one matching run."""

    threshold: float = MATCH_THRESHOLD
    smartphone_category: str = "smartphones"
    default_currency: str = "BAM"
    conflict_retries: int = 2
    batch_size: int = 100

    @classmethod
    def from_settings(cls, settings: Settings) -> MatchingConfig:
        return cls(
            threshold=settings.match_threshold,
            smartphone_category=settings.smartphone_category,
            default_currency=settings.default_currency,
            conflict_retries=settings.match_conflict_retries,
            batch_size=settings.match_batch_size,
        )


@dataclass
class MatchOutcome:
    raw_item_id: int
    status: MatchStatus
    product_id: int | None = None
    variant_id: int | None = None
    variant_created: bool = False
    score: float | None = None
    reason_code: UnmappableReason | None = None
    price_outcome: RecordOutcome | None = None


@dataclass
class MatchStats:
    scanned: int = 0
    matched_existing: int = 0
    created_products: int = 0
    created_variants: int = 0
    updated_variants: int = 0
    unmappable: int = 0
    skipped_processed: int = 0
    errors: int = 0
    price_rows_inserted: int = 0
    price_rows_updated: int = 0
    unmappable_by_reason: dict[str, int] = field(default_factory=dict)

    def add(self, outcome: MatchOutcome) -> None:
        if outcome.status is MatchStatus.SKIPPED:
            self.skipped_processed += 1
            return
        if outcome.status is MatchStatus.UNMAPPABLE:
            self.unmappable += 1
            code = outcome.reason_code.value if outcome.reason_code else "unknown"
            self.unmappable_by_reason[code] = self.unmappable_by_reason.get(code, 0) + 1
            return

        if outcome.status is MatchStatus.CREATED:
            self.created_products += 1
        else:
            self.matched_existing += 1
        if outcome.variant_created:
            self.created_variants += 1
        else:
            self.updated_variants += 1
        if outcome.price_outcome is RecordOutcome.INSERTED:
            self.price_rows_inserted += 1
        elif outcome.price_outcome is RecordOutcome.UPDATED:
            self.price_rows_updated += 1


# ============================================================
# Candidate search
# ============================================================


async def find_candidates(
    session: AsyncSession,
    normalized: NormalizedTitle,
    *,
    limit: int = MAX_CANDIDATES,
) -> list[Product]:
    """Cheap candidate generation; the scorer decides.

    Every product of the same brand; if that yields fewer than 10, add
    same-category products; if still fewer than 5, add a text search on the
    model. `limit` caps only the two fallback queries.
    """
    found: dict[int, Product] = {}

    def _add(products: list[Product]) -> None:
        for p in products:
            found.setdefault(p.id, p)

    if normalized.brand:
        res = await session.execute(
            select(Product)
            .where(func.lower(Product.brand) == normalized.brand.lower())
            .order_by(Product.id)
        )
        _add(list(res.scalars().all()))

    if len(found) < ENOUGH_BRAND_CANDIDATES and normalized.category != "unknown":
        res = await session.execute(
            select(Product)
            .where(Product.category_code == normalized.category)
            .order_by(Product.id)
            .limit(limit)
        )
        _add(list(res.scalars().all()))

    if len(found) < ENOUGH_CATEGORY_CANDIDATES and normalized.model:
        term = key_search_term(normalized.model) or normalized.model
        res = await session.execute(
            select(Product)
            .where(
                or_(
                    Product.model.icontains(term, autoescape=True),
                    Product.name.icontains(term, autoescape=True),
                )
            )
            .order_by(Product.id)
            .limit(limit)
        )
        _add(list(res.scalars().all()))

    return list(found.values())


def pick_best_candidate(
    normalized: NormalizedTitle,
    candidates: list[Product],
    *,
    registry: RegistrySnapshot,
) -> tuple[Product | None, float]:
    """Highest-scoring candidate (first one wins ties) and its score."""
    extracted = ExtractedAttributes(
        brand=normalized.brand,
        model=normalized.model,
        title=normalized.cleaned_title,
    )
    best: Product | None = None
    best_score = 0.0
    for product in candidates:
        score = score_candidate(extracted, product, registry=registry)
        if best is None or score > best_score:
            best, best_score = product, score
    return best, best_score


# ============================================================
# Variant upsert
# ============================================================


def _eq_or_null(column: Any, value: Any) -> Any:
    return column.is_(None) if value is None else column == value


async def find_variant(
    session: AsyncSession,
    *,
    product_id: int,
    website_code: str | None,
    source_url: str | None,
) -> ProductVariant | None:
    res = await session.execute(
        select(ProductVariant)
        .where(ProductVariant.product_id == product_id)
        .where(_eq_or_null(ProductVariant.website_code, website_code))
        .where(_eq_or_null(ProductVariant.source_url, source_url))
        .order_by(ProductVariant.id)
        .limit(1)
    )
    return res.scalar_one_or_none()


async def upsert_variant(
    session: AsyncSession,
    *,
    product: Product,
    raw: RawItem,
    normalized: NormalizedTitle,
    currency: str,
) -> tuple[ProductVariant, bool]:
    """Attach the raw listing to a product.

    An existing (product, website, url) variant only gets its price fields
    refreshed; title/color/size keep the values chosen at creation.

    Returns:
        Tuple of (variant, created).
    """
    variant = await find_variant(
        session,
        product_id=product.id,
        website_code=raw.website_code,
        source_url=raw.link,
    )
    if variant is not None:
        variant.price = raw.price
        variant.old_price = raw.old_price
        variant.discount = raw.discount
        variant.price_string = raw.price_string
        await session.flush()
        return variant, False

    variant = ProductVariant(
        product_id=product.id,
        website_code=raw.website_code,
        source_url=raw.link,
        title=raw.title,
        color=normalized.color,
        size=normalized.storage,
        property1=normalized.ram,
        price=raw.price,
        old_price=raw.old_price,
        discount=raw.discount,
        price_string=raw.price_string,
        currency=currency,
        in_stock=True,
        raw_product_id=raw.id,
    )
    session.add(variant)
    await session.flush()
    return variant, True


# ============================================================
# Per-item pipeline
# ============================================================


async def _park(
    session: AsyncSession,
    raw: RawItem,
    normalized: NormalizedTitle,
    *,
    reason_code: UnmappableReason,
    reason: str,
    score: float | None = None,
) -> MatchOutcome:
    await track_unmappable_item(
        session,
        raw,
        reason_code=reason_code,
        reason=reason,
        category=normalized.category,
        extracted=normalized.to_dict(),
    )
    raw.processed = True
    raw.matched_product_id = None
    return MatchOutcome(
        raw_item_id=raw.id,
        status=MatchStatus.UNMAPPABLE,
        reason_code=reason_code,
        score=score,
    )


def _missing_fields(raw: RawItem) -> list[str]:
    missing = []
    if not (raw.title or "").strip():
        missing.append("title")
    if not (raw.link or "").strip():
        missing.append("link")
    if raw.price is None:
        missing.append("price")
    return missing


async def process_raw_item(
    session: AsyncSession,
    raw: RawItem,
    *,
    registry: RegistrySnapshot,
    config: MatchingConfig,
    force: bool = False,
) -> MatchOutcome:
    """Run the full matching pipeline for one raw item.

    Args:
        session: DB session (caller controls commit/rollback).
        raw: Raw item to map.
        registry: Registry snapshot for extraction and scoring.
        config: Matching knobs.
        force: Re-run even if the item is marked processed (retry jobs).
            Items already matched to a product are still skipped.

    Returns:
        What happened to the item. "No match" is an outcome, not an error.
    """
    if raw.matched_product_id is not None or (raw.processed and not force):
        if force:
            await remove_unmappable_item(session, raw.id)
        return MatchOutcome(raw_item_id=raw.id, status=MatchStatus.SKIPPED, product_id=raw.matched_product_id)

    category = extract_category(raw.config_code)
    normalized = normalize_title(
        raw.title,
        registry=registry,
        config_code=raw.config_code,
        include_ram=category == config.smartphone_category,
    )

    missing = _missing_fields(raw)
    if missing:
        return await _park(
            session,
            raw,
            normalized,
            reason_code=UnmappableReason.INVALID_DATA,
            reason=f"Missing required fields: {', '.join(missing)}",
        )

    if category == "unknown" or await session.get(ProductCategory, category) is None:
        return await _park(
            session,
            raw,
            normalized,
            reason_code=UnmappableReason.INVALID_CATEGORY,
            reason=f"Unknown category '{category}' from config code '{raw.config_code}'",
        )

    if not normalized.brand:
        return await _park(
            session,
            raw,
            normalized,
            reason_code=UnmappableReason.MISSING_BRAND,
            reason="No registry brand found in title",
        )

    candidates = await find_candidates(session, normalized)
    best, best_score = pick_best_candidate(normalized, candidates, registry=registry)

    status = MatchStatus.MATCHED
    if best is not None and is_match(best_score, ScoringMode.CANDIDATE_MATCH, config.threshold):
        product = best
        # Touching the row bumps its version, so a concurrent merge of this
        # product fails its version check instead of dropping the new variant.
        product.updated_at = datetime.now(timezone.utc)
    elif normalized.model_confidence is ExtractionConfidence.LOW or not normalized.model:
        if not candidates:
            return await _park(
                session,
                raw,
                normalized,
                reason_code=UnmappableReason.NO_SIMILAR_ITEMS,
                reason=f"Low-confidence model '{normalized.model}' and no candidate products",
            )
        return await _park(
            session,
            raw,
            normalized,
            reason_code=UnmappableReason.INSUFFICIENT_SIMILARITY,
            reason=(
                f"Low-confidence model '{normalized.model}'; best score {best_score:.3f} "
                f"below {config.threshold:.2f} (product_id={best.id if best else None})"
            ),
            score=best_score,
        )
    else:
        status = MatchStatus.CREATED
        product = Product(
            name=normalized.cleaned_title or (raw.title or "").strip(),
            brand=normalized.brand,
            model=normalized.model,
            category_code=category,
        )
        session.add(product)
        await session.flush()
        logger.info(
            f"[matching] created product_id={product.id} brand={product.brand} model={product.model} "
            f"raw_item_id={raw.id} best_score={best_score:.3f}"
        )

    variant, created = await upsert_variant(
        session,
        product=product,
        raw=raw,
        normalized=normalized,
        currency=config.default_currency,
    )
    price_outcome = await record_price(session, variant, observed_at=raw.created_at)

    raw.processed = True
    raw.matched_product_id = product.id
    await remove_unmappable_item(session, raw.id)

    return MatchOutcome(
        raw_item_id=raw.id,
        status=status,
        product_id=product.id,
        variant_id=variant.id,
        variant_created=created,
        score=best_score if status is MatchStatus.MATCHED else None,
        price_outcome=price_outcome,
    )


# ============================================================
# Batch entry points
# ============================================================


async def _record_failure(
    session_factory: async_sessionmaker[AsyncSession],
    raw_item_id: int,
    error: Exception,
) -> None:
    """Park a crashed item as Other, leaving processed=false."""
    try:
        async with session_scope(session_factory) as session:
            raw = await session.get(RawItem, raw_item_id)
            if raw is None:
                return
            await track_unmappable_item(
                session,
                raw,
                reason_code=UnmappableReason.OTHER,
                reason=f"{type(error).__name__}: {error}",
                category=extract_category(raw.config_code),
            )
    except Exception:
        logger.exception(f"[matching] could not record failure raw_item_id={raw_item_id}")


async def match_one(
    raw_item_id: int,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    registry: RegistrySnapshot,
    config: MatchingConfig,
    force: bool = False,
) -> MatchOutcome | None:
    """Process one raw item in its own transaction.

    Returns None when the item crashed (logged and parked as Other) or no
    longer exists.
    """

    async def _work(session: AsyncSession) -> MatchOutcome | None:
        raw = await session.get(RawItem, raw_item_id)
        if raw is None:
            return None
        return await process_raw_item(session, raw, registry=registry, config=config, force=force)

    try:
        return await run_in_transaction(
            session_factory,
            _work,
            retries=config.conflict_retries,
            label=f"raw_item={raw_item_id}",
        )
    except Exception as e:
        logger.exception(f"[matching] failed raw_item_id={raw_item_id}")
        await _record_failure(session_factory, raw_item_id, e)
        return None


async def process_unprocessed_items(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    registry: RegistrySnapshot,
    config: MatchingConfig | None = None,
    category: str | None = None,
    limit: int | None = None,
) -> MatchStats:
    """Match all unprocessed raw items, page by page.

    Args:
        session_factory: Factory for per-page and per-item sessions.
        registry: Snapshot used for the whole run.
        config: Matching knobs (defaults if omitted).
        category: Only items whose config_code contains this text.
        limit: Stop after scanning this many items.

    Returns:
        Aggregated stats.
    """
    config = config or MatchingConfig()
    stats = MatchStats()
    last_id = 0

    while True:
        async with session_factory() as session:
            query = (
                select(RawItem.id)
                .where(RawItem.processed.is_(False))
                .where(RawItem.id > last_id)
                .order_by(RawItem.id)
                .limit(config.batch_size)
            )
            if category:
                query = query.where(RawItem.config_code.contains(category, autoescape=True))
            ids = list((await session.execute(query)).scalars().all())

        if not ids:
            break

        for raw_item_id in ids:
            stats.scanned += 1
            outcome = await match_one(
                raw_item_id,
                session_factory=session_factory,
                registry=registry,
                config=config,
            )
            if outcome is None:
                stats.errors += 1
            else:
                stats.add(outcome)
            if limit is not None and stats.scanned >= limit:
                break

        last_id = ids[-1]
        logger.info(
            f"[matching] page done last_id={last_id} scanned={stats.scanned} created={stats.created_products} "
            f"matched={stats.matched_existing} unmappable={stats.unmappable} errors={stats.errors}"
        )
        if limit is not None and stats.scanned >= limit:
            break

    return stats


@dataclass
class RetryStats:
    before: int = 0
    after: int = 0
    attempted: int = 0
    mapped: int = 0
    still_unmappable: int = 0
    errors: int = 0


async def retry_unmappable_items(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    registry: RegistrySnapshot,
    config: MatchingConfig | None = None,
    max_attempts: int = 5,
) -> RetryStats:
    """Re-run the pipeline for parked items with fewer than max_attempts tries."""
    config = config or MatchingConfig()
    stats = RetryStats()

    async with session_factory() as session:
        stats.before = await count_unmappable_items(session)
        res = await session.execute(
            select(UnmappableItem.raw_item_id)
            .where(UnmappableItem.attempts < max_attempts)
            .order_by(UnmappableItem.raw_item_id)
        )
        ids = list(res.scalars().all())

    for raw_item_id in ids:
        stats.attempted += 1
        outcome = await match_one(
            raw_item_id,
            session_factory=session_factory,
            registry=registry,
            config=config,
            force=True,
        )
        if outcome is None:
            stats.errors += 1
        elif outcome.status is MatchStatus.UNMAPPABLE:
            stats.still_unmappable += 1
        else:
            stats.mapped += 1

    async with session_factory() as session:
        stats.after = await count_unmappable_items(session)

    logger.info(
        f"[matching] retry done before={stats.before} after={stats.after} mapped={stats.mapped} "
        f"still_unmappable={stats.still_unmappable} errors={stats.errors}"
    )
    return stats
