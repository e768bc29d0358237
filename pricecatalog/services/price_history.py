"""Price history recorder: one snapshot per variant per calendar day.

Rules:
- No row for the variant that day: insert one.
- Same-day row with identical price fields: nothing is written.
- Same-day row with different price fields: that row is updated in place
  (including `recorded_at`), so the day keeps exactly one entry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricecatalog.models import PriceHistory, ProductVariant

logger = logging.getLogger("uvicorn.error")


class RecordOutcome(Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


_PRICE_FIELDS = ("price", "old_price", "discount", "price_string")


def day_window(observed_at: datetime) -> tuple[datetime, datetime]:
    """[start of day, start of next day) in observed_at's own timezone."""
    start = observed_at.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def _prices_differ(entry: PriceHistory, variant: ProductVariant) -> bool:
    return any(getattr(entry, f) != getattr(variant, f) for f in _PRICE_FIELDS)


async def find_entry_for_day(
    session: AsyncSession, *, variant_id: int, observed_at: datetime
) -> PriceHistory | None:
    start, end = day_window(observed_at)
    res = await session.execute(
        select(PriceHistory)
        .where(PriceHistory.variant_id == variant_id)
        .where(PriceHistory.recorded_at >= start)
        .where(PriceHistory.recorded_at < end)
        .order_by(PriceHistory.recorded_at.desc(), PriceHistory.id.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def record_price(
    session: AsyncSession,
    variant: ProductVariant,
    observed_at: datetime | None = None,
) -> RecordOutcome:
    """Record the variant's current price fields for observed_at's day.

    Args:
        session: DB session (caller controls commit/rollback).
        variant: Flushed variant whose price fields hold the observation.
        observed_at: Observation time (defaults to now, UTC).

    Returns:
        What happened to the day's row.
    """
    observed_at = observed_at or datetime.now(timezone.utc)
    existing = await find_entry_for_day(session, variant_id=variant.id, observed_at=observed_at)

    if existing is not None:
        if not _prices_differ(existing, variant):
            return RecordOutcome.UNCHANGED
        for f in _PRICE_FIELDS:
            setattr(existing, f, getattr(variant, f))
        existing.recorded_at = observed_at
        return RecordOutcome.UPDATED

    session.add(
        PriceHistory(
            variant_id=variant.id,
            website_code=variant.website_code,
            price=variant.price,
            old_price=variant.old_price,
            discount=variant.discount,
            price_string=variant.price_string,
            recorded_at=observed_at,
        )
    )
    return RecordOutcome.INSERTED


async def move_price_history(session: AsyncSession, *, from_variant_id: int, to_variant_id: int) -> int:
    """Reassign a variant's history to another variant, keeping one row per day.

    Rows whose day already exists on the target are deleted (the target's own
    observation wins). Used when a merge folds a duplicate variant into one
    that already exists on the surviving product.

    Returns:
        Number of rows moved.
    """
    res = await session.execute(
        select(PriceHistory)
        .where(PriceHistory.variant_id == from_variant_id)
        .order_by(PriceHistory.recorded_at)
    )
    moved = 0
    for entry in res.scalars().all():
        clash = await find_entry_for_day(session, variant_id=to_variant_id, observed_at=entry.recorded_at)
        if clash is not None:
            await session.delete(entry)
            continue
        entry.variant_id = to_variant_id
        moved += 1
        # Flush so the next day-window lookup sees this row on the target.
        await session.flush()
    # Deleted clashes must hit the DB before the caller deletes the source variant.
    await session.flush()
    return moved
