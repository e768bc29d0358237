"""Unmappable item tracking and analytics.

Raw items the matching engine refuses to map land in `unmappable_items` with
a reason code. This module:
- upserts those rows (attempts / last_attempt bookkeeping)
- summarizes them for the admin surface
- mines MissingBrand titles for brand candidates the registry lacks
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricecatalog.models import RawItem, UnmappableItem, UnmappableReason
from pricecatalog.services.registry_cache import RegistrySnapshot
from pricecatalog.services.text_normalizer import clean_title

logger = logging.getLogger("uvicorn.error")

_MAX_REASON_LENGTH = 1000
_MIN_BRAND_CANDIDATE_LENGTH = 3
_MAX_SAMPLE_IDS = 5


def _json_load_dict(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


async def track_unmappable_item(
    session: AsyncSession,
    raw: RawItem,
    *,
    reason_code: UnmappableReason,
    reason: str,
    category: str | None,
    extracted: dict[str, Any] | None = None,
) -> UnmappableItem:
    """Create or refresh the unmappable row for a raw item.

    The first failure creates the row with attempts=1; later failures bump
    attempts and refresh the reason and extraction snapshot.
    """
    now = datetime.now(timezone.utc)
    payload = json.dumps(extracted or {}, ensure_ascii=False)
    reason = reason[:_MAX_REASON_LENGTH]

    item = await session.get(UnmappableItem, raw.id)
    if item is None:
        item = UnmappableItem(
            raw_item_id=raw.id,
            title=raw.title,
            category=category,
            config_code=raw.config_code,
            reason_code=reason_code,
            reason=reason,
            extracted_data_json=payload,
            attempts=1,
            first_seen=now,
            last_attempt=now,
        )
        session.add(item)
    else:
        item.title = raw.title
        item.category = category
        item.config_code = raw.config_code
        item.reason_code = reason_code
        item.reason = reason
        item.extracted_data_json = payload
        item.attempts = (item.attempts or 0) + 1
        item.last_attempt = now

    logger.info(
        f"[unmappable] raw_item_id={raw.id} reason={reason_code.value} attempts={item.attempts} detail={reason}"
    )
    return item


async def remove_unmappable_item(session: AsyncSession, raw_item_id: int) -> None:
    """Drop the unmappable row of a raw item that has now been mapped."""
    await session.execute(delete(UnmappableItem).where(UnmappableItem.raw_item_id == raw_item_id))


async def count_unmappable_items(session: AsyncSession) -> int:
    res = await session.execute(select(func.count()).select_from(UnmappableItem))
    return int(res.scalar_one())


async def get_unmappable_stats(session: AsyncSession) -> dict[str, Any]:
    """Totals by reason code and by category."""
    total = await count_unmappable_items(session)

    by_reason_res = await session.execute(
        select(UnmappableItem.reason_code, func.count()).group_by(UnmappableItem.reason_code)
    )
    by_category_res = await session.execute(
        select(UnmappableItem.category, func.count()).group_by(UnmappableItem.category)
    )

    return {
        "total": total,
        "byReason": {code.value: int(n) for code, n in by_reason_res.all()},
        "byCategory": {(category or "unknown"): int(n) for category, n in by_category_res.all()},
    }


async def get_unmappable_item_details(session: AsyncSession, raw_item_id: int) -> dict[str, Any] | None:
    """One unmappable row with its extraction snapshot parsed."""
    item = await session.get(UnmappableItem, raw_item_id)
    if item is None:
        return None
    return {
        "rawItemId": item.raw_item_id,
        "title": item.title,
        "category": item.category,
        "configCode": item.config_code,
        "reasonCode": item.reason_code.value,
        "reason": item.reason,
        "attempts": item.attempts,
        "firstSeen": item.first_seen.isoformat() if item.first_seen else None,
        "lastAttempt": item.last_attempt.isoformat() if item.last_attempt else None,
        "extractedData": _json_load_dict(item.extracted_data_json),
    }


# ============================================================
# Brand mining
# ============================================================


@dataclass
class BrandCandidate:
    """A word that leads many MissingBrand titles."""

    brand: str
    frequency: int
    exists_in_registry: bool
    sample_raw_item_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "brand": self.brand,
            "frequency": self.frequency,
            "existsInRegistry": self.exists_in_registry,
            "sampleRawItemIds": self.sample_raw_item_ids,
        }


async def analyze_potential_missing_brands(
    session: AsyncSession,
    *,
    registry: RegistrySnapshot,
    min_frequency: int = 2,
) -> list[BrandCandidate]:
    """Suggest brands from the first word of MissingBrand titles.

    Words shorter than 3 characters, NotBrand keys and pure numbers are
    skipped. Results are ordered by frequency, then alphabetically.
    """
    res = await session.execute(
        select(UnmappableItem.raw_item_id, UnmappableItem.title)
        .where(UnmappableItem.reason_code == UnmappableReason.MISSING_BRAND)
        .order_by(UnmappableItem.raw_item_id)
    )

    counts: Counter[str] = Counter()
    samples: dict[str, list[int]] = {}
    for raw_item_id, title in res.all():
        words = clean_title(title, registry=registry).split()
        if not words:
            continue
        word = words[0]
        if len(word) < _MIN_BRAND_CANDIDATE_LENGTH or word.isdigit() or word in registry.not_brands:
            continue
        counts[word] += 1
        ids = samples.setdefault(word, [])
        if len(ids) < _MAX_SAMPLE_IDS:
            ids.append(raw_item_id)

    known = set(registry.brands)
    candidates = [
        BrandCandidate(
            brand=word,
            frequency=n,
            exists_in_registry=word in known,
            sample_raw_item_ids=samples[word],
        )
        for word, n in counts.items()
        if n >= min_frequency
    ]
    candidates.sort(key=lambda c: (-c.frequency, c.brand))
    return candidates
