"""Registry cache: immutable snapshots of the normalization vocabulary.

Goal:
- Extraction must be deterministic for a given registry state, so every
  normalizer/scorer call takes a `RegistrySnapshot` explicitly.
- Admin edits take effect without restarts: the cache reloads hourly and
  right after every registry write.

Important:
- A snapshot is never mutated. `RegistryCache.refresh()` builds a new one and
  swaps the reference, so readers see either the old or the new rules.
- Storage patterns that fail to compile are logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricecatalog.models import RegistryEntry, RegistryType

logger = logging.getLogger("uvicorn.error")


# Tier words that follow a model number ("S21 Ultra", "14 Pro Max").
DEFAULT_BRAND_MODIFIERS: frozenset[str] = frozenset({"lite", "pro", "plus", "ultra", "max", "mini"})


def _normalize_word(s: str) -> str:
    s = s.strip().lower()
    return re.sub(r"\s+", " ", s)


def _dedup(values: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for v in values:
        if not v or v in seen:
            continue
        out.append(v)
        seen.add(v)
    return out


def compile_storage_patterns(sources: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    """Compile storage regexes case-insensitively, dropping invalid ones."""
    compiled: list[re.Pattern[str]] = []
    for src in _dedup(s.strip() for s in sources):
        try:
            compiled.append(re.compile(src, re.IGNORECASE))
        except re.error as e:
            logger.warning(f"[registry] invalid storage pattern dropped pattern={src!r} error={e}")
    return tuple(compiled)


@dataclass(frozen=True)
class RegistrySnapshot:
    """One consistent view of the registry.

    Brands, common words and colors are lowercase. Colors are ordered longest
    first so multi-word colors win over their last word ("space gray" vs "gray").
    """

    version: int
    brands: tuple[str, ...]
    common_words: frozenset[str]
    colors: tuple[str, ...]
    storage_patterns: tuple[re.Pattern[str], ...]
    brand_modifiers: frozenset[str] = DEFAULT_BRAND_MODIFIERS
    not_brands: frozenset[str] = frozenset()
    loaded_at: datetime | None = field(default=None, compare=False)

    @classmethod
    def empty(cls) -> RegistrySnapshot:
        return build_snapshot(version=0)

    def counts(self) -> dict[str, int]:
        return {
            "brands": len(self.brands),
            "common_words": len(self.common_words),
            "colors": len(self.colors),
            "storage_patterns": len(self.storage_patterns),
        }


def build_snapshot(
    *,
    brands: Iterable[str] = (),
    not_brands: Iterable[str] = (),
    common_words: Iterable[str] = (),
    colors: Iterable[str] = (),
    storage_patterns: Iterable[str] = (),
    version: int = 0,
    loaded_at: datetime | None = None,
) -> RegistrySnapshot:
    """Build a snapshot from plain values (store rows or test fixtures)."""
    excluded = {_normalize_word(x) for x in not_brands}
    brand_list = sorted(b for b in _dedup(_normalize_word(x) for x in brands) if b not in excluded)
    words = frozenset(_dedup(_normalize_word(x) for x in common_words))
    color_list = sorted(_dedup(_normalize_word(x) for x in colors), key=lambda c: (-len(c), c))

    return RegistrySnapshot(
        version=version,
        brands=tuple(brand_list),
        common_words=words,
        colors=tuple(color_list),
        storage_patterns=compile_storage_patterns(storage_patterns),
        brand_modifiers=DEFAULT_BRAND_MODIFIERS | {w for w in words if w in DEFAULT_BRAND_MODIFIERS},
        not_brands=frozenset(excluded),
        loaded_at=loaded_at,
    )


async def load_registry_snapshot(session: AsyncSession, *, version: int) -> RegistrySnapshot:
    """Load enabled registry rows into a new snapshot."""
    res = await session.execute(
        select(RegistryEntry).where(RegistryEntry.enabled.is_(True)).order_by(RegistryEntry.id)
    )
    rows = res.scalars().all()

    by_type: dict[RegistryType, list[str]] = {t: [] for t in RegistryType}
    for r in rows:
        key = str(r.key or "")
        if key.strip():
            by_type[r.entry_type].append(key)

    return build_snapshot(
        brands=by_type[RegistryType.BRAND],
        not_brands=by_type[RegistryType.NOT_BRAND],
        common_words=by_type[RegistryType.COMMON_WORD],
        colors=by_type[RegistryType.COLOR],
        storage_patterns=by_type[RegistryType.STORAGE_PATTERN],
        version=version,
        loaded_at=datetime.now(timezone.utc),
    )


class RegistryCache:
    """Owner of the current snapshot.

    Readers call `snapshot()` once per unit of work and pass the result down.
    """

    def __init__(self, initial: RegistrySnapshot | None = None) -> None:
        self._snapshot = initial or RegistrySnapshot.empty()
        self._refresh_lock = asyncio.Lock()

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    async def refresh(self, session: AsyncSession) -> RegistrySnapshot:
        """Reload the registry and swap in the new snapshot."""
        async with self._refresh_lock:
            snapshot = await load_registry_snapshot(session, version=self._snapshot.version + 1)
            self._snapshot = snapshot
        logger.info(f"[registry] refreshed version={snapshot.version} counts={snapshot.counts()}")
        return snapshot

    async def refresh_from(self, session_factory: async_sessionmaker[AsyncSession]) -> RegistrySnapshot:
        """Refresh using a short-lived session of its own."""
        async with session_factory() as session:
            return await self.refresh(session)


async def run_periodic_refresh(
    cache: RegistryCache,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    interval_seconds: int,
) -> None:
    """Refresh forever on a fixed interval (run as a background task)."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await cache.refresh_from(session_factory)
        except Exception:
            # Keep serving the previous snapshot; the next tick tries again.
            logger.exception("[registry] periodic refresh failed")


@lru_cache
def get_registry_cache() -> RegistryCache:
    """Process-wide registry cache."""
    return RegistryCache()
