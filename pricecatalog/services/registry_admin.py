"""Registry administration.

Every write runs in its own transaction and is followed by a cache refresh,
so the next unit of work sees the change without a restart.

Brand removal cascades: deleting a Brand entry (or changing its type away
from Brand) removes that brand's products, with their variants and price
history, and resets the raw items that pointed at them to unprocessed so the
next matching run re-resolves them.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricecatalog.models import (
    PriceHistory,
    Product,
    ProductVariant,
    RawItem,
    RegistryEntry,
    RegistryType,
)
from pricecatalog.services.registry_cache import RegistryCache
from pricecatalog.stores.postgres import session_scope

logger = logging.getLogger("uvicorn.error")


AUTO_BRAND_DESCRIPTION = "Auto-added from unmappable item analysis"


class RegistryError(ValueError):
    """Invalid registry input (bad type, bad pattern, duplicate key)."""


class RegistryEntryNotFound(RegistryError):
    """No registry entry with the given id."""


def parse_registry_type(value: str | RegistryType) -> RegistryType:
    """Accept "brand", "Brand", "not_brand", "NotBrand", "COMMON_WORD", ..."""
    if isinstance(value, RegistryType):
        return value
    wanted = re.sub(r"[\s_-]", "", str(value)).lower()
    for t in RegistryType:
        if t.value.replace("_", "") == wanted:
            return t
    raise RegistryError(f"Unknown registry type: {value!r}")


def normalize_key(entry_type: RegistryType, key: str | None) -> str:
    """Lowercase, whitespace-collapsed key; storage patterns are kept verbatim.

    Raises:
        RegistryError: Empty key or a storage pattern that does not compile.
    """
    raw = (key or "").strip()
    if not raw:
        raise RegistryError("Registry key must not be empty")
    if entry_type is RegistryType.STORAGE_PATTERN:
        try:
            re.compile(raw, re.IGNORECASE)
        except re.error as e:
            raise RegistryError(f"Invalid storage pattern {raw!r}: {e}") from e
        return raw
    return re.sub(r"\s+", " ", raw.lower())


def entry_to_dict(entry: RegistryEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.entry_type.value,
        "key": entry.key,
        "value": entry.value,
        "description": entry.description,
        "enabled": entry.enabled,
    }


async def _find_entry(session: AsyncSession, entry_type: RegistryType, key: str) -> RegistryEntry | None:
    res = await session.execute(
        select(RegistryEntry).where(RegistryEntry.entry_type == entry_type).where(RegistryEntry.key == key)
    )
    return res.scalar_one_or_none()


async def _get_entry(session: AsyncSession, entry_id: int) -> RegistryEntry:
    entry = await session.get(RegistryEntry, entry_id)
    if entry is None:
        raise RegistryEntryNotFound(f"Registry entry {entry_id} not found")
    return entry


# ============================================================
# Reads
# ============================================================


async def list_entries(
    session: AsyncSession,
    *,
    entry_type: RegistryType | None = None,
    enabled: bool | None = None,
) -> list[RegistryEntry]:
    query = select(RegistryEntry)
    if entry_type is not None:
        query = query.where(RegistryEntry.entry_type == entry_type)
    if enabled is not None:
        query = query.where(RegistryEntry.enabled.is_(enabled))
    res = await session.execute(query.order_by(RegistryEntry.entry_type, RegistryEntry.key))
    return list(res.scalars().all())


async def export_entries(session: AsyncSession, *, entry_type: RegistryType | None = None) -> list[dict[str, Any]]:
    """All entries in the bulk-import row format."""
    return [
        {
            "type": e.entry_type.value,
            "key": e.key,
            "value": e.value,
            "description": e.description,
            "enabled": e.enabled,
        }
        for e in await list_entries(session, entry_type=entry_type)
    ]


# ============================================================
# Brand cascade
# ============================================================


async def remove_brand_products(session: AsyncSession, brand: str) -> dict[str, int]:
    """Delete a brand's products and send their raw items back to matching.

    Order matters: raw items are detached first, then price history,
    variants and finally the products themselves.

    Returns:
        Counts of reset raw items and deleted rows.
    """
    res = await session.execute(select(Product.id).where(func.lower(Product.brand) == brand.strip().lower()))
    product_ids = list(res.scalars().all())
    if not product_ids:
        return {"products": 0, "variants": 0, "priceHistory": 0, "rawItemsReset": 0}

    # None of these rows are loaded in this session.
    no_sync = {"synchronize_session": False}
    variant_ids = select(ProductVariant.id).where(ProductVariant.product_id.in_(product_ids))

    reset = await session.execute(
        update(RawItem)
        .where(RawItem.matched_product_id.in_(product_ids))
        .values(processed=False, matched_product_id=None)
        .execution_options(**no_sync)
    )
    history = await session.execute(
        delete(PriceHistory).where(PriceHistory.variant_id.in_(variant_ids)).execution_options(**no_sync)
    )
    variants = await session.execute(
        delete(ProductVariant).where(ProductVariant.product_id.in_(product_ids)).execution_options(**no_sync)
    )
    products = await session.execute(
        delete(Product).where(Product.id.in_(product_ids)).execution_options(**no_sync)
    )

    counts = {
        "products": products.rowcount or 0,
        "variants": variants.rowcount or 0,
        "priceHistory": history.rowcount or 0,
        "rawItemsReset": reset.rowcount or 0,
    }
    logger.info(f"[registry] removed brand={brand} {counts}")
    return counts


# ============================================================
# Writes (each followed by a cache refresh)
# ============================================================


async def create_entry(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    entry_type: str | RegistryType,
    key: str,
    value: str | None = None,
    description: str | None = None,
    enabled: bool = True,
) -> dict[str, Any]:
    """Create a registry entry.

    Raises:
        RegistryError: Bad type, bad key/pattern, or (type, key) already exists.
    """
    t = parse_registry_type(entry_type)
    k = normalize_key(t, key)

    async with session_scope(session_factory) as session:
        if await _find_entry(session, t, k) is not None:
            raise RegistryError(f"Registry entry {t.value}:{k} already exists")
        entry = RegistryEntry(entry_type=t, key=k, value=value, description=description, enabled=enabled)
        session.add(entry)
        await session.flush()
        out = entry_to_dict(entry)

    await cache.refresh_from(session_factory)
    return out


async def update_entry(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    entry_id: int,
    key: str | None = None,
    value: str | None = None,
    description: str | None = None,
    enabled: bool | None = None,
) -> dict[str, Any]:
    """Patch a registry entry; fields left as None are kept."""
    async with session_scope(session_factory) as session:
        entry = await _get_entry(session, entry_id)
        if key is not None:
            k = normalize_key(entry.entry_type, key)
            if k != entry.key:
                if await _find_entry(session, entry.entry_type, k) is not None:
                    raise RegistryError(f"Registry entry {entry.entry_type.value}:{k} already exists")
                entry.key = k
        if value is not None:
            entry.value = value
        if description is not None:
            entry.description = description
        if enabled is not None:
            entry.enabled = enabled
        out = entry_to_dict(entry)

    await cache.refresh_from(session_factory)
    return out


async def delete_entry(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    entry_id: int,
) -> dict[str, Any]:
    """Delete an entry; deleting a Brand also removes its products."""
    async with session_scope(session_factory) as session:
        entry = await _get_entry(session, entry_id)
        out = entry_to_dict(entry)
        removed = None
        if entry.entry_type is RegistryType.BRAND:
            removed = await remove_brand_products(session, entry.key)
        await session.delete(entry)

    await cache.refresh_from(session_factory)
    return {"deleted": out, "removedProducts": removed}


async def change_entry_type(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    entry_id: int,
    new_type: str | RegistryType,
) -> dict[str, Any]:
    """Move an entry to another type (e.g. a false Brand to NotBrand)."""
    t = parse_registry_type(new_type)

    async with session_scope(session_factory) as session:
        entry = await _get_entry(session, entry_id)
        if entry.entry_type is t:
            return {"entry": entry_to_dict(entry), "removedProducts": None}

        k = normalize_key(t, entry.key)
        if await _find_entry(session, t, k) is not None:
            raise RegistryError(f"Registry entry {t.value}:{k} already exists")

        removed = None
        if entry.entry_type is RegistryType.BRAND:
            removed = await remove_brand_products(session, entry.key)
        entry.entry_type = t
        entry.key = k
        out = entry_to_dict(entry)

    await cache.refresh_from(session_factory)
    return {"entry": out, "removedProducts": removed}


async def bulk_import(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    rows: list[dict[str, Any]],
) -> dict[str, Any]:
    """Upsert many entries by (type, key).

    Invalid rows are reported and skipped; valid rows are written in one
    transaction.

    Args:
        rows: Dicts with "type", "key" and optional "value", "description",
            "enabled" (the `export_entries` format).

    Returns:
        {"created": n, "updated": n, "unchanged": n, "errors": [...]}
    """
    created = updated = unchanged = 0
    errors: list[dict[str, Any]] = []

    async with session_scope(session_factory) as session:
        seen: set[tuple[RegistryType, str]] = set()
        for i, row in enumerate(rows):
            try:
                t = parse_registry_type(row.get("type", ""))
                k = normalize_key(t, row.get("key"))
            except RegistryError as e:
                errors.append({"row": i, "error": str(e)})
                continue
            if (t, k) in seen:
                errors.append({"row": i, "error": f"Duplicate row for {t.value}:{k}"})
                continue
            seen.add((t, k))

            value = row.get("value")
            description = row.get("description")
            enabled = bool(row.get("enabled", True))

            entry = await _find_entry(session, t, k)
            if entry is None:
                session.add(RegistryEntry(entry_type=t, key=k, value=value, description=description, enabled=enabled))
                created += 1
                continue
            if (entry.value, entry.description, entry.enabled) == (value, description, enabled):
                unchanged += 1
                continue
            entry.value, entry.description, entry.enabled = value, description, enabled
            updated += 1

    await cache.refresh_from(session_factory)
    logger.info(f"[registry] bulk import created={created} updated={updated} unchanged={unchanged} errors={len(errors)}")
    return {"created": created, "updated": updated, "unchanged": unchanged, "errors": errors}


async def add_potential_brands_to_registry(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    cache: RegistryCache,
    brands: list[str],
) -> dict[str, Any]:
    """Add mined brand candidates as Brand entries (existing ones are skipped)."""
    added: list[str] = []
    skipped: list[str] = []

    async with session_scope(session_factory) as session:
        for brand in brands:
            try:
                k = normalize_key(RegistryType.BRAND, brand)
            except RegistryError:
                continue
            if k in added or await _find_entry(session, RegistryType.BRAND, k) is not None:
                skipped.append(k)
                continue
            session.add(
                RegistryEntry(
                    entry_type=RegistryType.BRAND,
                    key=k,
                    value=k.capitalize(),
                    description=AUTO_BRAND_DESCRIPTION,
                    enabled=True,
                )
            )
            added.append(k)

    await cache.refresh_from(session_factory)
    logger.info(f"[registry] auto-added brands={added} skipped={skipped}")
    return {"added": added, "skipped": skipped}
