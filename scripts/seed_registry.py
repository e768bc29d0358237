#!/usr/bin/env python3
"""Seed the registry and category tables.

Creates:
- Product categories (smartphones, tablets, laptops, ...)
- Brands, NotBrand guards, common marketing words, colors
- Storage patterns (regex sources; first group is the storage size)

The script is idempotent: rows that already exist are skipped.

Usage:
    python -m scripts.seed_registry
"""

import asyncio
import os
import sys

# Add parent to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricecatalog.models import ProductCategory, RegistryEntry, RegistryType
from pricecatalog.settings import get_settings

load_dotenv()

# ============================================================
# Seed data
# ============================================================

CATEGORIES = {
    "smartphones": "Smartphones",
    "tablets": "Tablets",
    "laptops": "Laptops",
    "smartwatches": "Smartwatches",
    "headphones": "Headphones",
    "tv": "Televisions",
}

BRANDS = [
    "apple",
    "samsung",
    "xiaomi",
    "huawei",
    "honor",
    "oppo",
    "realme",
    "motorola",
    "nokia",
    "google",
    "oneplus",
    "sony",
    "lenovo",
    "asus",
    "zte",
    "tcl",
]

# Words that look like brands at the start of titles but are not
NOT_BRANDS = ["mobitel", "telefon", "smartphone", "novi"]

COMMON_WORDS = [
    "mobitel",
    "mobilni",
    "telefon",
    "smartphone",
    "pametni",
    "novo",
    "novi",
    "akcija",
    "dual sim",
    "ds",
    "5g",
    "4g",
    "lte",
    "nfc",
    "eu",
]

COLORS = [
    "black",
    "white",
    "blue",
    "green",
    "red",
    "purple",
    "pink",
    "gold",
    "silver",
    "gray",
    "grey",
    "graphite",
    "midnight",
    "starlight",
    "phantom black",
    "space gray",
    "space black",
    "natural titanium",
    "crna",
    "bijela",
    "plava",
    "zelena",
]

STORAGE_PATTERNS = [
    r"(\d+\s*TB)",
    r"(\d+\s*GB)(?!\s*RAM)",
]


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


async def seed_categories(session: AsyncSession) -> int:
    created = 0
    for code, name in CATEGORIES.items():
        if await session.get(ProductCategory, code) is not None:
            print(f"  skip {code} (exists)")
            continue
        session.add(ProductCategory(code=code, name=name))
        created += 1
        print(f"  + {code}")
    return created


async def seed_registry_entries(session: AsyncSession) -> int:
    rows: list[tuple[RegistryType, str]] = (
        [(RegistryType.BRAND, b) for b in BRANDS]
        + [(RegistryType.NOT_BRAND, w) for w in NOT_BRANDS]
        + [(RegistryType.COMMON_WORD, w) for w in COMMON_WORDS]
        + [(RegistryType.COLOR, c) for c in COLORS]
        + [(RegistryType.STORAGE_PATTERN, p) for p in STORAGE_PATTERNS]
    )

    created = 0
    for entry_type, key in rows:
        existing = await session.execute(
            select(RegistryEntry.id).where(RegistryEntry.entry_type == entry_type).where(RegistryEntry.key == key)
        )
        if existing.scalar_one_or_none() is not None:
            print(f"  skip {entry_type.value}:{key} (exists)")
            continue
        value = key.capitalize() if entry_type is RegistryType.BRAND else None
        session.add(RegistryEntry(entry_type=entry_type, key=key, value=value, description="seed", enabled=True))
        created += 1
        print(f"  + {entry_type.value}:{key}")
    return created


async def seed_database() -> None:
    """Seed categories and registry entries."""
    engine = create_async_engine(_async_url(get_settings().database_url), echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        print("Seeding registry...")

        print("\nCategories:")
        categories = await seed_categories(session)

        print("\nRegistry entries:")
        entries = await seed_registry_entries(session)

        await session.commit()
        print({"ok": True, "categories_created": categories, "registry_entries_created": entries})

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed_database())
