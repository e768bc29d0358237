"""Shared fixtures: a throwaway SQLite catalog and a small registry."""

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricecatalog.models import ProductCategory, RawItem, RegistryEntry, RegistryType
from pricecatalog.services.registry_cache import RegistrySnapshot, build_snapshot
from pricecatalog.stores.postgres import Base

DAY1 = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)
DAY2 = datetime(2026, 3, 11, 10, 15, tzinfo=timezone.utc)

BRANDS = ["samsung", "apple", "xiaomi", "pro"]
COMMON_WORDS = ["mobitel", "smartphone", "dual sim"]
COLORS = ["black", "phantom black", "space gray", "gray", "blue"]
STORAGE_PATTERNS = [r"(\d+\s*TB)", r"(\d+\s*GB)"]


@pytest.fixture
def registry() -> RegistrySnapshot:
    """Registry snapshot matching the rows seeded by `seeded_registry`."""
    return build_snapshot(
        brands=BRANDS,
        common_words=COMMON_WORDS,
        colors=COLORS,
        storage_patterns=STORAGE_PATTERNS,
        version=1,
    )


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def categories(session_factory):
    """Known categories."""
    async with session_factory() as session:
        session.add_all(
            [
                ProductCategory(code="smartphones", name="Smartphones"),
                ProductCategory(code="tablets", name="Tablets"),
            ]
        )
        await session.commit()


@pytest.fixture
async def seeded_registry(session_factory):
    """Registry rows equivalent to the `registry` fixture."""
    rows = (
        [(RegistryType.BRAND, b) for b in BRANDS]
        + [(RegistryType.COMMON_WORD, w) for w in COMMON_WORDS]
        + [(RegistryType.COLOR, c) for c in COLORS]
        + [(RegistryType.STORAGE_PATTERN, p) for p in STORAGE_PATTERNS]
    )
    async with session_factory() as session:
        session.add_all([RegistryEntry(entry_type=t, key=k, enabled=True) for t, k in rows])
        await session.commit()


@pytest.fixture
def add_raw_item(session_factory):
    """Insert a raw item and return its id."""

    async def _add(
        title: str | None,
        *,
        price: float | None = 899.0,
        link: str | None = "https://shop.ba/p/1",
        config_code: str = "shop.ba/smartphones",
        website_code: str = "shop.ba",
        created_at: datetime = DAY1,
        price_string: str | None = None,
    ) -> int:
        async with session_factory() as session:
            raw = RawItem(
                title=title,
                price=price,
                price_string=price_string or (f"{price:.2f} KM" if price is not None else None),
                link=link,
                config_code=config_code,
                website_code=website_code,
                processed=False,
                created_at=created_at,
            )
            session.add(raw)
            await session.commit()
            return raw.id

    return _add
