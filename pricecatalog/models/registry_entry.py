"""Registry entry model.

Admin-curated vocabulary that drives title normalization:
- brand / not_brand: known brands, and keys that must never be treated as one
- common_word: marketing noise removed from titles before extraction
- color: color names recognised in titles
- storage_pattern: regex sources (key) whose first group yields a storage size

The normalizer never reads this table directly; it works on an immutable
snapshot loaded by `services.registry_cache`.
"""

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from pricecatalog.stores.postgres import Base


class RegistryType(enum.Enum):
    """Registry entry kind."""

    BRAND = "brand"
    NOT_BRAND = "not_brand"
    COMMON_WORD = "common_word"
    COLOR = "color"
    STORAGE_PATTERN = "storage_pattern"


class RegistryEntry(Base):
    """One registry rule, unique per (type, key)."""

    __tablename__ = "registry_entries"
    __table_args__ = (UniqueConstraint("entry_type", "key", name="uq_registry_entries_type_key"),)

    id: Mapped[int] = mapped_column(primary_key=True)

    entry_type: Mapped[RegistryType] = mapped_column(Enum(RegistryType), index=True)
    key: Mapped[str] = mapped_column(String(255))
    value: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(default=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<RegistryEntry {self.entry_type.value}:{self.key}>"
