"""Unmappable item model.

Raw items the matching engine refused to attribute to a product are parked
here with a reason code and the extraction snapshot, so registry fixes and
retry jobs can pick them up later.
"""

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from pricecatalog.stores.postgres import Base


class UnmappableReason(enum.Enum):
    """Why a raw item could not be mapped."""

    MISSING_BRAND = "missing_brand"
    INSUFFICIENT_SIMILARITY = "insufficient_similarity"
    INVALID_DATA = "invalid_data"
    INVALID_CATEGORY = "invalid_category"
    NO_SIMILAR_ITEMS = "no_similar_items"
    OTHER = "other"


class UnmappableItem(Base):
    """Parked raw item, one row per raw item."""

    __tablename__ = "unmappable_items"

    raw_item_id: Mapped[int] = mapped_column(
        ForeignKey("raw_items.id", ondelete="CASCADE"),
        primary_key=True,
    )

    title: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(100), index=True)
    config_code: Mapped[str | None] = mapped_column(String(200))

    reason_code: Mapped[UnmappableReason] = mapped_column(Enum(UnmappableReason), index=True)
    reason: Mapped[str | None] = mapped_column(Text)

    # Extraction snapshot (JSON-serialized text)
    extracted_data_json: Mapped[str | None] = mapped_column(Text)

    attempts: Mapped[int] = mapped_column(Integer, default=1)
    first_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    last_attempt: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<UnmappableItem raw={self.raw_item_id} {self.reason_code.value}>"
