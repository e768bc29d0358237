"""RawItem model.

RawItem is the crawler's output buffer: one scraped listing per row. The
matching engine consumes each unprocessed row exactly once and either points
it at a catalog product or parks it as an unmappable item.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from pricecatalog.stores.postgres import Base


class RawItem(Base):
    """Scraped listing awaiting (or after) matching."""

    __tablename__ = "raw_items"

    id: Mapped[int] = mapped_column(primary_key=True)

    # Source tracking
    config_code: Mapped[str | None] = mapped_column(String(200), index=True)
    website_code: Mapped[str | None] = mapped_column(String(100), index=True)

    # Raw fields
    title: Mapped[str | None] = mapped_column(Text)
    link: Mapped[str | None] = mapped_column(Text)

    # Pricing
    price_string: Mapped[str | None] = mapped_column(String(60))
    price: Mapped[float | None] = mapped_column()
    old_price: Mapped[float | None] = mapped_column()
    discount: Mapped[float | None] = mapped_column()

    # Resolution
    processed: Mapped[bool] = mapped_column(default=False, index=True)
    matched_product_id: Mapped[int | None] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL"),
        index=True,
    )

    # Timestamps
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
        return f"<RawItem {self.id} processed={self.processed}>"
