"""Price history model.

At most one row per variant per calendar day; see services.price_history.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from pricecatalog.stores.postgres import Base


class PriceHistory(Base):
    """Daily price snapshot of a variant."""

    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(primary_key=True)

    variant_id: Mapped[int] = mapped_column(
        ForeignKey("product_variants.id", ondelete="CASCADE"),
        index=True,
    )
    website_code: Mapped[str | None] = mapped_column(String(100), index=True)

    price: Mapped[float | None] = mapped_column()
    old_price: Mapped[float | None] = mapped_column()
    discount: Mapped[float | None] = mapped_column()
    price_string: Mapped[str | None] = mapped_column(String(60))

    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    def __repr__(self) -> str:
        return f"<PriceHistory variant={self.variant_id} {self.price} @ {self.recorded_at}>"
