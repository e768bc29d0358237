"""ProductVariant model.

One shop listing of a product: a specific website, URL and attribute set
(color / storage in `size` / RAM in `property1`). Identified in practice by
(product_id, website_code, source_url).
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from pricecatalog.stores.postgres import Base


class ProductVariant(Base):
    """Shop-specific listing of a product."""

    __tablename__ = "product_variants"
    __table_args__ = (
        Index("ix_product_variants_identity", "product_id", "website_code", "source_url"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        index=True,
    )
    website_code: Mapped[str | None] = mapped_column(String(100), index=True)
    source_url: Mapped[str | None] = mapped_column(Text)

    # Attributes fixed at creation time
    title: Mapped[str | None] = mapped_column(Text)
    color: Mapped[str | None] = mapped_column(String(100))
    size: Mapped[str | None] = mapped_column(String(50))
    property1: Mapped[str | None] = mapped_column(String(100))
    property2: Mapped[str | None] = mapped_column(String(100))
    property3: Mapped[str | None] = mapped_column(String(100))
    property4: Mapped[str | None] = mapped_column(String(100))

    # Pricing (refreshed on every re-match)
    price: Mapped[float | None] = mapped_column()
    old_price: Mapped[float | None] = mapped_column()
    discount: Mapped[float | None] = mapped_column()
    price_string: Mapped[str | None] = mapped_column(String(60))
    currency: Mapped[str] = mapped_column(String(3), default="BAM")
    in_stock: Mapped[bool] = mapped_column(default=True)

    # Back-reference to the raw row that created this variant (not owned)
    raw_product_id: Mapped[int | None] = mapped_column(Integer, index=True)

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
        return f"<ProductVariant {self.id} product={self.product_id} {self.website_code}>"
