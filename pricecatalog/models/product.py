"""Product model.

A Product is the canonical catalog entry that groups listings of the same
device from different shops. Its variants live in `product_variants`.

`version` is an optimistic-concurrency counter: every ORM update/delete of a
product checks and bumps it, so a merge racing a matching run fails with
StaleDataError instead of silently losing one side's write.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from pricecatalog.stores.postgres import Base


class Product(Base):
    """Canonical catalog product."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(String(500))
    brand: Mapped[str | None] = mapped_column(String(100), index=True)
    model: Mapped[str | None] = mapped_column(String(200), index=True)

    category_code: Mapped[str | None] = mapped_column(
        ForeignKey("product_categories.code"),
        index=True,
    )
    subcategory: Mapped[str | None] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text)
    # Free-form specs (JSON-serialized text)
    specifications_json: Mapped[str | None] = mapped_column(Text)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Product {self.id} {self.brand} {self.model}>"
