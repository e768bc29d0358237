"""Product category model.

Categories are keyed by the code that appears at the end of crawler config
codes and product URLs (e.g. "shop.ba/smartphones" -> "smartphones").
"""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from pricecatalog.stores.postgres import Base


class ProductCategory(Base):
    """Known product category."""

    __tablename__ = "product_categories"

    code: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))

    def __repr__(self) -> str:
        return f"<ProductCategory {self.code}>"
