"""SQLAlchemy ORM models.

Models represent database tables:
- registry_entries: Brand / common-word / color / storage-pattern rules
- product_categories: Known category codes
- raw_items: Scraped listings awaiting matching
- products: Canonical catalog products (optimistically versioned)
- product_variants: Shop-specific listings of a product
- price_history: One price snapshot per variant per day
- unmappable_items: Raw items parked with a reason code
"""

from pricecatalog.models.category import ProductCategory
from pricecatalog.models.price_history import PriceHistory
from pricecatalog.models.product import Product
from pricecatalog.models.raw_item import RawItem
from pricecatalog.models.registry_entry import RegistryEntry, RegistryType
from pricecatalog.models.unmappable_item import UnmappableItem, UnmappableReason
from pricecatalog.models.variant import ProductVariant

__all__ = [
    "PriceHistory",
    "Product",
    "ProductCategory",
    "ProductVariant",
    "RawItem",
    "RegistryEntry",
    "RegistryType",
    "UnmappableItem",
    "UnmappableReason",
]
