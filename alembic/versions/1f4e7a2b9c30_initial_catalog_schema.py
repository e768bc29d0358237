"""initial_catalog_schema

Revision ID: 1f4e7a2b9c30
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "1f4e7a2b9c30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


registry_type = sa.Enum(
    "BRAND",
    "NOT_BRAND",
    "COMMON_WORD",
    "COLOR",
    "STORAGE_PATTERN",
    name="registrytype",
)
unmappable_reason = sa.Enum(
    "MISSING_BRAND",
    "INSUFFICIENT_SIMILARITY",
    "INVALID_DATA",
    "INVALID_CATEGORY",
    "NO_SIMILAR_ITEMS",
    "OTHER",
    name="unmappablereason",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "registry_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entry_type", registry_type, nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("value", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entry_type", "key", name="uq_registry_entries_type_key"),
    )
    op.create_index(op.f("ix_registry_entries_entry_type"), "registry_entries", ["entry_type"], unique=False)
    op.create_index(op.f("ix_registry_entries_enabled"), "registry_entries", ["enabled"], unique=False)

    op.create_table(
        "product_categories",
        sa.Column("code", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.PrimaryKeyConstraint("code"),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("brand", sa.String(length=100), nullable=True),
        sa.Column("model", sa.String(length=200), nullable=True),
        sa.Column("category_code", sa.String(length=100), nullable=True),
        sa.Column("subcategory", sa.String(length=100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("specifications_json", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["category_code"], ["product_categories.code"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_products_brand"), "products", ["brand"], unique=False)
    op.create_index(op.f("ix_products_model"), "products", ["model"], unique=False)
    op.create_index(op.f("ix_products_category_code"), "products", ["category_code"], unique=False)

    op.create_table(
        "raw_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("config_code", sa.String(length=200), nullable=True),
        sa.Column("website_code", sa.String(length=100), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("link", sa.Text(), nullable=True),
        sa.Column("price_string", sa.String(length=60), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("old_price", sa.Float(), nullable=True),
        sa.Column("discount", sa.Float(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("matched_product_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["matched_product_id"], ["products.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_raw_items_config_code"), "raw_items", ["config_code"], unique=False)
    op.create_index(op.f("ix_raw_items_website_code"), "raw_items", ["website_code"], unique=False)
    op.create_index(op.f("ix_raw_items_processed"), "raw_items", ["processed"], unique=False)
    op.create_index(op.f("ix_raw_items_matched_product_id"), "raw_items", ["matched_product_id"], unique=False)

    op.create_table(
        "product_variants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("website_code", sa.String(length=100), nullable=True),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("color", sa.String(length=100), nullable=True),
        sa.Column("size", sa.String(length=50), nullable=True),
        sa.Column("property1", sa.String(length=100), nullable=True),
        sa.Column("property2", sa.String(length=100), nullable=True),
        sa.Column("property3", sa.String(length=100), nullable=True),
        sa.Column("property4", sa.String(length=100), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("old_price", sa.Float(), nullable=True),
        sa.Column("discount", sa.Float(), nullable=True),
        sa.Column("price_string", sa.String(length=60), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("in_stock", sa.Boolean(), nullable=False),
        sa.Column("raw_product_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_product_variants_product_id"), "product_variants", ["product_id"], unique=False)
    op.create_index(op.f("ix_product_variants_website_code"), "product_variants", ["website_code"], unique=False)
    op.create_index(
        op.f("ix_product_variants_raw_product_id"), "product_variants", ["raw_product_id"], unique=False
    )
    op.create_index(
        "ix_product_variants_identity",
        "product_variants",
        ["product_id", "website_code", "source_url"],
        unique=False,
    )

    op.create_table(
        "price_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("variant_id", sa.Integer(), nullable=False),
        sa.Column("website_code", sa.String(length=100), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("old_price", sa.Float(), nullable=True),
        sa.Column("discount", sa.Float(), nullable=True),
        sa.Column("price_string", sa.String(length=60), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["variant_id"], ["product_variants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_price_history_variant_id"), "price_history", ["variant_id"], unique=False)
    op.create_index(op.f("ix_price_history_website_code"), "price_history", ["website_code"], unique=False)
    op.create_index(op.f("ix_price_history_recorded_at"), "price_history", ["recorded_at"], unique=False)

    op.create_table(
        "unmappable_items",
        sa.Column("raw_item_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("config_code", sa.String(length=200), nullable=True),
        sa.Column("reason_code", unmappable_reason, nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("extracted_data_json", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_attempt", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["raw_item_id"], ["raw_items.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("raw_item_id"),
    )
    op.create_index(op.f("ix_unmappable_items_category"), "unmappable_items", ["category"], unique=False)
    op.create_index(op.f("ix_unmappable_items_reason_code"), "unmappable_items", ["reason_code"], unique=False)


def downgrade() -> None:
    op.drop_table("unmappable_items")
    op.drop_table("price_history")
    op.drop_table("product_variants")
    op.drop_table("raw_items")
    op.drop_table("products")
    op.drop_table("product_categories")
    op.drop_table("registry_entries")
    unmappable_reason.drop(op.get_bind(), checkfirst=True)
    registry_type.drop(op.get_bind(), checkfirst=True)
