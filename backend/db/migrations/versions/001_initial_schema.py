"""
Initial schema - orders, line items, variants, correlations, sync runs

Revision ID: 001
Revises: None
Create Date: 2025-09-02
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Orders
    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(64), primary_key=True),
        sa.Column("order_name", sa.String(64)),
        sa.Column("customer_id", sa.String(64)),
        sa.Column("contact_hash", sa.String(64)),
        sa.Column("currency", sa.String(3)),
        sa.Column("subtotal_price", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_price", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_tax", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_discounts", sa.Float, nullable=False, server_default="0"),
        sa.Column("financial_status", sa.String(32)),
        sa.Column("fulfillment_status", sa.String(32)),
        sa.Column("placed_at", sa.DateTime, nullable=False),
        sa.Column("upstream_updated_at", sa.DateTime, nullable=False),
        sa.Column("cancelled_at", sa.DateTime),
        sa.Column("is_returning_customer", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("total_price >= 0", name="ck_order_total_positive"),
    )
    op.create_index("ix_orders_customer", "orders", ["customer_id"])
    op.create_index("ix_orders_upstream_updated_at", "orders", ["upstream_updated_at"])

    # 2. Order line items (keyed by order + variant; superseded in 002)
    op.create_table(
        "order_line_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.String(64),
            sa.ForeignKey("orders.order_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("variant_id", sa.String(64)),
        sa.Column("product_id", sa.String(64)),
        sa.Column("upstream_line_id", sa.String(64)),
        sa.Column("title", sa.String(255)),
        sa.Column("sku", sa.String(100)),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("price", sa.Float, nullable=False),
        sa.Column("total_discount", sa.Float, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", "variant_id", name="uq_line_item_order_variant"),
        sa.CheckConstraint("quantity > 0", name="ck_line_item_quantity_positive"),
        sa.CheckConstraint("price >= 0", name="ck_line_item_price_positive"),
    )
    op.create_index("ix_line_items_variant", "order_line_items", ["variant_id", "order_id"])

    # 3. Product variants
    op.create_table(
        "product_variants",
        sa.Column("variant_id", sa.String(64), primary_key=True),
        sa.Column("product_id", sa.String(64)),
        sa.Column("sku", sa.String(100)),
        sa.Column("title", sa.String(255)),
        sa.Column("product_title", sa.String(255)),
        sa.Column("price", sa.Float),
        sa.Column("cost", sa.Float),
        sa.Column("stock_quantity", sa.Integer),
        sa.Column("vendor", sa.String(255)),
        sa.Column("distributor", sa.String(255)),
        sa.Column("tags", sa.Text),
        sa.Column("synced_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("price >= 0", name="ck_variant_price_positive"),
    )
    op.create_index("ix_product_variants_product", "product_variants", ["product_id"])

    # 4. Product correlations
    op.create_table(
        "product_correlations",
        sa.Column("product_a", sa.String(64), primary_key=True),
        sa.Column("product_b", sa.String(64), primary_key=True),
        sa.Column("co_purchase_count", sa.Integer, nullable=False),
        sa.Column("correlation_score", sa.Float, nullable=False),
        sa.Column("computed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("product_a < product_b", name="ck_correlation_pair_ordered"),
        sa.CheckConstraint("co_purchase_count > 0", name="ck_correlation_count_positive"),
        sa.CheckConstraint(
            "correlation_score >= 0 AND correlation_score <= 1",
            name="ck_correlation_score_range",
        ),
    )
    op.create_index("ix_correlations_count", "product_correlations", ["co_purchase_count"])
    op.create_index("ix_correlations_product_b", "product_correlations", ["product_b"])

    # 5. Sync runs
    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("sync_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("window_start", sa.DateTime),
        sa.Column("records_processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_skipped", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text),
        sa.Column("run_metadata", sa.JSON),
        sa.Column("started_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime),
        sa.CheckConstraint("sync_type IN ('orders', 'inventory')", name="ck_sync_run_type"),
        sa.CheckConstraint("status IN ('completed', 'failed')", name="ck_sync_run_status"),
    )
    op.create_index("ix_sync_runs_type_started", "sync_runs", ["sync_type", "started_at"])


def downgrade() -> None:
    op.drop_table("sync_runs")
    op.drop_table("product_correlations")
    op.drop_table("product_variants")
    op.drop_table("order_line_items")
    op.drop_table("orders")
