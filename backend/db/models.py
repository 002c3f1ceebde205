"""
BasketSync Database Models

Tables:
  1. orders                - Upstream orders (one row per external order id)
  2. order_line_items      - Cart lines, unique per (order, variant key, position)
  3. product_variants      - Catalog variants refreshed by the inventory sync
  4. product_correlations  - "Bought together" edges, rebuilt wholesale
  5. sync_runs             - Terminal state of every sync run

Timestamps are naive UTC. Upstream timestamps carry offsets and are
normalised on ingest.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from db.session import Base

# ─── 1. Orders ─────────────────────────────────────────────────────────────


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(String(64), primary_key=True)  # Upstream order id
    order_name = Column(String(64))  # Human-facing number, e.g. "#1001"
    customer_id = Column(String(64))  # NULL for guest checkout
    contact_hash = Column(String(64))  # HMAC of email/phone, never raw PII
    currency = Column(String(3))
    subtotal_price = Column(Float, nullable=False, default=0.0)
    total_price = Column(Float, nullable=False, default=0.0)
    total_tax = Column(Float, nullable=False, default=0.0)
    total_discounts = Column(Float, nullable=False, default=0.0)
    financial_status = Column(String(32))
    fulfillment_status = Column(String(32))
    placed_at = Column(DateTime, nullable=False)
    upstream_updated_at = Column(DateTime, nullable=False)  # Incremental sync watermark
    cancelled_at = Column(DateTime)
    is_returning_customer = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_orders_customer", "customer_id"),
        Index("ix_orders_upstream_updated_at", "upstream_updated_at"),
        CheckConstraint("total_price >= 0", name="ck_order_total_positive"),
    )

    line_items = relationship(
        "OrderLineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# ─── 2. Order Line Items ───────────────────────────────────────────────────


class OrderLineItem(Base):
    __tablename__ = "order_line_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False)
    # Upstream variant id, or "custom:{order_id}:{position}" for ad-hoc items
    variant_key = Column(String(128), nullable=False)
    variant_id = Column(String(64))  # NULL for custom sale items
    product_id = Column(String(64))
    position = Column(Integer, nullable=False)  # 0-based cart position
    upstream_line_id = Column(String(64))
    title = Column(String(255))
    sku = Column(String(100))
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    total_discount = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("order_id", "variant_key", "position", name="uq_line_item_order_variant_position"),
        Index("ix_line_items_variant", "variant_id", "order_id"),
        CheckConstraint("quantity > 0", name="ck_line_item_quantity_positive"),
        CheckConstraint("price >= 0", name="ck_line_item_price_positive"),
    )

    order = relationship("Order", back_populates="line_items")


# ─── 3. Product Variants ───────────────────────────────────────────────────


class ProductVariant(Base):
    __tablename__ = "product_variants"

    variant_id = Column(String(64), primary_key=True)
    product_id = Column(String(64))
    sku = Column(String(100))
    title = Column(String(255))
    product_title = Column(String(255))
    price = Column(Float)
    cost = Column(Float)
    stock_quantity = Column(Integer)
    vendor = Column(String(255))
    distributor = Column(String(255))
    tags = Column(Text)  # Comma-separated, as the upstream returns them
    synced_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_product_variants_product", "product_id"),
        CheckConstraint("price >= 0", name="ck_variant_price_positive"),
    )


# ─── 4. Product Correlations ───────────────────────────────────────────────


class ProductCorrelation(Base):
    __tablename__ = "product_correlations"

    product_a = Column(String(64), primary_key=True)  # Always the lower variant id
    product_b = Column(String(64), primary_key=True)
    co_purchase_count = Column(Integer, nullable=False)
    correlation_score = Column(Float, nullable=False)
    computed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_correlations_count", "co_purchase_count"),
        Index("ix_correlations_product_b", "product_b"),
        CheckConstraint("product_a < product_b", name="ck_correlation_pair_ordered"),
        CheckConstraint("co_purchase_count > 0", name="ck_correlation_count_positive"),
        CheckConstraint(
            "correlation_score >= 0 AND correlation_score <= 1",
            name="ck_correlation_score_range",
        ),
    )


# ─── 5. Sync Runs ──────────────────────────────────────────────────────────


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_type = Column(String(20), nullable=False)  # orders, inventory
    status = Column(String(20), nullable=False)  # completed, failed
    window_start = Column(DateTime)
    records_processed = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    run_metadata = Column(JSON, default={})
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("ix_sync_runs_type_started", "sync_type", "started_at"),
        CheckConstraint("sync_type IN ('orders', 'inventory')", name="ck_sync_run_type"),
        CheckConstraint("status IN ('completed', 'failed')", name="ck_sync_run_status"),
    )
