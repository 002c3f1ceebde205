"""
Idempotent writes for synced upstream records.

Every upsert is keyed on the record's natural key so re-fetching the same
order (the overlap window guarantees this happens) updates rows in place
instead of duplicating them. Works on PostgreSQL and SQLite, both of which
support INSERT ... ON CONFLICT DO UPDATE.
"""

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Order, OrderLineItem, ProductVariant
from integrations.base import PersistenceError

logger = structlog.get_logger()

ORDER_UPDATE_COLUMNS = (
    "order_name",
    "customer_id",
    "contact_hash",
    "currency",
    "subtotal_price",
    "total_price",
    "total_tax",
    "total_discounts",
    "financial_status",
    "fulfillment_status",
    "placed_at",
    "upstream_updated_at",
    "cancelled_at",
)

LINE_ITEM_UPDATE_COLUMNS = (
    "variant_id",
    "product_id",
    "upstream_line_id",
    "title",
    "sku",
    "quantity",
    "price",
    "total_discount",
)

VARIANT_UPDATE_COLUMNS = (
    "product_id",
    "sku",
    "title",
    "product_title",
    "price",
    "cost",
    "stock_quantity",
    "vendor",
    "distributor",
    "tags",
)


def _insert_for(db: AsyncSession, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise PersistenceError(f"Upserts are not supported on dialect {dialect!r}")


async def _upsert(
    db: AsyncSession,
    model,
    values: dict[str, Any],
    *,
    key: tuple[str, ...],
    update_columns: tuple[str, ...],
    touch: dict[str, Any],
) -> None:
    stmt = _insert_for(db, model).values(**values, **touch)
    set_ = {col: stmt.excluded[col] for col in update_columns if col in values}
    set_.update(touch)
    stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=set_)
    try:
        await db.execute(stmt)
    except SQLAlchemyError as exc:
        ident = ", ".join(f"{k}={values.get(k)!r}" for k in key)
        raise PersistenceError(f"Failed to upsert {model.__tablename__} ({ident}): {exc}") from exc


async def upsert_order(db: AsyncSession, values: dict[str, Any]) -> None:
    """
    Insert or update one order by its upstream id.

    The returning-customer flag is owned by the loyalty classifier and is
    left untouched here.
    """
    await _upsert(
        db,
        Order,
        values,
        key=("order_id",),
        update_columns=ORDER_UPDATE_COLUMNS,
        touch={"updated_at": datetime.utcnow()},
    )


async def upsert_line_item(db: AsyncSession, values: dict[str, Any]) -> None:
    """Insert or update one line item by (order_id, variant_key, position)."""
    await _upsert(
        db,
        OrderLineItem,
        values,
        key=("order_id", "variant_key", "position"),
        update_columns=LINE_ITEM_UPDATE_COLUMNS,
        touch={"updated_at": datetime.utcnow()},
    )


async def upsert_product_variant(db: AsyncSession, values: dict[str, Any]) -> None:
    """Insert or update one variant. None attribute values clear the stored ones."""
    await _upsert(
        db,
        ProductVariant,
        values,
        key=("variant_id",),
        update_columns=VARIANT_UPDATE_COLUMNS,
        touch={"synced_at": datetime.utcnow()},
    )


async def latest_order_timestamp(db: AsyncSession) -> datetime | None:
    """Newest upstream updated_at among stored orders, or None when empty."""
    result = await db.execute(select(func.max(Order.upstream_updated_at)))
    return result.scalar_one_or_none()
