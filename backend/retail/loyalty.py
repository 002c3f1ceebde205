"""
Loyalty Classifier - Returning Customer Flags.

A customer is "returning" once they have more than one stored order. Every
order of such a customer is flagged, including the first one, and every
order without a customer id (guest checkout) is not.

The classification is recomputed over the whole orders table in a single
UPDATE and only rows whose flag actually changes are written, so running
it twice in a row reports zero changes the second time.
"""

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Order

logger = structlog.get_logger()


def _returning_customers_subquery():
    return (
        select(Order.customer_id)
        .where(Order.customer_id.is_not(None))
        .group_by(Order.customer_id)
        .having(func.count(Order.order_id) > 1)
    )


async def classify_returning_customers(db: AsyncSession) -> dict:
    """
    Recompute `orders.is_returning_customer` for every stored order.

    Returns:
        {"orders_updated": rows whose flag changed,
         "returning_customers": customers with more than one order}
    """
    returning = _returning_customers_subquery()
    flag = case((Order.customer_id.in_(returning), True), else_=False)

    result = await db.execute(
        update(Order)
        .where(Order.is_returning_customer.is_distinct_from(flag))
        .values(is_returning_customer=flag)
        .execution_options(synchronize_session=False)
    )
    orders_updated = result.rowcount or 0

    count_result = await db.execute(select(func.count()).select_from(returning.subquery()))
    returning_customers = count_result.scalar_one()

    await db.commit()

    logger.info(
        "loyalty.classified",
        orders_updated=orders_updated,
        returning_customers=returning_customers,
    )
    return {"orders_updated": orders_updated, "returning_customers": returning_customers}

