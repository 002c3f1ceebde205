"""
Correlation Engine - "Bought Together" Product Pairs.

For every unordered pair of variants (A, B) that appear together in at
least `min_co_purchases` distinct orders:

    co_purchase_count  = number of distinct orders containing both
    correlation_score  = co_purchase_count / orders containing A

where A is the lexicographically smaller variant id, so each pair is stored
exactly once. A variant repeated within one order counts once for that
order. Line items without a catalog variant are ignored.

The table is rebuilt wholesale inside one transaction: readers see either
the previous snapshot or the new one, never a mix.
"""

from datetime import datetime

import structlog
from sqlalchemy import delete, func, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from db.models import OrderLineItem, ProductCorrelation, ProductVariant

logger = structlog.get_logger()

DEFAULT_MIN_CO_PURCHASES = 2


def _distinct_order_variants(name: str):
    return (
        select(OrderLineItem.order_id, OrderLineItem.variant_id)
        .where(OrderLineItem.variant_id.is_not(None))
        .distinct()
        .subquery(name)
    )


async def compute_correlations(
    db: AsyncSession,
    min_co_purchases: int = DEFAULT_MIN_CO_PURCHASES,
) -> list[dict]:
    """Compute correlation rows from stored line items without writing them."""
    a = _distinct_order_variants("a")
    b = _distinct_order_variants("b")

    pair_count = func.count().label("co_purchase_count")
    pairs_result = await db.execute(
        select(a.c.variant_id.label("product_a"), b.c.variant_id.label("product_b"), pair_count)
        .join(b, (a.c.order_id == b.c.order_id) & (a.c.variant_id < b.c.variant_id))
        .group_by(a.c.variant_id, b.c.variant_id)
        .having(func.count() >= min_co_purchases)
    )
    pairs = pairs_result.all()
    if not pairs:
        return []

    order_variants = _distinct_order_variants("order_variants")
    support_result = await db.execute(
        select(order_variants.c.variant_id, func.count()).group_by(order_variants.c.variant_id)
    )
    support = {variant_id: count for variant_id, count in support_result.all()}

    rows = []
    for product_a, product_b, co_purchase_count in pairs:
        rows.append(
            {
                "product_a": product_a,
                "product_b": product_b,
                "co_purchase_count": co_purchase_count,
                "correlation_score": co_purchase_count / support[product_a],
            }
        )
    return rows


async def rebuild_correlations(
    db: AsyncSession,
    min_co_purchases: int = DEFAULT_MIN_CO_PURCHASES,
) -> dict:
    """
    Replace the correlation table with a fresh computation.

    Returns:
        {"pairs": rows written, "min_co_purchases": threshold used}
    """
    rows = await compute_correlations(db, min_co_purchases=min_co_purchases)
    computed_at = datetime.utcnow()

    await db.execute(delete(ProductCorrelation))
    if rows:
        await db.execute(
            insert(ProductCorrelation),
            [{**row, "computed_at": computed_at} for row in rows],
        )
    await db.commit()

    logger.info("correlation.rebuilt", pairs=len(rows), min_co_purchases=min_co_purchases)
    return {"pairs": len(rows), "min_co_purchases": min_co_purchases}


def _with_titles(query):
    variant_a = aliased(ProductVariant)
    variant_b = aliased(ProductVariant)
    return (
        query.add_columns(
            func.coalesce(variant_a.product_title, variant_a.title).label("product_a_title"),
            func.coalesce(variant_b.product_title, variant_b.title).label("product_b_title"),
        )
        .outerjoin(variant_a, variant_a.variant_id == ProductCorrelation.product_a)
        .outerjoin(variant_b, variant_b.variant_id == ProductCorrelation.product_b)
    )


def _ranked(query, limit: int):
    return query.order_by(
        ProductCorrelation.co_purchase_count.desc(),
        ProductCorrelation.correlation_score.desc(),
        ProductCorrelation.product_a,
        ProductCorrelation.product_b,
    ).limit(limit)


def _as_dict(row) -> dict:
    correlation, title_a, title_b = row
    return {
        "product_a": correlation.product_a,
        "product_b": correlation.product_b,
        "product_a_title": title_a,
        "product_b_title": title_b,
        "co_purchase_count": correlation.co_purchase_count,
        "correlation_score": correlation.correlation_score,
        "computed_at": correlation.computed_at,
    }


async def top_correlations(db: AsyncSession, limit: int = 100) -> list[dict]:
    """Strongest pairs first: by co-purchase count, then score."""
    result = await db.execute(_ranked(_with_titles(select(ProductCorrelation)), limit))
    return [_as_dict(row) for row in result.all()]


async def correlations_for_variant(db: AsyncSession, variant_id: str, limit: int = 100) -> list[dict]:
    """Pairs that include `variant_id` on either side."""
    query = _with_titles(select(ProductCorrelation)).where(
        or_(ProductCorrelation.product_a == variant_id, ProductCorrelation.product_b == variant_id)
    )
    result = await db.execute(_ranked(query, limit))
    return [_as_dict(row) for row in result.all()]
