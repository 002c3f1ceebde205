"""
Correlation engine tests.
"""

from datetime import datetime

import pytest
from sqlalchemy import select

from db.models import Order, OrderLineItem, ProductCorrelation, ProductVariant
from retail.correlation import correlations_for_variant, rebuild_correlations, top_correlations


async def _seed_baskets(db, baskets: dict[str, list[str | None]]) -> None:
    ts = datetime(2025, 6, 1, 12, 0)
    for order_id, variants in baskets.items():
        db.add(Order(order_id=order_id, placed_at=ts, upstream_updated_at=ts))
        for position, variant_id in enumerate(variants):
            db.add(
                OrderLineItem(
                    order_id=order_id,
                    variant_key=variant_id or f"custom:{order_id}:{position}",
                    variant_id=variant_id,
                    position=position,
                    quantity=1,
                    price=5.0,
                )
            )
    await db.commit()


async def _snapshot(db):
    rows = (await db.execute(select(ProductCorrelation).order_by(ProductCorrelation.product_a))).scalars().all()
    return [(r.product_a, r.product_b, r.co_purchase_count, r.correlation_score) for r in rows]


async def test_pair_count_and_score(test_db):
    # X appears in 3 orders, together with Y in 2 of them
    await _seed_baskets(
        test_db,
        {"o1": ["X", "Y"], "o2": ["X", "Y"], "o3": ["X"], "o4": ["Y", "Z"]},
    )

    summary = await rebuild_correlations(test_db, min_co_purchases=2)

    assert summary["pairs"] == 1
    assert await _snapshot(test_db) == [("X", "Y", 2, pytest.approx(2 / 3))]


async def test_pairs_stored_once_with_lower_id_first(test_db):
    await _seed_baskets(test_db, {"o1": ["B", "A"], "o2": ["A", "B"]})

    await rebuild_correlations(test_db, min_co_purchases=1)

    assert [(a, b) for a, b, _, _ in await _snapshot(test_db)] == [("A", "B")]


async def test_repeated_variant_in_one_order_counts_once(test_db):
    await _seed_baskets(test_db, {"o1": ["A", "A", "B"], "o2": ["A", "B", "B"]})

    await rebuild_correlations(test_db, min_co_purchases=1)

    assert await _snapshot(test_db) == [("A", "B", 2, 1.0)]


async def test_custom_items_are_ignored(test_db):
    await _seed_baskets(test_db, {"o1": ["A", None], "o2": ["A", None]})

    summary = await rebuild_correlations(test_db, min_co_purchases=1)

    assert summary["pairs"] == 0


async def test_threshold_filters_rare_pairs(test_db):
    await _seed_baskets(test_db, {"o1": ["A", "B"], "o2": ["A", "C"], "o3": ["A", "C"]})

    await rebuild_correlations(test_db, min_co_purchases=2)

    assert [(a, b) for a, b, _, _ in await _snapshot(test_db)] == [("A", "C")]


async def test_rebuild_is_deterministic_and_replaces_previous(test_db):
    await _seed_baskets(test_db, {"o1": ["A", "B"], "o2": ["A", "B"], "o3": ["B", "C"], "o4": ["B", "C"]})

    await rebuild_correlations(test_db)
    first = await _snapshot(test_db)
    await rebuild_correlations(test_db)
    assert await _snapshot(test_db) == first

    # Dropping below threshold removes the edge on the next rebuild
    await test_db.execute(OrderLineItem.__table__.delete().where(OrderLineItem.order_id == "o4"))
    await test_db.commit()
    await rebuild_correlations(test_db)
    assert [(a, b) for a, b, _, _ in await _snapshot(test_db)] == [("A", "B")]


async def test_top_correlations_ranked_with_titles(test_db):
    await _seed_baskets(
        test_db,
        {
            "o1": ["A", "B"],
            "o2": ["A", "B"],
            "o3": ["A", "B"],
            "o4": ["C", "D"],
            "o5": ["C", "D"],
        },
    )
    test_db.add(ProductVariant(variant_id="A", title="Default Title", product_title="Coffee Beans"))
    test_db.add(ProductVariant(variant_id="B", title="Paper Filters"))
    await test_db.commit()
    await rebuild_correlations(test_db)

    rows = await top_correlations(test_db, limit=10)

    assert [(r["product_a"], r["product_b"], r["co_purchase_count"]) for r in rows] == [
        ("A", "B", 3),
        ("C", "D", 2),
    ]
    assert rows[0]["product_a_title"] == "Coffee Beans"
    assert rows[0]["product_b_title"] == "Paper Filters"
    assert rows[1]["product_a_title"] is None

    assert len(await top_correlations(test_db, limit=1)) == 1


async def test_correlations_for_variant_matches_either_side(test_db):
    await _seed_baskets(
        test_db,
        {"o1": ["A", "B"], "o2": ["A", "B"], "o3": ["B", "C"], "o4": ["B", "C"], "o5": ["C", "D"], "o6": ["C", "D"]},
    )
    await rebuild_correlations(test_db)

    rows = await correlations_for_variant(test_db, "B")

    assert {(r["product_a"], r["product_b"]) for r in rows} == {("A", "B"), ("B", "C")}
