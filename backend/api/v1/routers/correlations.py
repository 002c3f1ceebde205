"""
Correlations Router — "Bought together" product pairs.
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from core.config import get_settings
from retail.correlation import correlations_for_variant, top_correlations

router = APIRouter(prefix="/api/v1/correlations", tags=["correlations"])
settings = get_settings()


class CorrelationResponse(BaseModel):
    product_a: str
    product_b: str
    product_a_title: str | None = None
    product_b_title: str | None = None
    times_bought_together: int
    correlation_score: float

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _to_response(row: dict) -> CorrelationResponse:
    return CorrelationResponse(
        product_a=row["product_a"],
        product_b=row["product_b"],
        product_a_title=row["product_a_title"],
        product_b_title=row["product_b_title"],
        times_bought_together=row["co_purchase_count"],
        correlation_score=row["correlation_score"],
    )


@router.get("", response_model=list[CorrelationResponse])
async def list_correlations(
    limit: int = Query(settings.correlation_default_limit, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    """Strongest product pairs, most frequently co-purchased first."""
    rows = await top_correlations(db, limit=limit)
    return [_to_response(row) for row in rows]


@router.get("/{variant_id}", response_model=list[CorrelationResponse])
async def get_variant_correlations(
    variant_id: str,
    limit: int = Query(settings.correlation_default_limit, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    rows = await correlations_for_variant(db, variant_id, limit=limit)
    return [_to_response(row) for row in rows]
