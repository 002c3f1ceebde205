"""
Sync Router — Trigger order/inventory syncs and read their status.

POST endpoints run the sync to completion before responding. A second
request while one is running gets 409 instead of queueing.
"""

from datetime import datetime

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, get_inventory_sync, get_order_sync
from core.config import get_settings
from db.models import SyncRun
from integrations.base import StoreCredentials, SyncAlreadyRunning, UpstreamAuthError, UpstreamError
from workers.inventory_sync import InventorySyncRunner
from workers.sync import OrderSyncOrchestrator, SyncTracker, configured_credentials

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StoreCredentialsIn(CamelModel):
    shop_domain: str = Field(..., min_length=1)
    access_token: str = Field(..., min_length=1)


class OrderSyncRequest(CamelModel):
    store_credentials: StoreCredentialsIn | None = None
    force_full_sync: bool = False


class InventorySyncRequest(CamelModel):
    store_credentials: StoreCredentialsIn | None = None


class OrderSyncResponse(CamelModel):
    success: bool
    orders_processed: int
    items_processed: int
    message: str


class InventorySyncResponse(CamelModel):
    success: bool
    variants_updated: int
    variants_not_found: int
    message: str


class SyncProgress(CamelModel):
    processed: int
    total: int | None = None


class SyncResultSummary(CamelModel):
    success: bool
    status: str
    records_processed: int
    items_processed: int
    records_failed: int
    records_skipped: int
    window_start: datetime | None = None
    message: str
    error: str | None = None
    completed_at: datetime | None = None


class SyncStatusResponse(CamelModel):
    is_processing: bool
    phase: str
    progress: SyncProgress
    last_completed_at: datetime | None = None
    last_result: SyncResultSummary | None = None


class SyncRunResponse(CamelModel):
    id: int
    sync_type: str
    status: str
    window_start: datetime | None
    records_processed: int
    records_failed: int
    records_skipped: int
    error_message: str | None
    started_at: datetime
    completed_at: datetime | None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ─── Helpers ────────────────────────────────────────────────────────────────


def _resolve_credentials(supplied: StoreCredentialsIn | None) -> StoreCredentials:
    if supplied is not None:
        try:
            return StoreCredentials(supplied.shop_domain.strip(), supplied.access_token.strip())
        except UpstreamAuthError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
    credentials = configured_credentials(get_settings())
    if credentials is None:
        raise HTTPException(status_code=400, detail="No store credentials supplied or configured")
    return credentials


def _status(tracker: SyncTracker) -> SyncStatusResponse:
    snapshot = tracker.snapshot()
    return SyncStatusResponse(
        is_processing=snapshot["is_processing"],
        phase=snapshot["phase"],
        progress=SyncProgress(**snapshot["progress"]),
        last_completed_at=snapshot["last_completed_at"],
        last_result=SyncResultSummary(**snapshot["last_result"]) if snapshot["last_result"] else None,
    )


def _already_running(exc: SyncAlreadyRunning) -> JSONResponse:
    return JSONResponse(status_code=409, content={"processing": True, "message": str(exc)})


def _aborted(exc: Exception, content: dict) -> JSONResponse:
    status_code = 401 if isinstance(exc, UpstreamAuthError) else 502
    return JSONResponse(status_code=status_code, content={"success": False, **content})


# ─── Orders ─────────────────────────────────────────────────────────────────


@router.post("/orders", response_model=OrderSyncResponse)
async def sync_orders(
    body: OrderSyncRequest | None = Body(default=None),
    orchestrator: OrderSyncOrchestrator = Depends(get_order_sync),
):
    """Run an incremental (or forced full) order sync and report its outcome."""
    body = body or OrderSyncRequest()
    credentials = _resolve_credentials(body.store_credentials)
    try:
        result = await orchestrator.run(credentials, force_full_sync=body.force_full_sync)
    except SyncAlreadyRunning as exc:
        return _already_running(exc)
    except (UpstreamError, SQLAlchemyError) as exc:
        last = orchestrator.tracker.last_result
        return _aborted(
            exc,
            {
                "ordersProcessed": last.records_processed,
                "itemsProcessed": last.items_processed,
                "message": last.message,
            },
        )

    return OrderSyncResponse(
        success=True,
        orders_processed=result.records_processed,
        items_processed=result.items_processed,
        message=result.message,
    )


@router.get("/status", response_model=SyncStatusResponse)
async def order_sync_status(orchestrator: OrderSyncOrchestrator = Depends(get_order_sync)):
    return _status(orchestrator.tracker)


# ─── Inventory ──────────────────────────────────────────────────────────────


@router.post("/inventory", response_model=InventorySyncResponse)
async def sync_inventory(
    body: InventorySyncRequest | None = Body(default=None),
    runner: InventorySyncRunner = Depends(get_inventory_sync),
):
    """Refresh variant attributes for every known variant."""
    body = body or InventorySyncRequest()
    credentials = _resolve_credentials(body.store_credentials)
    try:
        result = await runner.run(credentials)
    except SyncAlreadyRunning as exc:
        return _already_running(exc)
    except (UpstreamError, SQLAlchemyError) as exc:
        last = runner.tracker.last_result
        return _aborted(
            exc,
            {
                "variantsUpdated": last.records_processed,
                "variantsNotFound": last.records_skipped,
                "message": last.message,
            },
        )

    return InventorySyncResponse(
        success=True,
        variants_updated=result.records_processed,
        variants_not_found=result.records_skipped,
        message=result.message,
    )


@router.get("/inventory/status", response_model=SyncStatusResponse)
async def inventory_sync_status(runner: InventorySyncRunner = Depends(get_inventory_sync)):
    return _status(runner.tracker)


# ─── History ────────────────────────────────────────────────────────────────


@router.get("/history", response_model=list[SyncRunResponse])
async def sync_history(
    sync_type: str | None = Query(None, pattern="^(orders|inventory)$"),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Most recent terminal sync runs, newest first."""
    query = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
    if sync_type:
        query = query.where(SyncRun.sync_type == sync_type)
    result = await db.execute(query)
    return result.scalars().all()
