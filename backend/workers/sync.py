"""
Order Sync Workers — Incremental Shopify order ingestion.

Flow for one run:
  1. Claim the single-flight slot (a second concurrent run is rejected)
  2. Compute the fetch window from the newest stored order, minus an
     overlap buffer, or a fixed lookback on first run / force-full
  3. Stream order pages; each page is written in its own transaction with
     a SAVEPOINT per order, so one bad record never sinks the page
  4. Reclassify returning customers
  5. Schedule a correlation rebuild on the analytics queue
  6. Record the terminal state in sync_runs and release the slot

Tasks:
  - sync_shopify_orders: timer-driven run against the configured store
"""

import asyncio
import threading
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, get_settings
from db.models import SyncRun
from db.upserts import latest_order_timestamp, upsert_line_item, upsert_order
from integrations.base import (
    MalformedRecord,
    PersistenceError,
    StoreCredentials,
    SyncAlreadyRunning,
    SyncPhase,
    SyncResult,
    UpstreamAuthError,
    UpstreamError,
)
from integrations.shopify import OrderPage, ShopifyClient, map_line_item, map_order
from retail.loyalty import classify_returning_customers
from workers.celery_app import celery_app

logger = structlog.get_logger()

MAX_RECORDED_ERRORS = 20
CORRELATION_TASK = "workers.analytics.rebuild_product_correlations"

SessionFactory = Callable[[], AsyncSession]
ClientFactory = Callable[[StoreCredentials], ShopifyClient]


class SyncTracker:
    """
    Process-local state of one sync type: phase, progress and last outcome.

    `begin()` is the single-flight guard. Check-and-set happens under a
    lock, so two callers racing for the slot cannot both win.
    """

    def __init__(self, sync_type: str):
        self.sync_type = sync_type
        self._lock = threading.Lock()
        self.phase = SyncPhase.IDLE
        self.processed = 0
        self.total: int | None = None
        self.started_at: datetime | None = None
        self.last_completed_at: datetime | None = None
        self.last_result: SyncResult | None = None

    @property
    def is_processing(self) -> bool:
        return self.phase == SyncPhase.RUNNING

    def begin(self) -> None:
        with self._lock:
            if self.phase == SyncPhase.RUNNING:
                raise SyncAlreadyRunning(f"A {self.sync_type} sync is already in progress")
            self.phase = SyncPhase.RUNNING
            self.processed = 0
            self.total = None
            self.started_at = datetime.utcnow()

    def advance(self, processed: int, total: int | None = None) -> None:
        self.processed = processed
        if total is not None:
            self.total = total

    def finish(self, result: SyncResult) -> None:
        with self._lock:
            self.phase = result.status
            self.last_result = result
            if result.success:
                self.last_completed_at = result.completed_at

    def snapshot(self) -> dict[str, Any]:
        return {
            "sync_type": self.sync_type,
            "is_processing": self.is_processing,
            "phase": self.phase.value,
            "progress": {"processed": self.processed, "total": self.total},
            "started_at": self.started_at,
            "last_completed_at": self.last_completed_at,
            "last_result": self.last_result.as_dict() if self.last_result else None,
        }


async def compute_fetch_window(
    db: AsyncSession,
    *,
    force_full_sync: bool = False,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> datetime:
    """
    Lower bound (naive UTC) on upstream updated_at for the next fetch.

    Re-reading the overlap buffer catches orders whose updates landed out
    of order around the previous run's cut-off; the upserts make the
    re-read harmless.
    """
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    floor = now - timedelta(days=settings.sync_full_lookback_days)
    if force_full_sync:
        return floor

    latest = await latest_order_timestamp(db)
    if latest is None:
        return floor
    return latest - timedelta(minutes=settings.sync_overlap_minutes)


async def record_sync_run(session_factory: SessionFactory, result: SyncResult, **metadata) -> None:
    """Persist the terminal state of a run. Failures are logged, not raised."""
    try:
        async with session_factory() as db:
            db.add(
                SyncRun(
                    sync_type=result.sync_type,
                    status=result.status.value,
                    window_start=result.window_start,
                    records_processed=result.records_processed,
                    records_failed=result.records_failed,
                    records_skipped=result.records_skipped,
                    error_message=result.error,
                    run_metadata={
                        "items_processed": result.items_processed,
                        "pages_fetched": result.pages_fetched,
                        "errors": result.errors[:MAX_RECORDED_ERRORS],
                        **result.metadata,
                        **metadata,
                    },
                    started_at=result.started_at,
                    completed_at=result.completed_at,
                )
            )
            await db.commit()
    except SQLAlchemyError as exc:
        logger.error("sync.run_record_failed", sync_type=result.sync_type, error=str(exc))


def dispatch_correlation_rebuild() -> None:
    celery_app.send_task(CORRELATION_TASK)


def _default_client_factory(credentials: StoreCredentials) -> ShopifyClient:
    return ShopifyClient(credentials)


class OrderSyncOrchestrator:
    """Runs incremental order syncs. One instance per process and store."""

    sync_type = "orders"

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        tracker: SyncTracker | None = None,
        client_factory: ClientFactory = _default_client_factory,
        schedule_correlation: Callable[[], None] = dispatch_correlation_rebuild,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.tracker = tracker or SyncTracker(self.sync_type)
        self.client_factory = client_factory
        self.schedule_correlation = schedule_correlation
        self.settings = settings or get_settings()
        self._sleep = sleep

    def status(self) -> dict[str, Any]:
        return self.tracker.snapshot()

    async def run(self, credentials: StoreCredentials, *, force_full_sync: bool = False) -> SyncResult:
        """
        Execute one sync run.

        Raises:
            SyncAlreadyRunning: another order sync holds the slot.
            UpstreamError: fetching failed after retries. Pages committed
                before the failure stay committed.
        """
        self.tracker.begin()
        result = SyncResult(sync_type=self.sync_type)
        log = logger.bind(shop_domain=credentials.shop_domain, force_full_sync=force_full_sync)
        log.info("sync.orders.started")

        try:
            async with self.session_factory() as db:
                result.window_start = await compute_fetch_window(
                    db, force_full_sync=force_full_sync, settings=self.settings
                )
            log.info("sync.orders.window", window_start=result.window_start.isoformat())

            client = self.client_factory(credentials)
            await self._estimate_total(client, result.window_start)

            async for page in client.iter_order_pages(result.window_start):
                await self._persist_page(page, result)
                result.pages_fetched += 1
                self.tracker.advance(result.records_processed)
                log.info(
                    "sync.orders.page_committed",
                    page=page.number,
                    records=len(page.records),
                    processed=result.records_processed,
                )
                if page.next_cursor and self.settings.sync_page_delay_seconds > 0:
                    await self._sleep(self.settings.sync_page_delay_seconds)

            async with self.session_factory() as db:
                result.metadata["loyalty"] = await classify_returning_customers(db)

            result.complete(
                f"Synced {result.records_processed} orders ({result.items_processed} line items)"
            )
            self._schedule_correlation_rebuild(result)
            log.info(
                "sync.orders.completed",
                records_processed=result.records_processed,
                items_processed=result.items_processed,
                records_failed=result.records_failed,
                records_skipped=result.records_skipped,
                pages=result.pages_fetched,
            )
            return result
        except asyncio.CancelledError as exc:
            result.fail(exc, f"Order sync cancelled after {result.records_processed} orders")
            log.warning("sync.orders.cancelled", records_processed=result.records_processed)
            raise
        except Exception as exc:
            result.fail(exc, f"Order sync failed after {result.records_processed} orders: {exc}")
            log.error(
                "sync.orders.failed",
                error=str(exc),
                error_type=type(exc).__name__,
                records_processed=result.records_processed,
            )
            raise
        finally:
            try:
                await record_sync_run(self.session_factory, result, force_full_sync=force_full_sync)
            finally:
                self.tracker.finish(result)

    async def _estimate_total(self, client: ShopifyClient, window_start: datetime) -> None:
        try:
            total = await client.count_orders(window_start)
        except UpstreamAuthError:
            raise
        except UpstreamError as exc:
            logger.warning("sync.orders.count_unavailable", error=str(exc))
            return
        self.tracker.advance(self.tracker.processed, total)

    async def _persist_page(self, page: OrderPage, result: SyncResult) -> None:
        async with self.session_factory() as db:
            for raw in page.records:
                try:
                    order = map_order(raw)
                    items = [
                        map_line_item(order["order_id"], position, item)
                        for position, item in enumerate(raw.get("line_items") or [])
                    ]
                except MalformedRecord as exc:
                    result.records_skipped += 1
                    result.errors.append(str(exc))
                    logger.warning("sync.orders.malformed_record", page=page.number, error=str(exc))
                    continue

                try:
                    async with db.begin_nested():
                        await upsert_order(db, order)
                        for item in items:
                            await upsert_line_item(db, item)
                except PersistenceError as exc:
                    result.records_failed += 1
                    result.errors.append(str(exc))
                    logger.warning(
                        "sync.orders.persist_failed",
                        order_id=order["order_id"],
                        error=str(exc),
                    )
                    continue

                result.records_processed += 1
                result.items_processed += len(items)
            await db.commit()

    def _schedule_correlation_rebuild(self, result: SyncResult) -> None:
        try:
            self.schedule_correlation()
        except Exception as exc:
            result.metadata["correlation_scheduled"] = False
            logger.warning("sync.orders.correlation_dispatch_failed", error=str(exc))
            return
        result.metadata["correlation_scheduled"] = True


# Shared by every task invocation in this worker process
worker_order_tracker = SyncTracker("orders")


def configured_credentials(settings: Settings) -> StoreCredentials | None:
    if not settings.shopify_shop_domain or not settings.shopify_access_token:
        return None
    return StoreCredentials(settings.shopify_shop_domain, settings.shopify_access_token)


@celery_app.task(
    name="workers.sync.sync_shopify_orders",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def sync_shopify_orders(self, force_full_sync: bool = False):
    """
    Incremental order sync for the configured store.
    Scheduled via Celery Beat (every 30 minutes).
    """
    from sqlalchemy.ext.asyncio import create_async_engine

    run_id = self.request.id or "manual"
    logger.info("sync.orders.task_started", run_id=run_id, force_full_sync=force_full_sync)

    async def _sync():
        settings = get_settings()
        credentials = configured_credentials(settings)
        if credentials is None:
            logger.warning("sync.orders.not_configured", run_id=run_id)
            return {"status": "skipped", "reason": "store_not_configured"}

        engine = create_async_engine(settings.database_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            orchestrator = OrderSyncOrchestrator(session_factory, tracker=worker_order_tracker, settings=settings)
            try:
                result = await orchestrator.run(credentials, force_full_sync=force_full_sync)
            except SyncAlreadyRunning:
                logger.info("sync.orders.skipped", run_id=run_id, reason="already_running")
                return {"status": "skipped", "reason": "already_running"}
            except UpstreamAuthError:
                raise
            except UpstreamError as exc:
                raise self.retry(exc=exc)
            return result.as_dict()
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_sync())
    except Exception as exc:
        logger.error("sync.orders.task_failed", run_id=run_id, error=str(exc))
        raise
