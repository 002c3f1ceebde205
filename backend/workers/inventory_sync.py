"""
Inventory Sync Workers — Variant attribute refresh.

Re-reads price, cost, stock and classification attributes (vendor,
distributor, tags) for every variant we know about: those already in the
catalog plus any seen on an order line. Lookups go out in batches of at
most `shopify_batch_size` ids. Attributes the upstream reports as missing
clear the stored value.

Tasks:
  - sync_shopify_inventory: hourly refresh against the configured store
"""

import asyncio
from collections.abc import Callable
from typing import Any

import structlog
from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, get_settings
from db.models import OrderLineItem, ProductVariant
from db.upserts import upsert_product_variant
from integrations.base import (
    MalformedRecord,
    PersistenceError,
    StoreCredentials,
    SyncAlreadyRunning,
    SyncResult,
    UpstreamAuthError,
    UpstreamError,
)
from integrations.shopify import ShopifyClient, map_variant_node
from workers.celery_app import celery_app
from workers.sync import ClientFactory, SessionFactory, SyncTracker, configured_credentials, record_sync_run

logger = structlog.get_logger()


async def collect_variant_ids(db: AsyncSession) -> list[str]:
    """Every known variant id, sorted."""
    known = select(ProductVariant.variant_id)
    ordered = select(OrderLineItem.variant_id).where(OrderLineItem.variant_id.is_not(None))
    result = await db.execute(union(known, ordered))
    return sorted(row[0] for row in result.all())


async def run_inventory_sync_pipeline(
    db: AsyncSession,
    client: ShopifyClient,
    *,
    batch_size: int = 50,
    on_progress: Callable[[int, int], None] | None = None,
) -> dict[str, Any]:
    """
    Refresh product_variants from the upstream in batches.

    Each batch is committed before the next is requested.

    Returns:
        {"requested", "updated", "not_found", "failed", "batches", "errors"}
    """
    variant_ids = await collect_variant_ids(db)
    summary: dict[str, Any] = {
        "requested": len(variant_ids),
        "updated": 0,
        "not_found": 0,
        "failed": 0,
        "batches": 0,
        "errors": [],
    }

    for start in range(0, len(variant_ids), batch_size):
        batch = variant_ids[start : start + batch_size]
        nodes = await client.fetch_variants(batch)
        summary["not_found"] += len(batch) - len(nodes)

        for node in nodes:
            try:
                values = map_variant_node(node)
            except MalformedRecord as exc:
                summary["failed"] += 1
                summary["errors"].append(str(exc))
                continue
            try:
                async with db.begin_nested():
                    await upsert_product_variant(db, values)
            except PersistenceError as exc:
                summary["failed"] += 1
                summary["errors"].append(str(exc))
                logger.warning("sync.inventory.persist_failed", variant_id=values["variant_id"], error=str(exc))
                continue
            summary["updated"] += 1

        await db.commit()
        summary["batches"] += 1
        if on_progress:
            on_progress(start + len(batch), len(variant_ids))

    return summary


def _default_client_factory(credentials: StoreCredentials) -> ShopifyClient:
    return ShopifyClient(credentials)


class InventorySyncRunner:
    """Single-flight wrapper around the inventory pipeline."""

    sync_type = "inventory"

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        tracker: SyncTracker | None = None,
        client_factory: ClientFactory = _default_client_factory,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.tracker = tracker or SyncTracker(self.sync_type)
        self.client_factory = client_factory
        self.settings = settings or get_settings()

    def status(self) -> dict[str, Any]:
        return self.tracker.snapshot()

    async def run(self, credentials: StoreCredentials) -> SyncResult:
        self.tracker.begin()
        result = SyncResult(sync_type=self.sync_type)
        log = logger.bind(shop_domain=credentials.shop_domain)
        log.info("sync.inventory.started")

        try:
            client = self.client_factory(credentials)
            async with self.session_factory() as db:
                summary = await run_inventory_sync_pipeline(
                    db,
                    client,
                    batch_size=self.settings.shopify_batch_size,
                    on_progress=self.tracker.advance,
                )
            result.records_processed = summary["updated"]
            result.records_failed = summary["failed"]
            result.records_skipped = summary["not_found"]
            result.errors = summary["errors"]
            result.metadata.update(requested=summary["requested"], batches=summary["batches"])
            result.complete(f"Refreshed {summary['updated']} of {summary['requested']} variants")
            log.info(
                "sync.inventory.completed",
                updated=summary["updated"],
                not_found=summary["not_found"],
                failed=summary["failed"],
                batches=summary["batches"],
            )
            return result
        except asyncio.CancelledError as exc:
            result.fail(exc, "Inventory sync cancelled")
            log.warning("sync.inventory.cancelled")
            raise
        except Exception as exc:
            result.fail(exc, f"Inventory sync failed: {exc}")
            log.error("sync.inventory.failed", error=str(exc), error_type=type(exc).__name__)
            raise
        finally:
            try:
                await record_sync_run(self.session_factory, result)
            finally:
                self.tracker.finish(result)


worker_inventory_tracker = SyncTracker("inventory")


@celery_app.task(
    name="workers.inventory_sync.sync_shopify_inventory",
    bind=True,
    max_retries=3,
    default_retry_delay=120,
    acks_late=True,
)
def sync_shopify_inventory(self):
    """
    Refresh variant attributes for the configured store.
    Scheduled via Celery Beat (hourly).
    """
    from sqlalchemy.ext.asyncio import create_async_engine

    run_id = self.request.id or "manual"
    logger.info("sync.inventory.task_started", run_id=run_id)

    async def _sync():
        settings = get_settings()
        credentials = configured_credentials(settings)
        if credentials is None:
            logger.warning("sync.inventory.not_configured", run_id=run_id)
            return {"status": "skipped", "reason": "store_not_configured"}

        engine = create_async_engine(settings.database_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            runner = InventorySyncRunner(session_factory, tracker=worker_inventory_tracker, settings=settings)
            try:
                result = await runner.run(credentials)
            except SyncAlreadyRunning:
                logger.info("sync.inventory.skipped", run_id=run_id, reason="already_running")
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
        logger.error("sync.inventory.task_failed", run_id=run_id, error=str(exc))
        raise
