"""
Analytics Workers — Correlation rebuilds and loyalty reclassification.

Rebuilds are serialized across worker processes with a Redis lock: a
rebuild requested while another is running is retried once the current
one has had time to finish, so the final table always reflects the
newest line items.

Tasks:
  - rebuild_product_correlations: after every order sync + nightly
  - classify_returning_customers: on demand
"""

import asyncio
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockNotOwnedError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from retail.correlation import rebuild_correlations
from retail.loyalty import classify_returning_customers as classify_orders
from workers.celery_app import celery_app
from workers.sync import SessionFactory

logger = structlog.get_logger()

CORRELATION_LOCK_NAME = "basketsync:correlation-rebuild"
LOCK_BUSY_RETRY_SECONDS = 30


async def run_correlation_rebuild(
    session_factory: SessionFactory,
    redis,
    *,
    min_co_purchases: int,
    lock_timeout: int,
) -> dict[str, Any]:
    """Rebuild correlations under the cross-process lock, or skip if it is held."""
    lock = redis.lock(CORRELATION_LOCK_NAME, timeout=lock_timeout)
    if not await lock.acquire(blocking=False):
        logger.info("analytics.correlations.lock_busy")
        return {"status": "skipped", "reason": "rebuild_in_progress"}

    try:
        async with session_factory() as db:
            summary = await rebuild_correlations(db, min_co_purchases=min_co_purchases)
    finally:
        try:
            await lock.release()
        except LockNotOwnedError:
            logger.warning("analytics.correlations.lock_expired", lock_timeout=lock_timeout)
    return {"status": "success", **summary}


@celery_app.task(
    name="workers.analytics.rebuild_product_correlations",
    bind=True,
    max_retries=5,
    default_retry_delay=LOCK_BUSY_RETRY_SECONDS,
    acks_late=True,
)
def rebuild_product_correlations(self):
    """Recompute the product_correlations table from all stored line items."""
    from sqlalchemy.ext.asyncio import create_async_engine

    run_id = self.request.id or "manual"
    logger.info("analytics.correlations.started", run_id=run_id)

    async def _rebuild():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        redis = aioredis.from_url(settings.redis_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            return await run_correlation_rebuild(
                session_factory,
                redis,
                min_co_purchases=settings.correlation_min_co_purchases,
                lock_timeout=settings.correlation_lock_timeout_seconds,
            )
        finally:
            await redis.aclose()
            await engine.dispose()

    try:
        result = asyncio.run(_rebuild())
    except Exception as exc:
        logger.error("analytics.correlations.failed", run_id=run_id, error=str(exc))
        raise

    if result["status"] == "skipped":
        raise self.retry(countdown=LOCK_BUSY_RETRY_SECONDS)
    logger.info("analytics.correlations.completed", run_id=run_id, pairs=result["pairs"])
    return result


@celery_app.task(
    name="workers.analytics.classify_returning_customers",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def classify_returning_customers(self):
    """Recompute returning-customer flags outside of an order sync."""
    from sqlalchemy.ext.asyncio import create_async_engine

    run_id = self.request.id or "manual"

    async def _classify():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with session_factory() as db:
                return await classify_orders(db)
        finally:
            await engine.dispose()

    try:
        return {"status": "success", **asyncio.run(_classify())}
    except Exception as exc:
        logger.error("analytics.loyalty.failed", run_id=run_id, error=str(exc))
        raise
