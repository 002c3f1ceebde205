"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "basketsync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "workers.sync",
        "workers.inventory_sync",
        "workers.analytics",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.sync.*": {"queue": "sync"},
        "workers.inventory_sync.*": {"queue": "sync"},
        "workers.analytics.*": {"queue": "analytics"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Data Sync ───────────────────────────────────────────────
        "sync-shopify-orders-30m": {
            "task": "workers.sync.sync_shopify_orders",
            "schedule": crontab(minute="*/30"),
            "options": {"queue": "sync"},
        },
        "sync-shopify-inventory-hourly": {
            "task": "workers.inventory_sync.sync_shopify_inventory",
            "schedule": crontab(minute=15),  # Offset from order sync
            "options": {"queue": "sync"},
        },
        # ── Analytics ──────────────────────────────────────────────
        "rebuild-correlations-nightly": {
            "task": "workers.analytics.rebuild_product_correlations",
            "schedule": crontab(hour=2, minute=0),
            "options": {"queue": "analytics"},
        },
    },
)
