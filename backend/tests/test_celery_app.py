from workers.celery_app import celery_app


def test_worker_registers_scheduled_tasks():
    celery_app.loader.import_default_modules()

    for name in (
        "workers.sync.sync_shopify_orders",
        "workers.inventory_sync.sync_shopify_inventory",
        "workers.analytics.rebuild_product_correlations",
        "workers.analytics.classify_returning_customers",
    ):
        assert name in celery_app.tasks


def test_beat_entries_point_at_registered_tasks():
    celery_app.loader.import_default_modules()

    for entry in celery_app.conf.beat_schedule.values():
        assert entry["task"] in celery_app.tasks
