"""
API Tests — Sync trigger, status and history endpoints.
"""

import asyncio

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from integrations.base import TransientUpstreamError, UpstreamAuthError
from workers import sync as sync_worker

STORE = {"shopDomain": "test-shop.myshopify.com", "accessToken": "shpat_test"}


@pytest.mark.asyncio
class TestOrderSyncAPI:
    async def test_sync_reports_counts(self, client: AsyncClient, api_runners, fake_client, order_payload):
        api_runners.upstream = fake_client(
            pages=[[order_payload(1, variants=("A", "B")), order_payload(2, variants=("A",))]],
        )

        resp = await client.post("/api/v1/sync/orders", json={"storeCredentials": STORE})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["ordersProcessed"] == 2
        assert body["itemsProcessed"] == 3
        assert "2 orders" in body["message"]

    async def test_bare_path_alias(self, client: AsyncClient, api_runners, fake_client, order_payload):
        api_runners.upstream = fake_client(pages=[[order_payload(1)]])

        resp = await client.post("/sync/orders", json={"storeCredentials": STORE, "forceFullSync": True})

        assert resp.status_code == 200
        assert resp.json()["ordersProcessed"] == 1

    async def test_status_after_success(self, client: AsyncClient, api_runners, fake_client, order_payload):
        api_runners.upstream = fake_client(pages=[[order_payload(1)]], total=1)
        await client.post("/api/v1/sync/orders", json={"storeCredentials": STORE})

        resp = await client.get("/api/v1/sync/status")

        assert resp.status_code == 200
        status = resp.json()
        assert status["isProcessing"] is False
        assert status["phase"] == "completed"
        assert status["progress"] == {"processed": 1, "total": 1}
        assert status["lastCompletedAt"] is not None
        assert status["lastResult"]["success"] is True
        assert status["lastResult"]["recordsProcessed"] == 1

    async def test_status_before_any_run(self, client: AsyncClient):
        resp = await client.get("/sync/status")

        assert resp.status_code == 200
        status = resp.json()
        assert status["phase"] == "idle"
        assert status["lastResult"] is None
        assert status["lastCompletedAt"] is None

    async def test_concurrent_trigger_gets_409(self, client: AsyncClient, api_runners, fake_client, order_payload):
        gate = asyncio.Event()
        api_runners.upstream = fake_client(pages=[[order_payload(1)]], gate=gate)

        first = asyncio.create_task(client.post("/api/v1/sync/orders", json={"storeCredentials": STORE}))
        for _ in range(100):
            if api_runners.order_sync.tracker.is_processing:
                break
            await asyncio.sleep(0.01)

        second = await client.post("/api/v1/sync/orders", json={"storeCredentials": STORE})
        assert second.status_code == 409
        assert second.json()["processing"] is True

        status = (await client.get("/api/v1/sync/status")).json()
        assert status["isProcessing"] is True
        assert status["phase"] == "running"

        gate.set()
        assert (await first).status_code == 200

    async def test_upstream_failure_is_502_with_context(
        self, client: AsyncClient, api_runners, fake_client, order_payload
    ):
        api_runners.upstream = fake_client(
            pages=[[order_payload(1)], [order_payload(2)]],
            fail_on_page=2,
            error=TransientUpstreamError("HTTP 503", status_code=503),
        )

        resp = await client.post("/api/v1/sync/orders", json={"storeCredentials": STORE})

        assert resp.status_code == 502
        body = resp.json()
        assert body["success"] is False
        assert body["ordersProcessed"] == 1
        assert "HTTP 503" in body["message"]

        status = (await client.get("/api/v1/sync/status")).json()
        assert status["phase"] == "failed"
        assert "TransientUpstreamError" in status["lastResult"]["error"]

    async def test_database_failure_is_502_with_context(
        self, client: AsyncClient, api_runners, fake_client, order_payload, monkeypatch
    ):
        async def locked_database(db):
            raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

        monkeypatch.setattr(sync_worker, "classify_returning_customers", locked_database)
        api_runners.upstream = fake_client(pages=[[order_payload(1)]])

        resp = await client.post("/api/v1/sync/orders", json={"storeCredentials": STORE})

        assert resp.status_code == 502
        body = resp.json()
        assert body["success"] is False
        assert body["ordersProcessed"] == 1
        assert "database is locked" in body["message"]

        status = (await client.get("/api/v1/sync/status")).json()
        assert status["isProcessing"] is False
        assert "OperationalError" in status["lastResult"]["error"]

    async def test_rejected_credentials_are_401(self, client: AsyncClient, api_runners, fake_client, order_payload):
        api_runners.upstream = fake_client(
            pages=[[order_payload(1)]],
            fail_on_page=1,
            error=UpstreamAuthError("HTTP 401"),
        )

        resp = await client.post("/api/v1/sync/orders", json={"storeCredentials": STORE})

        assert resp.status_code == 401
        assert resp.json()["success"] is False

    async def test_blank_credentials_rejected(self, client: AsyncClient):
        resp = await client.post(
            "/api/v1/sync/orders",
            json={"storeCredentials": {"shopDomain": "  ", "accessToken": "x"}},
        )
        assert resp.status_code == 401


@pytest.mark.asyncio
class TestInventorySyncAPI:
    async def test_inventory_sync_and_status(
        self, client: AsyncClient, api_runners, fake_client, variant_node, order_payload
    ):
        api_runners.upstream = fake_client(pages=[[order_payload(1, variants=("10", "11"))]])
        await client.post("/api/v1/sync/orders", json={"storeCredentials": STORE})

        api_runners.upstream = fake_client(variants={"10": variant_node("10")})
        resp = await client.post("/api/v1/sync/inventory", json={"storeCredentials": STORE})

        assert resp.status_code == 200
        body = resp.json()
        assert body == {
            "success": True,
            "variantsUpdated": 1,
            "variantsNotFound": 1,
            "message": "Refreshed 1 of 2 variants",
        }

        status = (await client.get("/api/v1/sync/inventory/status")).json()
        assert status["phase"] == "completed"
        assert status["progress"] == {"processed": 2, "total": 2}


@pytest.mark.asyncio
class TestSyncHistoryAPI:
    async def test_history_lists_recent_runs(self, client: AsyncClient, api_runners, fake_client, order_payload):
        api_runners.upstream = fake_client(pages=[[order_payload(1)]])
        await client.post("/api/v1/sync/orders", json={"storeCredentials": STORE})
        api_runners.upstream = fake_client(
            pages=[[order_payload(2)]],
            fail_on_page=1,
            error=TransientUpstreamError("HTTP 500", status_code=500),
        )
        await client.post("/api/v1/sync/orders", json={"storeCredentials": STORE})

        resp = await client.get("/api/v1/sync/history", params={"sync_type": "orders"})

        assert resp.status_code == 200
        runs = resp.json()
        assert [r["status"] for r in runs] == ["failed", "completed"]
        assert runs[0]["syncType"] == "orders"
        assert "HTTP 500" in runs[0]["errorMessage"]

        limited = (await client.get("/api/v1/sync/history", params={"limit": 1})).json()
        assert len(limited) == 1
