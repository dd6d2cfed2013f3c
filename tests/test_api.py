"""HTTP API tests over an in-process ASGI transport."""
import asyncio

import httpx
import pytest

from store_platform.main import create_app


@pytest.fixture
async def api(settings, manager):
    app = create_app(settings, manager)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def test_store_lifecycle_end_to_end(api, manager, cluster):
    cluster.pods_ready = True
    resp = await api.post("/api/stores", json={"name": "acme", "engine": "woocommerce"})
    assert resp.status_code == 201
    store = resp.json()["store"]
    assert store["status"] == "Provisioning"
    assert store["name"] == "acme"
    store_id = store["id"]

    assert await manager.tasks.wait(2)
    resp = await api.get(f"/api/stores/{store_id}")
    assert resp.status_code == 200
    detail = resp.json()["store"]
    assert detail["status"] == "Ready"
    assert detail["storeUrl"] == "http://acme.store.localhost"
    assert detail["adminUrl"] == "http://acme.store.localhost/wp-admin"
    assert detail["readyAt"] is not None
    assert detail["pods"][0]["name"] == "mysql-0"

    listing = (await api.get("/api/stores")).json()
    assert listing["total"] == 1
    assert listing["stores"][0]["id"] == store_id

    resp = await api.delete(f"/api/stores/{store_id}")
    assert resp.status_code == 200
    assert resp.json() == {"message": "Store deletion initiated", "storeId": store_id}

    assert await manager.tasks.wait(2)
    resp = await api.get(f"/api/stores/{store_id}")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Store not found"}
    assert (await api.get("/api/stores")).json()["total"] == 0


class TestErrors:

    async def test_invalid_name(self, api):
        resp = await api.post("/api/stores", json={"name": "Bad_Name", "engine": "woocommerce"})
        assert resp.status_code == 400
        assert "DNS-safe" in resp.json()["error"]

    async def test_unsupported_engine(self, api):
        resp = await api.post("/api/stores", json={"name": "shop", "engine": "medusa"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "medusa engine is not yet implemented"

    async def test_duplicate_name(self, api):
        assert (await api.post("/api/stores", json={"name": "acme"})).status_code == 201
        resp = await api.post("/api/stores", json={"name": "acme"})
        assert resp.status_code == 409

    async def test_owner_quota(self, api, manager, cluster, settings):
        cluster.pods_ready = True
        headers = {"X-User-Id": "alice"}
        for i in range(settings.MAX_STORES_PER_OWNER):
            resp = await api.post("/api/stores", json={"name": f"shop-{i}"}, headers=headers)
            assert resp.status_code == 201
            assert await manager.tasks.wait(2)
        resp = await api.post("/api/stores", json={"name": "one-more"}, headers=headers)
        assert resp.status_code == 429
        assert "alice" in resp.json()["error"]

    async def test_unknown_store(self, api):
        assert (await api.get("/api/stores/nope")).status_code == 404
        assert (await api.delete("/api/stores/nope")).status_code == 404
        assert (await api.get("/api/stores/nope/events")).status_code == 404

    async def test_delete_while_deleting(self, api, deployer):
        deployer.uninstall_gate = asyncio.Event()
        store_id = (await api.post("/api/stores", json={"name": "acme"})).json()["store"]["id"]
        assert (await api.delete(f"/api/stores/{store_id}")).status_code == 200
        resp = await api.delete(f"/api/stores/{store_id}")
        assert resp.status_code == 409
        assert resp.json()["error"] == "Store is already being deleted"
        deployer.uninstall_gate.set()


class TestPlatform:

    async def test_events(self, api):
        store_id = (await api.post("/api/stores", json={"name": "acme"})).json()["store"]["id"]
        events = (await api.get(f"/api/stores/{store_id}/events")).json()["events"]
        assert events[-1]["message"] == "Store creation initiated (engine: woocommerce)"
        assert events[-1]["eventType"] == "info"

        everything = (await api.get("/api/events", params={"limit": 5})).json()["events"]
        assert everything and everything[0]["storeId"] == store_id

    async def test_audit_log(self, api):
        await api.post("/api/stores", json={"name": "acme"}, headers={"X-User-Id": "alice"})
        entries = (await api.get("/api/audit-log")).json()["auditLog"]
        actions = [e["action"] for e in entries]
        assert "CREATE_STORE" in actions
        assert "POST /api/stores" in actions
        request_entry = next(e for e in entries if e["action"] == "POST /api/stores")
        assert request_entry["details"]["statusCode"] == 201

    async def test_reads_are_not_audited(self, api):
        await api.get("/api/stores")
        assert (await api.get("/api/audit-log")).json()["auditLog"] == []

    async def test_metrics_json(self, api, deployer):
        deployer.install_gate = asyncio.Event()
        await api.post("/api/stores", json={"name": "acme"})
        metrics = (await api.get("/api/metrics")).json()["metrics"]
        assert metrics["totalActive"] == 1
        assert metrics["byStatus"] == {"Provisioning": 1}
        assert metrics["activeProvisions"] == 1
        deployer.install_gate.set()

    async def test_health(self, api):
        body = (await api.get("/api/health")).json()
        assert body["status"] == "ok"
        assert body["redis"] == "disabled"
        assert body["version"] == "1.0.0"

    async def test_prometheus_exposition(self, api):
        resp = await api.get("/metrics")
        assert resp.status_code == 200
        assert "store_platform_stores_total" in resp.text
