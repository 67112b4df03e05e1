from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

ADMIN = {"X-Admin-Token": "change-me-admin-token"}


@pytest.fixture()
def coordinator(fresh_db):
    from app.core.config import settings
    from app.delivery.producer import BatchResult
    from app.delivery.runtime import build_coordinator
    from app.delivery.vendor import VendorSimulator
    from tests.utils_channel import InMemoryChannel

    coordinator = build_coordinator(
        settings, channel=InMemoryChannel(), vendor=VendorSimulator(success_rate=0.9, sleep=lambda _s: None)
    )
    coordinator.producer.run_batch = lambda: BatchResult(fetched=2, claimed=2, published=2, communication_ids=["a", "b"])
    yield coordinator
    coordinator.stop()


@pytest.fixture()
def client(coordinator):
    import app.main
    from app.delivery.runtime import get_coordinator

    app.main.app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        yield TestClient(app.main.app)
    finally:
        app.main.app.dependency_overrides.clear()


def test_app_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["deps"]["database"] is True
    assert body["messaging"] == "STOPPED"


def test_messaging_health(client, coordinator):
    assert client.get("/messaging/health").json()["coordinator"]["status"] == "STOPPED"
    coordinator.start()
    body = client.get("/messaging/health").json()
    assert body["coordinator"]["status"] == "RUNNING"
    assert body["broker"]["connected"] is True


def test_trigger_requires_admin_and_running(client, coordinator):
    assert client.post("/messaging/trigger").status_code == 401
    assert client.post("/messaging/trigger", headers=ADMIN).status_code == 409

    coordinator.start()
    r = client.post("/messaging/trigger", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["communication_ids"] == ["a", "b"]


def test_stats(client):
    r = client.get("/messaging/stats", params={"hours": 2})
    assert r.status_code == 200
    assert r.json()["window_hours"] == 2
    assert r.json()["receipts_processed"] == 0


def test_vendor_success_rate(client):
    assert client.get("/messaging/vendor").json()["success_rate"] == 0.9

    r = client.put("/messaging/vendor/success_rate", json={"success_rate": 0.4}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["success_rate"] == 0.4

    r = client.put("/messaging/vendor/success_rate", json={"success_rate": 1.4}, headers=ADMIN)
    assert r.status_code == 422
    assert client.get("/messaging/vendor").json()["success_rate"] == 0.4


def test_sweep_stuck_endpoint(client):
    r = client.post("/messaging/maintenance/sweep_stuck", json={"older_than_s": 60}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json() == {"ok": True, "reset": 0, "communication_ids": []}
