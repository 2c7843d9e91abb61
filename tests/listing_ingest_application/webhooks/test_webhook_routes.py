from __future__ import annotations

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from listing_ingest_application.services.webhook_registry import WebhookRegistry
from listing_ingest_application.testing.brightdata_mock import MockBrightData, MockWebhookSender, ndjson
from listing_ingest_application.webhooks import routes
from listing_ingest_application.webhooks.deps import get_registry, get_webhook_blob_store
from listing_ingest_application.webhooks.server import create_app
from listing_ingest_application.workflows.helpers.provider import build_webhook_config

SECRET = "f00dcafe1234"
RECORDS = [{"zpid": 101, "price": 1}, {"zpid": 102, "price": 2}]


@pytest.fixture
def registry(database) -> WebhookRegistry:
    return WebhookRegistry(database)


@pytest.fixture
def client(registry, blob_store):
    app = create_app()
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_webhook_blob_store] = lambda: blob_store
    with TestClient(app) as test_client:
        yield test_client


def _register(registry: WebhookRegistry, handle: str = "s_1", ttl: timedelta = timedelta(hours=1)) -> None:
    registry.register(handle, job_id="run-1-discovery", run_id="run-1", kind="discovery", secret=SECRET, ttl=ttl)


def test_health(client):
    assert client.get("/webhooks/health").json() == {"status": "ok"}


def test_notify_updates_registration(client, registry):
    _register(registry)

    resp = client.post(f"/webhooks/notify?secret={SECRET}", json={"snapshot_id": "s_1", "status": "ready"})

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "snapshot_id": "s_1"}
    assert registry.lookup("s_1").status == "ready"


@pytest.mark.parametrize("query", ["", "?secret=wrong"])
def test_notify_rejects_missing_or_wrong_secret(client, registry, query):
    _register(registry)

    resp = client.post(f"/webhooks/notify{query}", json={"snapshot_id": "s_1", "status": "ready"})

    assert resp.status_code == 401
    assert registry.lookup("s_1").status is None


def test_notify_rejects_bad_json(client):
    resp = client.post(f"/webhooks/notify?secret={SECRET}", content=b"{nope", headers={"content-type": "application/json"})

    assert resp.status_code == 400


def test_notify_for_unknown_snapshot_is_quarantined(client, blob_store):
    resp = client.post(f"/webhooks/notify?secret={SECRET}", json={"snapshot_id": "s_ghost", "status": "ready"})

    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "unsolicited"
    assert body["quarantine_key"].startswith("temp-webhooks/s_ghost/")
    assert body["quarantine_key"].endswith("-notify.json")
    assert json.loads(blob_store.get(body["quarantine_key"])) == {"snapshot_id": "s_ghost", "status": "ready"}


def test_notify_for_expired_registration_is_unsolicited(client, registry):
    _register(registry, ttl=timedelta(seconds=-1))

    resp = client.post(f"/webhooks/notify?secret={SECRET}", json={"snapshot_id": "s_1", "status": "ready"})

    assert resp.status_code == 202


def test_delivery_stores_blob_and_marks_registration(client, registry, blob_store):
    _register(registry)

    resp = client.post(
        f"/webhooks/endpoint?secret={SECRET}",
        content=ndjson(RECORDS).encode("utf-8"),
        headers={"Authorization": f"Bearer {SECRET}", "x-snapshot-id": "s_1"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "snapshot_id": "s_1", "records": 2}
    registration = registry.lookup("s_1")
    assert registration.record_count == 2
    assert registration.delivery_key.startswith("webhook-deliveries/discovery/")
    assert blob_store.get(registration.delivery_key).decode("utf-8") == ndjson(RECORDS)


def test_delivery_identifies_snapshot_from_records(client, registry):
    _register(registry)
    records = [{"zpid": 1, "snapshot_id": "s_1"}]

    resp = client.post(
        f"/webhooks/endpoint?secret={SECRET}",
        content=json.dumps(records).encode("utf-8"),
        headers={"Authorization": f"Bearer {SECRET}"},
    )

    assert resp.status_code == 200
    assert registry.lookup("s_1").record_count == 1


@pytest.mark.parametrize("authorization", [None, "Bearer wrong", SECRET])
def test_delivery_requires_matching_bearer(client, registry, authorization):
    _register(registry)
    headers = {"x-snapshot-id": "s_1"}
    if authorization is not None:
        headers["Authorization"] = authorization

    resp = client.post(f"/webhooks/endpoint?secret={SECRET}", content=ndjson(RECORDS).encode("utf-8"), headers=headers)

    assert resp.status_code == 401
    assert registry.lookup("s_1").delivery_key is None


@pytest.mark.parametrize("authorization", [None, "Bearer wrong"])
def test_delivery_authenticates_before_parsing_the_body(client, registry, monkeypatch, authorization):
    _register(registry)
    parsed = []
    original_decode = routes.decode_records

    def tracking_decode(body, **kwargs):
        parsed.append(body)
        return original_decode(body, **kwargs)

    monkeypatch.setattr(routes, "decode_records", tracking_decode)
    headers = {"x-snapshot-id": "s_1"}
    if authorization is not None:
        headers["Authorization"] = authorization

    resp = client.post(f"/webhooks/endpoint?secret={SECRET}", content=b"<html>oops</html>", headers=headers)

    assert resp.status_code == 401
    assert parsed == []
    assert registry.lookup("s_1").delivery_key is None


def test_delivery_with_valid_auth_but_garbage_body(client, registry):
    _register(registry)

    resp = client.post(
        f"/webhooks/endpoint?secret={SECRET}",
        content=b"<html>oops</html>",
        headers={"Authorization": f"Bearer {SECRET}", "x-snapshot-id": "s_1"},
    )

    assert resp.status_code == 400
    assert registry.lookup("s_1").delivery_key is None


def test_delivery_without_snapshot_identity(client):
    resp = client.post(
        f"/webhooks/endpoint?secret={SECRET}",
        content=json.dumps([{"zpid": 1}]).encode("utf-8"),
        headers={"Authorization": f"Bearer {SECRET}"},
    )

    assert resp.status_code == 400
    assert "identify" in resp.json()["detail"]


def test_unsolicited_delivery_is_quarantined(client, blob_store):
    resp = client.post(
        f"/webhooks/endpoint?secret={SECRET}",
        content=ndjson(RECORDS).encode("utf-8"),
        headers={"Authorization": f"Bearer {SECRET}", "x-snapshot-id": "s_stale"},
    )

    assert resp.status_code == 202
    assert blob_store.list("temp-webhooks/s_stale/")


@pytest.mark.asyncio
async def test_mock_provider_callbacks_round_trip(client, registry):
    mock = MockBrightData()
    mock.queue_result(ndjson(RECORDS))
    webhook = build_webhook_config("https://hooks.test", SECRET)
    handle = await mock.client().submit("gd_discovery", [{"location": "Austin, TX"}], webhook=webhook)
    _register(registry, handle)
    sender = MockWebhookSender(client)

    assert sender.notify(mock.snapshots[handle], status="running").status_code == 200
    assert registry.lookup(handle).status == "running"

    delivered = sender.deliver(mock.snapshots[handle])
    assert delivered.status_code == 200
    assert delivered.json()["records"] == 2

    forged = sender.deliver(mock.snapshots[handle], authorization="Bearer forged")
    assert forged.status_code == 401
