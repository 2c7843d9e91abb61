from __future__ import annotations

from datetime import datetime, timedelta, timezone

from listing_ingest_application.services.webhook_registry import SubmissionStore, WebhookRegistry


def _register(registry: WebhookRegistry, handle: str = "s_1", ttl: timedelta = timedelta(hours=1), **kwargs):
    return registry.register(
        handle,
        job_id=kwargs.get("job_id", "run-1-discovery"),
        run_id="run-1",
        kind="discovery",
        secret=kwargs.get("secret", "sekret"),
        ttl=ttl,
    )


def test_register_and_lookup(database):
    registry = WebhookRegistry(database)

    registration = _register(registry)

    assert registration.secret == "sekret"
    assert registration.kind == "discovery"
    assert not registration.is_expired()
    assert registry.lookup("s_1") == registration
    assert registry.lookup("s_other") is None


def test_register_keeps_first_owner(database):
    registry = WebhookRegistry(database)
    _register(registry)

    again = _register(registry, job_id="run-2-discovery", secret="different")

    assert again.job_id == "run-1-discovery"
    assert again.secret == "sekret"


def test_expired_registration_hidden_unless_requested(database):
    registry = WebhookRegistry(database)
    _register(registry, ttl=timedelta(seconds=-1))

    assert registry.lookup("s_1") is None
    assert registry.lookup("s_1", include_expired=True) is not None


def test_notify_and_delivery_are_recorded(database):
    registry = WebhookRegistry(database)
    _register(registry)

    assert registry.record_notify("s_1", status="running", progress={"pct": 40})
    assert registry.record_delivery("s_1", delivery_key="webhook-deliveries/k.json", record_count=4)
    assert not registry.record_notify("s_missing", status="ready")

    registration = registry.lookup("s_1")
    assert registration.status == "running"
    assert registration.delivery_key == "webhook-deliveries/k.json"
    assert registration.record_count == 4


def test_release_and_purge(database):
    registry = WebhookRegistry(database)
    _register(registry, "s_live")
    _register(registry, "s_old", ttl=timedelta(minutes=5))

    later = datetime.now(timezone.utc) + timedelta(minutes=10)
    assert registry.purge_expired(now=later) == 1
    assert registry.lookup("s_old", include_expired=True) is None

    assert registry.release("s_live")
    assert not registry.release("s_live")


def test_submission_store_resolution(database):
    submissions = SubmissionStore(database)
    submitted_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    stored = submissions.record(
        "run-1-batch-1",
        run_id="run-1",
        kind="details",
        provider_handle="s_1",
        input_payload=[{"url": "u"}],
        completion_mode="poll",
        submitted_at=submitted_at,
    )
    duplicate = submissions.record(
        "run-1-batch-1",
        run_id="run-1",
        kind="details",
        provider_handle="s_2",
        input_payload=[],
        completion_mode="poll",
    )

    assert stored.submitted_at == submitted_at
    assert duplicate.provider_handle == "s_1"

    submissions.record_resolution("run-1-batch-1", state="ready", source="poll", record_count=3)
    submissions.record_resolution("run-1-batch-1", state="ready", source="webhook", record_count=4)

    resolved = submissions.get("run-1-batch-1")
    assert resolved.resolved_state == "ready"
    assert resolved.resolution_source == "webhook"
    assert resolved.record_count == 4
    assert [s.job_id for s in submissions.list_for_run("run-1")] == ["run-1-batch-1"]
