from __future__ import annotations

import pytest

from listing_ingest_application.services.run_tracker import RunMetrics, RunTracker


def test_create_run_is_idempotent(database):
    tracker = RunTracker(database)

    first = tracker.create_run("run-1", "data_collector", {"locations": ["Austin, TX"]}, triggered_by="cli")
    again = tracker.create_run("run-1", "data_collector", {"locations": ["ignored"]})

    assert first["status"] == "queued"
    assert again["input_params"] == {"locations": ["Austin, TX"]}
    assert again["triggered_by"] == "cli"


def test_unknown_kind_is_rejected(database):
    with pytest.raises(ValueError):
        RunTracker(database).create_run("run-x", "scraper")


def test_status_moves_forward_only(database):
    tracker = RunTracker(database)
    tracker.create_run("run-1", "property_details")

    assert tracker.update_status("run-1", "running")
    assert tracker.update_status("run-1", "completed")
    assert not tracker.update_status("run-1", "running")
    assert not tracker.update_status("run-1", "failed", error_message="late failure")

    run = tracker.get_run("run-1")
    assert run["status"] == "completed"
    assert run["error_message"] is None
    assert run["started_at"] is not None
    assert run["completed_at"] is not None
    assert run["duration_seconds"] is not None


def test_failed_from_queued_records_error(database):
    tracker = RunTracker(database)
    tracker.create_run("run-2", "data_collector")

    assert tracker.update_status("run-2", "failed", error_message="submit rejected")

    run = tracker.get_run("run-2")
    assert run["status"] == "failed"
    assert run["error_message"] == "submit rejected"
    assert run["duration_seconds"] is None


def test_metric_replay_is_ignored(database):
    tracker = RunTracker(database)
    tracker.create_run("run-1", "property_details")

    batch = RunMetrics(processed=9, errors=1, provider_snapshots=["s_1"], webhook_used=True)
    assert tracker.apply_metrics("run-1", "batch-1", batch)
    assert not tracker.apply_metrics("run-1", "batch-1", batch)
    assert tracker.apply_metrics(
        "run-1", "batch-2", RunMetrics(processed=5, provider_snapshots=["s_2", "s_1"])
    )

    run = tracker.get_run("run-1")
    assert run["total_processed"] == 14
    assert run["total_errors"] == 1
    assert run["provider_snapshots"] == ["s_1", "s_2"]
    assert run["webhook_used"] is True


def test_metrics_for_missing_run(database):
    with pytest.raises(LookupError):
        RunTracker(database).apply_metrics("nope", "step", RunMetrics(processed=1))


def test_metrics_from_dict_ignores_unknown_keys():
    metrics = RunMetrics.from_dict({"processed": 3, "bogus": 1})

    assert metrics.processed == 3
    assert metrics.errors == 0


def test_queries(database):
    tracker = RunTracker(database)
    tracker.create_run("d-1", "data_collector")
    tracker.create_run("p-1", "property_details")
    tracker.update_status("d-1", "running")
    tracker.update_status("p-1", "running")
    tracker.update_status("p-1", "completed")
    tracker.set_output_summary("p-1", {"enriched": 3})
    tracker.link_to_collection("p-1", "col-1")

    assert [r["id"] for r in tracker.recent_runs(kind="property_details")] == ["p-1"]
    assert [r["id"] for r in tracker.recent_runs(status="running")] == ["d-1"]
    assert [r["id"] for r in tracker.active_runs()] == ["d-1"]

    finished = tracker.get_run("p-1")
    assert finished["output_summary"] == {"enriched": 3}
    assert finished["collection_id"] == "col-1"

    stats = {(row["workflow_type"], row["status"]): row["count"] for row in tracker.stats()}
    assert stats == {("data_collector", "running"): 1, ("property_details", "completed"): 1}
