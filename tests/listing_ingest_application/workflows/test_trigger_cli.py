from __future__ import annotations

import json
from datetime import timedelta

import pytest

from listing_ingest_application.services.change_tracking import MonitoringStore
from listing_ingest_application.services.record_store import RecordStore
from listing_ingest_application.services.run_tracker import RunTracker
from listing_ingest_application.services.webhook_registry import WebhookRegistry
from listing_ingest_application.workflows import trigger


def test_parser_discover_collects_repeated_locations():
    args = trigger.build_parser().parse_args(
        ["discover", "--location", "Austin, TX", "--location", "Dallas, TX", "--days-on-market", "3", "--wait"]
    )

    assert args.location == ["Austin, TX", "Dallas, TX"]
    assert args.days_on_market == 3
    assert args.wait is True
    assert args.mode is None
    assert args.handler is trigger.start_discovery


def test_parser_details_options():
    args = trigger.build_parser().parse_args(
        ["details", "--ids", "123", "456", "--batch-size", "5", "--mode", "webhook"]
    )

    assert args.ids == ["123", "456"]
    assert args.batch_size == 5
    assert args.mode == "webhook"
    assert args.auto is False
    assert args.handler is trigger.start_details


def test_parser_rejects_unknown_mode():
    with pytest.raises(SystemExit):
        trigger.build_parser().parse_args(["details", "--auto", "--mode", "carrier-pigeon"])


def test_details_requires_ids_or_auto():
    with pytest.raises(SystemExit, match="--ids or --auto"):
        trigger.main(["details"])


def test_run_and_runs_print_tracked_runs(database, capsys):
    tracker = RunTracker(database)
    tracker.create_run("discovery-1", "data_collector", {"locations": ["Austin, TX"]}, triggered_by="cli")
    tracker.create_run("details-1", "property_details", {"identifiers": 3})
    tracker.update_status("details-1", "running")

    trigger.main(["run", "discovery-1"])
    shown = json.loads(capsys.readouterr().out)
    assert shown["id"] == "discovery-1"
    assert shown["triggered_by"] == "cli"

    trigger.main(["runs", "--kind", "property_details"])
    listed = json.loads(capsys.readouterr().out)
    assert [run["id"] for run in listed] == ["details-1"]

    trigger.main(["active"])
    active = json.loads(capsys.readouterr().out)
    assert {run["id"] for run in active} == {"discovery-1", "details-1"}


def test_run_unknown_id_exits(database):
    with pytest.raises(SystemExit, match="not found"):
        trigger.main(["run", "missing"])


def test_purge_registrations(database, capsys):
    registry = WebhookRegistry(database)
    registry.register(
        "s_old", job_id="job-old", run_id="run-old", kind="details", secret="a" * 32, ttl=timedelta(seconds=-1)
    )
    registry.register(
        "s_live", job_id="job-live", run_id="run-live", kind="details", secret="b" * 32, ttl=timedelta(hours=1)
    )

    trigger.main(["purge-registrations"])

    assert "Removed 1 expired" in capsys.readouterr().out
    assert registry.lookup("s_old", include_expired=True) is None
    assert registry.lookup("s_live") is not None


def test_cancel_record_only_marks_run(database, capsys):
    tracker = RunTracker(database)
    tracker.create_run("details-2", "property_details")
    tracker.update_status("details-2", "running")

    trigger.main(["cancel", "details-2", "--record-only", "--reason", "operator stop"])

    assert "Cancelled run details-2" in capsys.readouterr().out
    run = tracker.get_run("details-2")
    assert run["status"] == "cancelled"
    assert run["error_message"] == "operator stop"
    # The workflow's own completion can no longer overwrite it.
    assert tracker.update_status("details-2", "completed") is False


def test_cancel_finished_run_exits(database):
    tracker = RunTracker(database)
    tracker.create_run("details-3", "property_details")
    tracker.update_status("details-3", "running")
    tracker.update_status("details-3", "completed")

    with pytest.raises(SystemExit, match="not queued or running"):
        trigger.main(["cancel", "details-3", "--record-only"])


def test_parser_monitor_defaults_to_configured_locations():
    args = trigger.build_parser().parse_args(["monitor", "--wait"])

    assert args.location is None
    assert args.triggered_by == "cli"
    assert args.handler is trigger.start_monitoring


def test_changes_and_monitoring_runs(database, capsys):
    store = RecordStore(database)
    store.upsert_record("7", {"price": 100}, collection_id="col-1")
    store.upsert_record("7", {"price": 120}, collection_id="col-2")
    MonitoringStore(database).start_run("mon-1", run_date="2026-10-19", locations=["81410"])

    trigger.main(["changes", "--identifier", "7", "--type", "price_change"])
    changes = json.loads(capsys.readouterr().out)
    assert [(row["old_value"], row["new_value"]) for row in changes] == [("100", "120")]

    trigger.main(["monitoring-runs"])
    runs = json.loads(capsys.readouterr().out)
    assert [run["id"] for run in runs] == ["mon-1"]
