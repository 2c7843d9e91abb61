from __future__ import annotations

import pytest

from listing_ingest_application.services.change_tracking import (
    ChangeType,
    MonitoringStore,
    RecordChange,
    detect_changes,
    tracked_price,
    tracked_status,
)
from listing_ingest_application.services.record_store import RecordStore


@pytest.fixture
def store(database) -> RecordStore:
    return RecordStore(database)


@pytest.fixture
def monitoring(database) -> MonitoringStore:
    return MonitoringStore(database)


@pytest.mark.parametrize(
    "attributes,expected",
    [
        ({"price": 450000}, 450000.0),
        ({"price": "$450,000"}, 450000.0),
        ({"price": "", "unformattedPrice": 399999}, 399999.0),
        ({"price": "Contact agent"}, None),
        ({"price": True}, None),
        ({}, None),
    ],
)
def test_tracked_price(attributes, expected):
    assert tracked_price(attributes) == expected


def test_tracked_status_prefers_camel_case():
    assert tracked_status({"homeStatus": " FOR_SALE ", "home_status": "SOLD"}) == "FOR_SALE"
    assert tracked_status({"home_status": "PENDING"}) == "PENDING"
    assert tracked_status({"homeStatus": "  "}) is None


def test_detect_changes_for_unseen_record():
    assert detect_changes("1", None, {"price": "$300,000"}) == [
        RecordChange("1", ChangeType.NEW_LISTING, None, "300000")
    ]


def test_detect_changes_needs_both_values():
    previous = {"price": 300000, "homeStatus": "FOR_SALE"}

    assert detect_changes("1", previous, {"homeStatus": "FOR_SALE"}) == []
    assert detect_changes("1", {"zpid": "1"}, {"price": 1, "homeStatus": "SOLD"}) == []
    assert detect_changes("1", previous, dict(previous)) == []


def test_detect_price_and_status_change_together():
    changes = detect_changes(
        "1",
        {"price": 300000, "homeStatus": "FOR_SALE"},
        {"price": 289500.5, "homeStatus": "PENDING"},
    )

    assert changes == [
        RecordChange("1", ChangeType.PRICE_CHANGE, "300000", "289500.5"),
        RecordChange("1", ChangeType.STATUS_CHANGE, "FOR_SALE", "PENDING"),
    ]


def test_upsert_records_changes_in_history(store, monitoring):
    assert store.upsert_record("10", {"price": 100, "homeStatus": "FOR_SALE"}, collection_id="col-1") == [
        RecordChange("10", ChangeType.NEW_LISTING, None, "100")
    ]
    changes = store.upsert_record(
        "10", {"price": 95, "homeStatus": "FOR_SALE"}, collection_id="col-2", run_id="run-2"
    )
    # Same payload again: nothing new to record.
    again = store.upsert_record("10", {"price": 95, "homeStatus": "FOR_SALE"}, collection_id="col-2")

    assert [change.change_type for change in changes] == [ChangeType.PRICE_CHANGE]
    assert again == []
    history = monitoring.list_changes(identifier="10")
    assert [row["change_type"] for row in history] == ["new_listing", "price_change"]
    assert history[1]["old_value"] == "100"
    assert history[1]["new_value"] == "95"
    assert history[1]["collection_id"] == "col-2"
    assert history[1]["run_id"] == "run-2"
    assert monitoring.count_changes("col-2") == {
        "new_listing": 0,
        "price_change": 1,
        "status_change": 0,
        "removed": 0,
    }


def test_mark_removed_is_idempotent(store, monitoring):
    for identifier in ("1", "2", "3"):
        store.upsert_record(identifier, {"price": 1, "homeStatus": "FOR_SALE"}, collection_id="col-a")
    store.upsert_record("1", {"price": 1, "homeStatus": "FOR_SALE"}, collection_id="col-b")

    assert monitoring.mark_removed("col-a", "col-b", run_id="mon-2") == 2
    assert monitoring.mark_removed("col-a", "col-b", run_id="mon-2") == 0

    removed = monitoring.list_changes(change_type="removed")
    assert [row["identifier"] for row in removed] == ["2", "3"]
    assert {row["old_value"] for row in removed} == {"FOR_SALE"}
    assert {row["collection_id"] for row in removed} == {"col-b"}


def test_monitoring_run_lifecycle(monitoring):
    assert monitoring.start_run("mon-1", run_date="2026-10-18", locations=["81411", "81410"])["status"] == "running"
    # Restarting the same run keeps the original row.
    monitoring.start_run("mon-1", run_date="2026-10-19", locations=["81410"])
    assert monitoring.get_run("mon-1")["run_date"] == "2026-10-18"
    assert monitoring.previous_collection("mon-2", ["81410", "81411"]) is None

    monitoring.complete_run(
        "mon-1",
        collection_id="col-1",
        previous_collection_id=None,
        total_records=4,
        counts={"new_listing": 4},
    )
    monitoring.start_run("mon-2", run_date="2026-10-19", locations=["81410", "81411"])

    assert monitoring.previous_collection("mon-2", ["81411", " 81410 "]) == "col-1"
    assert monitoring.previous_collection("mon-2", ["81410"]) is None

    monitoring.fail_run("mon-2", "provider down")
    monitoring.fail_run("mon-1", "too late")

    runs = {run["id"]: run for run in monitoring.list_runs()}
    assert runs["mon-1"]["status"] == "completed"
    assert runs["mon-1"]["new_listings"] == 4
    assert runs["mon-1"]["locations"] == ["81410", "81411"]
    assert runs["mon-2"]["status"] == "failed"
    assert runs["mon-2"]["error_message"] == "provider down"
