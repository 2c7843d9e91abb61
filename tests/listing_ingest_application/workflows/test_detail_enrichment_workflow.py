from __future__ import annotations

import re

import pytest
from temporalio.client import WorkflowFailureError
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

from listing_ingest_application.services.record_store import RecordStore
from listing_ingest_application.services.run_tracker import RunTracker
from listing_ingest_application.testing.brightdata_mock import ndjson
from listing_ingest_application.workflows.details_workflow import (
    DetailEnrichmentRequest,
    DetailEnrichmentWorkflow,
)
from listing_ingest_application.workflows.worker import ACTIVITY_FUNCTIONS, WORKFLOW_CLASSES

_ZPID_IN_URL = re.compile(r"/(\d+)_zpid/")
FAILING_BATCH_MARKER = "1011"


def _worker(env: WorkflowEnvironment, task_queue: str) -> Worker:
    return Worker(
        env.client,
        task_queue=task_queue,
        workflows=WORKFLOW_CLASSES,
        activities=ACTIVITY_FUNCTIONS,
    )


def _seed(database, identifiers, *, collection_id="col-seed", enriched=()):
    store = RecordStore(database)
    for identifier in identifiers:
        store.upsert_record(str(identifier), {"zpid": identifier, "price": 1}, collection_id=collection_id)
    for identifier in enriched:
        store.mark_enriched(str(identifier))
    return store


def _detail(zpid: int) -> dict:
    return {
        "zpid": zpid,
        "price": 500000,
        "bedrooms": 3,
        "priceHistory": [{"date": "2024-01-01", "price": 480000}],
        "schools": [{"name": "Elm Elementary", "rating": 8}],
    }


def _details_for(inputs):
    zpids = [int(_ZPID_IN_URL.search(item["url"]).group(1)) for item in inputs]
    if any(str(zpid) == FAILING_BATCH_MARKER for zpid in zpids):
        return "<html>Service temporarily unavailable</html>"
    return ndjson([_detail(zpid) for zpid in zpids])


@pytest.mark.asyncio
async def test_details_keeps_going_after_a_failed_batch(
    database, blob_store, brightdata_factory, fast_timing, task_queue
):
    identifiers = list(range(1001, 1026))
    store = _seed(database, identifiers)
    mock = brightdata_factory(result_factory=_details_for)
    request = DetailEnrichmentRequest(
        identifiers=identifiers,
        batch_size=10,
        completion_mode="poll",
        timing=fast_timing,
    )

    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with _worker(env, task_queue):
            result = await env.client.execute_workflow(
                DetailEnrichmentWorkflow.run,
                request,
                id="details-partial",
                task_queue=task_queue,
            )

    assert result.status == "completed"
    assert result.requested == 25
    assert result.processed == 15
    assert result.errors == 10
    assert result.skipped == 0
    assert [batch["status"] for batch in result.batches] == ["success", "error", "success"]
    assert [batch["itemCount"] for batch in result.batches] == [10, 10, 5]
    assert result.batches[1]["errorKind"] == "DecodeFailureError"
    assert result.batches[1]["snapshotId"]
    assert len(mock.triggers) == 3

    for zpid in range(1001, 1011):
        assert store.get_record(str(zpid))["has_details"] is True
    for zpid in range(1011, 1021):
        assert store.get_record(str(zpid))["has_details"] is False
    for zpid in range(1021, 1026):
        assert store.get_record(str(zpid))["has_details"] is True
    assert store.get_children("1001", "price_history") == [{"date": "2024-01-01", "price": 480000}]
    assert store.get_children("1001", "schools") == [{"name": "Elm Elementary", "rating": 8}]
    assert store.get_detail("1001")["bedrooms"] == 3

    run = RunTracker(database).get_run("details-partial")
    assert run["status"] == "completed"
    assert run["workflow_type"] == "property_details"
    assert run["total_requested"] == 25
    assert run["total_processed"] == 15
    assert run["total_errors"] == 10
    assert sorted(run["provider_snapshots"]) == sorted(snapshot.snapshot_id for snapshot in mock.triggers)
    assert run["output_summary"]["enriched"] == 15

    # The failed batch is picked up again by an automatic run.
    assert sorted(store.select_unenriched(limit=50)) == [str(zpid) for zpid in range(1011, 1021)]


@pytest.mark.asyncio
async def test_details_rejection_on_first_batch_fails_the_run(
    database, blob_store, brightdata_factory, fast_timing, task_queue
):
    _seed(database, [2001, 2002, 2003])
    mock = brightdata_factory()
    mock.fail_next_trigger(402, "Insufficient balance")
    request = DetailEnrichmentRequest(identifiers=[2001, 2002, 2003], completion_mode="poll", timing=fast_timing)

    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with _worker(env, task_queue):
            with pytest.raises(WorkflowFailureError):
                await env.client.execute_workflow(
                    DetailEnrichmentWorkflow.run,
                    request,
                    id="details-payment-required",
                    task_queue=task_queue,
                )

    assert mock.triggers == []
    run = RunTracker(database).get_run("details-payment-required")
    assert run["status"] == "failed"
    assert "402" in run["error_message"]


@pytest.mark.asyncio
async def test_details_skips_enriched_and_unknown_identifiers(
    database, blob_store, brightdata_factory, fast_timing, task_queue
):
    store = _seed(database, [3001, 3002], enriched=[3001])
    mock = brightdata_factory(result_factory=_details_for)
    request = DetailEnrichmentRequest(
        identifiers=[3001, "3002", 3002, 9999, None],
        completion_mode="poll",
        timing=fast_timing,
    )

    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with _worker(env, task_queue):
            result = await env.client.execute_workflow(
                DetailEnrichmentWorkflow.run,
                request,
                id="details-skips",
                task_queue=task_queue,
            )

    assert result.processed == 1
    # already enriched 3001, unknown 9999, invalid None
    assert result.skipped == 3
    assert len(mock.triggers) == 1
    assert mock.triggers[0].inputs == [{"url": "https://www.zillow.com/homedetails/3002_zpid/"}]
    assert store.get_record("3002")["has_details"] is True


@pytest.mark.asyncio
async def test_details_auto_mode_enriches_a_collection(
    database, blob_store, brightdata_factory, fast_timing, task_queue
):
    store = _seed(database, [4001, 4002, 4003], collection_id="col-auto")
    _seed(database, [4100], collection_id="col-other")
    mock = brightdata_factory(result_factory=_details_for)
    request = DetailEnrichmentRequest(
        auto=True,
        collection_id="col-auto",
        completion_mode="poll",
        timing=fast_timing,
    )

    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with _worker(env, task_queue):
            result = await env.client.execute_workflow(
                DetailEnrichmentWorkflow.run,
                request,
                id="details-auto",
                task_queue=task_queue,
            )

    assert result.processed == 3
    assert {item["url"] for item in mock.triggers[0].inputs} == {
        f"https://www.zillow.com/homedetails/{zpid}_zpid/" for zpid in (4001, 4002, 4003)
    }
    assert store.get_record("4100")["has_details"] is False
    assert RunTracker(database).get_run("details-auto")["collection_id"] == "col-auto"


@pytest.mark.asyncio
async def test_details_auto_mode_with_nothing_to_enrich(database, blob_store, brightdata, fast_timing, task_queue):
    _seed(database, [5001], enriched=[5001])

    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with _worker(env, task_queue):
            result = await env.client.execute_workflow(
                DetailEnrichmentWorkflow.run,
                DetailEnrichmentRequest(auto=True, completion_mode="poll", timing=fast_timing),
                id="details-auto-empty",
                task_queue=task_queue,
            )

    assert result.status == "completed"
    assert result.processed == 0
    assert brightdata.triggers == []
    assert RunTracker(database).get_run("details-auto-empty")["status"] == "completed"


@pytest.mark.asyncio
@pytest.mark.parametrize("identifiers", [[], [None, 1.5, "  "]])
async def test_details_without_usable_identifiers_is_rejected(
    database, blob_store, brightdata, fast_timing, task_queue, identifiers
):
    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with _worker(env, task_queue):
            with pytest.raises(WorkflowFailureError) as excinfo:
                await env.client.execute_workflow(
                    DetailEnrichmentWorkflow.run,
                    DetailEnrichmentRequest(identifiers=identifiers, completion_mode="poll", timing=fast_timing),
                    id=f"details-invalid-{len(identifiers)}",
                    task_queue=task_queue,
                )

    assert excinfo.value.cause.type == "InvalidRequest"
    assert brightdata.triggers == []
    assert RunTracker(database).get_run(f"details-invalid-{len(identifiers)}")["status"] == "failed"
