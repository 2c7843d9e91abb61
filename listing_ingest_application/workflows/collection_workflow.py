from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.exceptions import ActivityError, ApplicationError

with workflow.unsafe.imports_passed_through():
    from ..config import settings
    from .activities import (
        close_collection,
        finish_run,
        open_collection,
        record_run_output,
        start_run,
    )
    from .activities.constants import DEFAULT_LISTING_CATEGORY, RunKind, SubmissionKind
    from .helpers.completion import CompletionMode
    from .helpers.failures import failure_message
    from .snapshot_steps import (
        STEP_TIMEOUT,
        STORE_RETRY,
        CompletionTiming,
        SnapshotSubmission,
        WorkflowEvents,
        apply_metrics,
        fail_run,
        release,
        submit,
        wait_and_ingest,
    )

WORKFLOW_NAME = "DiscoveryCollection"


@dataclass
class DiscoveryRequest:
    locations: List[str] = field(default_factory=list)
    listing_category: str = DEFAULT_LISTING_CATEGORY
    home_type: Optional[str] = None
    days_on_market: Optional[int] = None
    exact_address: bool = False
    # Fully formed provider input items; when set, the filter fields above are ignored.
    inputs: List[Dict[str, Any]] = field(default_factory=list)
    completion_mode: Optional[str] = None
    triggered_by: str = "manual"
    timing: Optional[CompletionTiming] = None


@dataclass
class DiscoveryResult:
    run_id: str
    collection_id: str
    status: str
    requested: int = 0
    processed: int = 0
    errors: int = 0
    provider_handle: Optional[str] = None
    completion_source: Optional[str] = None
    blob_key: Optional[str] = None


def build_discovery_inputs(request: DiscoveryRequest) -> List[Dict[str, Any]]:
    """One provider input item per location, sharing the request's filters."""

    if request.inputs:
        return [dict(item) for item in request.inputs]
    locations = [loc.strip() for loc in request.locations if isinstance(loc, str) and loc.strip()]
    if not locations:
        raise ValueError("At least one location is required for discovery")
    items: List[Dict[str, Any]] = []
    for location in locations:
        item: Dict[str, Any] = {
            "location": location,
            "listingCategory": request.listing_category or DEFAULT_LISTING_CATEGORY,
            "exact_address": bool(request.exact_address),
        }
        if request.home_type:
            item["HomeType"] = request.home_type
        if request.days_on_market is not None:
            item["days_on_zillow"] = str(request.days_on_market)
        items.append(item)
    return items


def _input_params(request: DiscoveryRequest) -> Dict[str, Any]:
    return {
        "locations": list(request.locations),
        "listing_category": request.listing_category,
        "home_type": request.home_type,
        "days_on_market": request.days_on_market,
        "exact_address": request.exact_address,
        "inputs": len(request.inputs),
        "completion_mode": request.completion_mode,
    }


@workflow.defn(name=WORKFLOW_NAME)
class DiscoveryCollectionWorkflow:
    @workflow.run
    async def run(self, request: DiscoveryRequest) -> DiscoveryResult:  # type: ignore[override]
        info = workflow.info()
        run_id = info.workflow_id
        collection_id = f"col-{workflow.uuid4()}"
        events = WorkflowEvents(WORKFLOW_NAME, run_id)
        timing = request.timing or CompletionTiming()
        mode = request.completion_mode or settings.default_completion_mode
        submission: Optional[SnapshotSubmission] = None
        collection_opened = False

        await workflow.execute_activity(
            start_run,
            args=[
                {
                    "run_id": run_id,
                    "kind": RunKind.DISCOVERY,
                    "input_params": _input_params(request),
                    "triggered_by": request.triggered_by,
                }
            ],
            start_to_close_timeout=STEP_TIMEOUT,
            retry_policy=STORE_RETRY,
        )
        await events.log("workflow.start", message="Discovery collection started", data={"mode": mode})

        try:
            try:
                inputs = build_discovery_inputs(request)
            except ValueError as exc:
                raise ApplicationError(str(exc), type="InvalidRequest", non_retryable=True) from exc

            submission = await submit(
                run_id=run_id,
                job_id=f"{run_id}-discovery",
                kind=SubmissionKind.DISCOVERY,
                inputs=inputs,
                mode=mode,
            )
            await workflow.execute_activity(
                open_collection,
                args=[
                    {
                        "collection_id": collection_id,
                        "run_id": run_id,
                        "provider_handle": submission.provider_handle,
                        "inputs": inputs,
                    }
                ],
                start_to_close_timeout=STEP_TIMEOUT,
                retry_policy=STORE_RETRY,
            )
            collection_opened = True
            await apply_metrics(
                run_id,
                "submission",
                {
                    "requested": len(inputs),
                    "provider_snapshots": [submission.provider_handle],
                    "webhook_used": submission.completion_mode == CompletionMode.WEBHOOK,
                },
            )
            await events.log(
                "snapshot.submitted",
                data={"snapshotId": submission.provider_handle, "inputs": len(inputs)},
            )

            snapshot = await wait_and_ingest(
                events,
                submission,
                timing,
                run_id=run_id,
                kind=SubmissionKind.DISCOVERY,
                source=inputs[0].get("location") or "inputs",
                collection_id=collection_id,
            )

            processed = snapshot.stored
            errors = snapshot.errors
            blob_key = snapshot.blob_key
            await apply_metrics(
                run_id,
                "ingest",
                {
                    "processed": processed,
                    "errors": errors,
                    "blob_files_created": 1 if blob_key else 0,
                    "blob_total_size_bytes": snapshot.blob_size_bytes,
                },
            )
            await workflow.execute_activity(
                close_collection,
                args=[
                    {
                        "collection_id": collection_id,
                        "status": "completed",
                        "record_count": processed,
                        "blob_key": blob_key,
                    }
                ],
                start_to_close_timeout=STEP_TIMEOUT,
                retry_policy=STORE_RETRY,
            )
            result = DiscoveryResult(
                run_id=run_id,
                collection_id=collection_id,
                status="completed",
                requested=len(inputs),
                processed=processed,
                errors=errors,
                provider_handle=snapshot.provider_handle,
                completion_source=snapshot.completion_source,
                blob_key=blob_key,
            )
            await workflow.execute_activity(
                record_run_output,
                args=[
                    {
                        "run_id": run_id,
                        "collection_id": collection_id,
                        "summary": {
                            "collectionId": collection_id,
                            "snapshotId": snapshot.provider_handle,
                            "completionSource": snapshot.completion_source,
                            "recordsStored": processed,
                            "skippedLines": snapshot.skipped_lines,
                            "rejected": snapshot.rejected,
                            "failed": snapshot.failed,
                            "reasons": snapshot.reasons,
                            "blobKey": blob_key,
                        },
                    }
                ],
                start_to_close_timeout=STEP_TIMEOUT,
                retry_policy=STORE_RETRY,
            )
            await workflow.execute_activity(
                finish_run,
                args=[{"run_id": run_id, "status": "completed"}],
                start_to_close_timeout=STEP_TIMEOUT,
                retry_policy=STORE_RETRY,
            )
        except (ActivityError, ApplicationError) as exc:
            await fail_run(events, run_id, exc)
            if collection_opened:
                try:
                    await workflow.execute_activity(
                        close_collection,
                        args=[{"collection_id": collection_id, "status": "failed"}],
                        start_to_close_timeout=STEP_TIMEOUT,
                        retry_policy=STORE_RETRY,
                    )
                except ActivityError as close_exc:
                    workflow.logger.error(
                        "Could not mark collection %s failed: %s",
                        collection_id,
                        failure_message(close_exc),
                    )
            await release(events, submission)
            raise

        await release(events, submission)
        await events.log(
            "workflow.complete",
            data={"processed": result.processed, "errors": result.errors, "collectionId": collection_id},
        )
        return result
