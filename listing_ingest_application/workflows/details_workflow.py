from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.exceptions import ActivityError, ApplicationError

with workflow.unsafe.imports_passed_through():
    from ..config import runtime_config, settings
    from .activities import (
        finish_run,
        record_run_output,
        select_auto_enrichment_identifiers,
        select_enrichment_candidates,
        start_run,
    )
    from .activities.constants import EnrichmentSource, RunKind, SubmissionKind
    from .helpers.batching import Batch, BatchOutcome, BatchResult, run_batches
    from .helpers.completion import CompletionMode
    from .helpers.failures import is_kind
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

WORKFLOW_NAME = "DetailEnrichment"

# A rejection on the first batch means every batch would be rejected the same way.
_RUN_FATAL_KINDS = ("ProviderRejectedError", "PaymentRequiredWorkflowError")


@dataclass
class DetailEnrichmentRequest:
    identifiers: List[Any] = field(default_factory=list)
    auto: bool = False
    limit: Optional[int] = None
    collection_id: Optional[str] = None
    lookback_days: Optional[int] = None
    batch_size: Optional[int] = None
    batch_concurrency: Optional[int] = None
    completion_mode: Optional[str] = None
    triggered_by: str = "manual"
    timing: Optional[CompletionTiming] = None


@dataclass
class DetailEnrichmentResult:
    run_id: str
    status: str
    requested: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    batches: List[Dict[str, Any]] = field(default_factory=list)


def _source(request: DetailEnrichmentRequest) -> str:
    if request.auto:
        return EnrichmentSource.AUTO
    if request.collection_id:
        return EnrichmentSource.COLLECTION
    return EnrichmentSource.MANUAL


def _is_run_fatal(batch: Batch[Any], exc: BaseException) -> bool:
    return batch.index == 1 and is_kind(exc, *_RUN_FATAL_KINDS)


@workflow.defn(name=WORKFLOW_NAME)
class DetailEnrichmentWorkflow:
    @workflow.run
    async def run(self, request: DetailEnrichmentRequest) -> DetailEnrichmentResult:  # type: ignore[override]
        run_id = workflow.info().workflow_id
        events = WorkflowEvents(WORKFLOW_NAME, run_id)
        timing = request.timing or CompletionTiming()
        mode = request.completion_mode or settings.default_completion_mode
        batch_size = request.batch_size or runtime_config.batch_size
        concurrency = request.batch_concurrency or runtime_config.batch_concurrency
        source = _source(request)

        await workflow.execute_activity(
            start_run,
            args=[
                {
                    "run_id": run_id,
                    "kind": RunKind.DETAILS,
                    "input_params": {
                        "identifiers": len(request.identifiers),
                        "auto": request.auto,
                        "limit": request.limit,
                        "collection_id": request.collection_id,
                        "batch_size": batch_size,
                        "completion_mode": mode,
                    },
                    "triggered_by": request.triggered_by,
                    "collection_id": request.collection_id,
                }
            ],
            start_to_close_timeout=STEP_TIMEOUT,
            retry_policy=STORE_RETRY,
        )
        await events.log("workflow.start", message="Detail enrichment started", data={"source": source})

        try:
            result = await self._enrich(request, run_id, events, timing, mode, batch_size, concurrency, source)
        except (ActivityError, ApplicationError) as exc:
            await fail_run(events, run_id, exc)
            raise

        await workflow.execute_activity(
            record_run_output,
            args=[
                {
                    "run_id": run_id,
                    "collection_id": request.collection_id,
                    "summary": {
                        "source": source,
                        "requested": result.requested,
                        "enriched": result.processed,
                        "skipped": result.skipped,
                        "errors": result.errors,
                        "batches": result.batches,
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
        await events.log(
            "workflow.complete",
            data={"processed": result.processed, "errors": result.errors, "skipped": result.skipped},
        )
        return result

    async def _enrich(
        self,
        request: DetailEnrichmentRequest,
        run_id: str,
        events: WorkflowEvents,
        timing: CompletionTiming,
        mode: str,
        batch_size: int,
        concurrency: int,
        source: str,
    ) -> DetailEnrichmentResult:
        if request.auto:
            identifiers: List[Any] = await workflow.execute_activity(
                select_auto_enrichment_identifiers,
                args=[
                    {
                        "limit": request.limit,
                        "collection_id": request.collection_id,
                        "lookback_days": request.lookback_days,
                    }
                ],
                start_to_close_timeout=STEP_TIMEOUT,
                retry_policy=STORE_RETRY,
            )
            if not identifiers:
                await events.log("selection.empty", message="No records are waiting for details")
                return DetailEnrichmentResult(run_id=run_id, status="completed")
        else:
            identifiers = list(request.identifiers)
            if not identifiers:
                raise ApplicationError(
                    "No identifiers supplied for detail enrichment", type="InvalidRequest", non_retryable=True
                )

        selection = await workflow.execute_activity(
            select_enrichment_candidates,
            args=[identifiers],
            start_to_close_timeout=STEP_TIMEOUT,
            retry_policy=STORE_RETRY,
        )
        candidates: List[Dict[str, Any]] = selection["candidates"]
        skipped = len(selection["already_enriched"]) + len(selection["unknown"]) + len(selection["invalid"])
        if len(selection["invalid"]) == len(identifiers):
            raise ApplicationError(
                f"None of the {len(identifiers)} supplied identifiers are valid",
                type="InvalidRequest",
                non_retryable=True,
            )

        requested = len(identifiers)
        await apply_metrics(run_id, "selection", {"requested": requested, "skipped": skipped})
        await events.log(
            "selection.done",
            data={
                "candidates": len(candidates),
                "alreadyEnriched": len(selection["already_enriched"]),
                "unknown": len(selection["unknown"]),
                "invalid": len(selection["invalid"]),
            },
        )
        if not candidates:
            return DetailEnrichmentResult(
                run_id=run_id, status="completed", requested=requested, skipped=skipped
            )

        submissions: Dict[int, SnapshotSubmission] = {}
        record_errors: Dict[int, int] = {}

        async def _process(batch: Batch[Dict[str, Any]]) -> BatchResult:
            submission = await submit(
                run_id=run_id,
                job_id=f"{run_id}-batch-{batch.index}",
                kind=SubmissionKind.DETAILS,
                inputs=[{"url": candidate["url"]} for candidate in batch.items],
                mode=mode,
            )
            submissions[batch.index] = submission
            try:
                snapshot = await wait_and_ingest(
                    events,
                    submission,
                    timing,
                    run_id=run_id,
                    kind=SubmissionKind.DETAILS,
                    source=source,
                )
            finally:
                await release(events, submission)

            errors = snapshot.errors
            record_errors[batch.index] = errors
            await apply_metrics(
                run_id,
                f"batch-{batch.index}",
                {
                    "processed": snapshot.stored,
                    "errors": errors,
                    "provider_snapshots": [snapshot.provider_handle],
                    "webhook_used": submission.completion_mode == CompletionMode.WEBHOOK,
                    "blob_files_created": 1 if snapshot.blob_key else 0,
                    "blob_total_size_bytes": snapshot.blob_size_bytes,
                },
            )
            await events.log(
                "batch.complete",
                data={
                    "batchIndex": batch.index,
                    "snapshotId": snapshot.provider_handle,
                    "enriched": snapshot.stored,
                    "errors": errors,
                },
            )
            return BatchResult(
                data_count=snapshot.stored,
                provider_handle=snapshot.provider_handle,
                details={"errors": errors, "failedIdentifiers": snapshot.failed_identifiers},
            )

        outcomes: List[BatchOutcome] = await run_batches(
            candidates,
            batch_size,
            _process,
            concurrency=concurrency,
            is_fatal=_is_run_fatal,
        )

        for outcome in outcomes:
            if outcome.succeeded:
                continue
            submission = submissions.get(outcome.index)
            if submission is not None and not outcome.provider_handle:
                outcome.provider_handle = submission.provider_handle
            record_errors[outcome.index] = outcome.item_count
            await apply_metrics(
                run_id,
                f"batch-{outcome.index}",
                {
                    "errors": outcome.item_count,
                    "provider_snapshots": [outcome.provider_handle] if outcome.provider_handle else [],
                    "webhook_used": bool(submission)
                    and submission.completion_mode == CompletionMode.WEBHOOK,
                },
            )
            await events.log(
                "batch.failed",
                message=outcome.error,
                data={"batchIndex": outcome.index, "errorKind": outcome.error_kind},
                level="warn",
            )

        return DetailEnrichmentResult(
            run_id=run_id,
            status="completed",
            requested=requested,
            processed=sum(outcome.data_count for outcome in outcomes),
            errors=sum(record_errors.values()),
            skipped=skipped,
            batches=[outcome.to_summary() for outcome in outcomes],
        )
