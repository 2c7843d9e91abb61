"""Workflow-side steps shared by the discovery and detail workflows.

Each provider snapshot goes through submit -> wait for completion -> ingest.
Waiting is a single activity whose retry policy *is* the polling schedule:
every ``StillProcessingError`` is one more tick, and running out of attempts
(or the schedule-to-close deadline) surfaces as ``TimedOutWorkflowError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from ..config import runtime_config
    from .activities import (
        check_snapshot_completion,
        finish_run,
        ingest_snapshot,
        record_workflow_event,
        release_webhook_registration,
        submit_snapshot,
        update_run_metrics,
    )
    from .exceptions import TimedOutWorkflowError
    from .helpers.completion import CompletionMode
    from .helpers.failures import failure_message, is_completion_timeout

STEP_TIMEOUT = timedelta(minutes=2)
INGEST_TIMEOUT = timedelta(minutes=10)
EVENT_TIMEOUT = timedelta(seconds=60)

# Store and bookkeeping activities: short retries for a locked SQLite file.
STORE_RETRY = RetryPolicy(
    initial_interval=timedelta(seconds=1),
    backoff_coefficient=2.0,
    maximum_interval=timedelta(seconds=30),
    maximum_attempts=5,
)
# Submission and ingest: ProviderUnavailable / RateLimit are retried, rejections are not.
PROVIDER_RETRY = RetryPolicy(
    initial_interval=timedelta(seconds=5),
    backoff_coefficient=2.0,
    maximum_interval=timedelta(minutes=2),
    maximum_attempts=5,
)


@dataclass
class CompletionTiming:
    """Completion check cadence. Defaults come from runtime.yaml."""

    poll_interval_seconds: float = float(runtime_config.poll_interval_seconds)
    poll_backoff_coefficient: float = runtime_config.poll_backoff_coefficient
    poll_max_interval_seconds: float = float(runtime_config.poll_max_interval_seconds)
    poll_max_retries: int = runtime_config.poll_max_retries
    webhook_check_interval_seconds: float = float(runtime_config.webhook_check_interval_seconds)
    webhook_max_interval_seconds: float = float(runtime_config.webhook_max_interval_seconds)
    webhook_max_retries: int = runtime_config.webhook_max_retries
    deadline_seconds: float = float(runtime_config.completion_deadline_minutes * 60)

    @property
    def deadline(self) -> timedelta:
        return timedelta(seconds=self.deadline_seconds)

    def retry_policy(self, mode: str) -> RetryPolicy:
        if mode == CompletionMode.WEBHOOK:
            # Safety-net poll behind the webhook; backs off like the pure poll from a longer start.
            interval = self.webhook_check_interval_seconds
            return RetryPolicy(
                initial_interval=timedelta(seconds=interval),
                backoff_coefficient=self.poll_backoff_coefficient,
                maximum_interval=timedelta(seconds=max(interval, self.webhook_max_interval_seconds)),
                maximum_attempts=self.webhook_max_retries + 1,
            )
        return RetryPolicy(
            initial_interval=timedelta(seconds=self.poll_interval_seconds),
            backoff_coefficient=self.poll_backoff_coefficient,
            maximum_interval=timedelta(seconds=self.poll_max_interval_seconds),
            maximum_attempts=self.poll_max_retries + 1,
        )


@dataclass
class SnapshotSubmission:
    job_id: str
    provider_handle: str
    completion_mode: str
    reused: bool = False


@dataclass
class SnapshotIngest:
    """What one ingested snapshot left behind; the records themselves stay in the store."""

    provider_handle: str
    completion_source: Optional[str] = None
    empty: bool = False
    record_count: int = 0
    skipped_lines: int = 0
    stored: int = 0
    rejected: int = 0
    failed: int = 0
    failed_identifiers: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    blob_key: Optional[str] = None
    blob_size_bytes: int = 0

    @property
    def errors(self) -> int:
        return self.skipped_lines + self.rejected + self.failed


class WorkflowEvents:
    """Best-effort workflow event log; failures never affect the run."""

    def __init__(self, workflow_name: str, run_id: str) -> None:
        self.workflow_name = workflow_name
        self.run_id = run_id

    async def log(
        self,
        event: str,
        *,
        message: str | None = None,
        data: Dict[str, Any] | None = None,
        level: str = "info",
    ) -> None:
        text = f"{self.workflow_name} | event={event} | message={message} | data={data}"
        if level == "error":
            workflow.logger.error(text)
        elif level in {"warn", "warning"}:
            workflow.logger.warning(text)
        else:
            workflow.logger.info(text)

        info = workflow.info()
        try:
            await workflow.execute_activity(
                record_workflow_event,
                args=[
                    {
                        "runId": self.run_id,
                        "workflowId": info.workflow_id,
                        "workflowName": self.workflow_name,
                        "event": event,
                        "message": message,
                        "data": data,
                        "level": level,
                        "createdAt": int(workflow.now().timestamp() * 1000),
                    }
                ],
                schedule_to_close_timeout=EVENT_TIMEOUT,
                retry_policy=RetryPolicy(maximum_attempts=2),
            )
        except ActivityError:
            # Best-effort logging only
            pass


async def submit(
    *,
    run_id: str,
    job_id: str,
    kind: str,
    inputs: List[Dict[str, Any]],
    mode: str,
) -> SnapshotSubmission:
    secret = workflow.uuid4().hex if mode == CompletionMode.WEBHOOK else None
    result = await workflow.execute_activity(
        submit_snapshot,
        args=[
            {
                "run_id": run_id,
                "job_id": job_id,
                "kind": kind,
                "inputs": inputs,
                "completion_mode": mode,
                "secret": secret,
            }
        ],
        start_to_close_timeout=STEP_TIMEOUT,
        retry_policy=PROVIDER_RETRY,
    )
    return SnapshotSubmission(
        job_id=job_id,
        provider_handle=result["provider_handle"],
        completion_mode=result["completion_mode"],
        reused=bool(result.get("reused")),
    )


async def wait_for_completion(submission: SnapshotSubmission, timing: CompletionTiming) -> Dict[str, Any]:
    """Block (durably) until the snapshot is ready."""

    handle = submission.provider_handle
    deadline = workflow.now() + timing.deadline
    try:
        return await workflow.execute_activity(
            check_snapshot_completion,
            args=[
                {
                    "job_id": submission.job_id,
                    "provider_handle": handle,
                    "completion_mode": submission.completion_mode,
                    "deadline": deadline.isoformat(),
                }
            ],
            start_to_close_timeout=STEP_TIMEOUT,
            schedule_to_close_timeout=timing.deadline,
            retry_policy=timing.retry_policy(submission.completion_mode),
        )
    except ActivityError as exc:
        if is_completion_timeout(exc):
            raise TimedOutWorkflowError(
                f"Snapshot {handle} was not ready in time: {failure_message(exc)}"
            ) from exc
        raise


async def wait_and_ingest(
    events: WorkflowEvents,
    submission: SnapshotSubmission,
    timing: CompletionTiming,
    *,
    run_id: str,
    kind: str,
    source: str,
    collection_id: Optional[str] = None,
) -> SnapshotIngest:
    """Wait for the snapshot, then load, persist and mirror it in one activity."""

    completion = await wait_for_completion(submission, timing)
    handle = submission.provider_handle
    summary = await workflow.execute_activity(
        ingest_snapshot,
        args=[
            {
                "run_id": run_id,
                "job_id": submission.job_id,
                "kind": kind,
                "provider_handle": handle,
                "source": source,
                "delivery_key": completion.get("delivery_key"),
                "collection_id": collection_id,
            }
        ],
        start_to_close_timeout=INGEST_TIMEOUT,
        retry_policy=PROVIDER_RETRY,
    )
    if summary.get("mirror_error"):
        await events.log(
            "blob.mirror_failed",
            message=summary["mirror_error"],
            data={"snapshotId": handle},
            level="warn",
        )
    return SnapshotIngest(
        provider_handle=handle,
        completion_source=completion.get("source"),
        empty=bool(summary.get("empty")),
        record_count=int(summary.get("record_count") or 0),
        skipped_lines=int(summary.get("skipped_lines") or 0),
        stored=int(summary.get("stored") or 0),
        rejected=int(summary.get("rejected") or 0),
        failed=int(summary.get("failed") or 0),
        failed_identifiers=list(summary.get("failed_identifiers") or []),
        reasons=list(summary.get("reasons") or []),
        blob_key=summary.get("blob_key"),
        blob_size_bytes=int(summary.get("blob_size_bytes") or 0),
    )


async def apply_metrics(run_id: str, step_key: str, metrics: Dict[str, Any]) -> None:
    await workflow.execute_activity(
        update_run_metrics,
        args=[{"run_id": run_id, "step_key": step_key, "metrics": metrics}],
        start_to_close_timeout=STEP_TIMEOUT,
        retry_policy=STORE_RETRY,
    )


async def release(events: WorkflowEvents, submission: Optional[SnapshotSubmission]) -> None:
    if submission is None or submission.completion_mode != CompletionMode.WEBHOOK:
        return
    try:
        await workflow.execute_activity(
            release_webhook_registration,
            args=[submission.provider_handle],
            start_to_close_timeout=STEP_TIMEOUT,
            retry_policy=STORE_RETRY,
        )
    except ActivityError as exc:
        # Expired registrations are purged by the worker anyway.
        await events.log(
            "webhook.release_failed",
            message=failure_message(exc),
            data={"snapshotId": submission.provider_handle},
            level="warn",
        )


async def fail_run(events: WorkflowEvents, run_id: str, exc: BaseException) -> None:
    """Mark the run failed; a bookkeeping failure here must not mask ``exc``."""

    message = failure_message(exc)
    await events.log("workflow.failed", message=message, level="error")
    try:
        await workflow.execute_activity(
            finish_run,
            args=[{"run_id": run_id, "status": "failed", "error_message": message}],
            start_to_close_timeout=STEP_TIMEOUT,
            retry_policy=STORE_RETRY,
        )
    except ActivityError as finish_exc:
        workflow.logger.error("Could not mark run %s failed: %s", run_id, failure_message(finish_exc))


__all__ = [
    "CompletionTiming",
    "INGEST_TIMEOUT",
    "SnapshotIngest",
    "SnapshotSubmission",
    "STEP_TIMEOUT",
    "STORE_RETRY",
    "WorkflowEvents",
    "apply_metrics",
    "fail_run",
    "release",
    "submit",
    "wait_and_ingest",
    "wait_for_completion",
]
