from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from temporalio import activity
from temporalio.exceptions import ApplicationError

from ...config import runtime_config, settings
from ...services import telemetry
from ...services.blob_store import (
    RAW_DETAILS_KIND,
    RAW_DISCOVERY_KIND,
    StoredBlob,
    build_blob_key,
    get_blob_store,
)
from ...services.brightdata_client import get_brightdata_client
from ...services.change_tracking import ChangeType, MonitoringStore
from ...services.database import get_database, isoformat, parse_timestamp, utc_now
from ...services.ingestion import IngestionWriter
from ...services.record_store import RecordStore
from ...services.run_tracker import RunMetrics, RunTracker
from ...services.webhook_registry import SubmissionStore, WebhookRegistry
from ..exceptions import DecodeFailureError, PersistenceFailureError
from ..helpers.completion import (
    CompletionMode,
    CompletionState,
    Done,
    Fatal,
    Retry,
    WebhookState,
    evaluate_completion,
    raise_for_outcome,
)
from ..helpers.decoder import DecodeFailure, decode_records
from ..helpers.identifiers import canonicalize_identifiers
from ..helpers.log_preview import shrink_for_log, summarize_records
from ..helpers.provider import build_webhook_config
from .constants import (
    DISCOVER_BY_INPUT_FILTERS,
    EVENT_DATA_MAX_CHARS,
    MAX_REJECTION_REASONS,
    MAX_REPORTED_IDENTIFIERS,
    SubmissionKind,
)
from .types import (
    CompletionCheckRequest,
    CompletionCheckResult,
    EnrichmentSelectionResult,
    IngestRequest,
    IngestSummary,
    PersistSummary,
    Record,
    SubmitRequest,
    SubmitResult,
    WorkflowEvent,
)

logger = logging.getLogger("temporal.worker.activities")

__all__ = [
    "check_snapshot_completion",
    "close_collection",
    "complete_monitoring_run",
    "fail_monitoring_run",
    "finish_run",
    "ingest_snapshot",
    "open_collection",
    "record_run_output",
    "record_workflow_event",
    "release_webhook_registration",
    "select_auto_enrichment_identifiers",
    "select_enrichment_candidates",
    "start_monitoring_run",
    "start_run",
    "submit_snapshot",
    "update_run_metrics",
]


def _safe_activity_heartbeat(details: Any | None = None) -> None:
    try:
        if details is None:
            activity.heartbeat()
        else:
            activity.heartbeat(details)
    except RuntimeError:
        # Not running inside an activity context (unit tests call these directly).
        return


def _attempt() -> int:
    try:
        return activity.info().attempt
    except RuntimeError:
        return 1


def _writer(db) -> IngestionWriter:
    return IngestionWriter(
        RecordStore(db),
        identifier_field=settings.record_identifier_field,
        detail_url_template=settings.detail_url_template,
    )


# ---------------------------------------------------------------------------
# Run bookkeeping
# ---------------------------------------------------------------------------


@activity.defn
async def start_run(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Create the run row (idempotent on run id) and move it to running."""

    tracker = RunTracker(get_database())
    run = await asyncio.to_thread(
        tracker.create_run,
        payload["run_id"],
        payload["kind"],
        payload.get("input_params") or {},
        triggered_by=payload.get("triggered_by"),
        collection_id=payload.get("collection_id"),
    )
    if run["status"] == "queued":
        await asyncio.to_thread(tracker.update_status, payload["run_id"], "running")
    return {"run_id": run["id"], "kind": run["workflow_type"]}


@activity.defn
async def update_run_metrics(payload: Dict[str, Any]) -> bool:
    tracker = RunTracker(get_database())
    metrics = RunMetrics.from_dict(payload.get("metrics") or {})
    applied = await asyncio.to_thread(
        tracker.apply_metrics, payload["run_id"], payload["step_key"], metrics
    )
    logger.info(
        "Run %s metrics step=%s applied=%s requested=%s processed=%s errors=%s skipped=%s",
        payload["run_id"],
        payload["step_key"],
        applied,
        metrics.requested,
        metrics.processed,
        metrics.errors,
        metrics.skipped,
    )
    return applied


@activity.defn
async def record_run_output(payload: Dict[str, Any]) -> None:
    tracker = RunTracker(get_database())
    run_id = payload["run_id"]
    if payload.get("summary") is not None:
        await asyncio.to_thread(tracker.set_output_summary, run_id, payload["summary"])
    if payload.get("collection_id"):
        await asyncio.to_thread(tracker.link_to_collection, run_id, payload["collection_id"])


@activity.defn
async def finish_run(payload: Dict[str, Any]) -> bool:
    tracker = RunTracker(get_database())
    return await asyncio.to_thread(
        tracker.update_status,
        payload["run_id"],
        payload["status"],
        error_message=payload.get("error_message"),
    )


# ---------------------------------------------------------------------------
# Collections and enrichment selection
# ---------------------------------------------------------------------------


@activity.defn
async def open_collection(payload: Dict[str, Any]) -> None:
    store = RecordStore(get_database())
    await asyncio.to_thread(
        store.create_collection,
        payload["collection_id"],
        run_id=payload["run_id"],
        provider_handle=payload.get("provider_handle"),
        inputs=payload.get("inputs") or [],
    )


@activity.defn
async def close_collection(payload: Dict[str, Any]) -> None:
    store = RecordStore(get_database())
    await asyncio.to_thread(
        store.complete_collection,
        payload["collection_id"],
        status=payload["status"],
        record_count=int(payload.get("record_count") or 0),
        blob_key=payload.get("blob_key"),
    )


@activity.defn
async def select_enrichment_candidates(identifiers: List[Any]) -> EnrichmentSelectionResult:
    """Canonicalize caller identifiers and drop the ones that are already enriched."""

    valid, invalid = canonicalize_identifiers(identifiers)
    if invalid:
        logger.warning("Skipping %s invalid identifiers: %s", len(invalid), shrink_for_log(invalid))
    store = RecordStore(get_database())
    selection = await asyncio.to_thread(store.partition_for_enrichment, valid)
    candidates = [
        {
            "identifier": candidate.identifier,
            "url": candidate.url
            or settings.detail_url_template.format(identifier=candidate.identifier),
        }
        for candidate in selection.candidates
    ]
    return {
        "candidates": candidates,
        "already_enriched": list(selection.already_enriched),
        "unknown": list(selection.unknown),
        "invalid": [str(value) for value in invalid],
    }


@activity.defn
async def select_auto_enrichment_identifiers(payload: Dict[str, Any]) -> List[str]:
    store = RecordStore(get_database())
    limit = int(payload.get("limit") or runtime_config.auto_enrich_limit)
    identifiers = await asyncio.to_thread(
        store.select_unenriched,
        limit=limit,
        collection_id=payload.get("collection_id"),
        lookback_days=int(payload.get("lookback_days") or runtime_config.auto_enrich_lookback_days),
    )
    logger.info(
        "Auto enrichment selected %s records (limit=%s collection=%s)",
        len(identifiers),
        limit,
        payload.get("collection_id"),
    )
    return identifiers


# ---------------------------------------------------------------------------
# Provider snapshot lifecycle
# ---------------------------------------------------------------------------


@activity.defn
async def submit_snapshot(request: SubmitRequest) -> SubmitResult:
    """Submit a snapshot once per job id; retries return the stored handle."""

    db = get_database()
    submissions = SubmissionStore(db)
    job_id = request["job_id"]

    existing = await asyncio.to_thread(submissions.get, job_id)
    if existing is not None:
        logger.info("Job %s already submitted as %s; reusing handle", job_id, existing.provider_handle)
        return {
            "job_id": job_id,
            "provider_handle": existing.provider_handle,
            "completion_mode": existing.completion_mode,
            "submitted_at": isoformat(existing.submitted_at) if existing.submitted_at else "",
            "reused": True,
        }

    mode = CompletionMode(request.get("completion_mode") or CompletionMode.POLL)
    webhook = None
    secret = request.get("secret")
    if mode is CompletionMode.WEBHOOK:
        if not settings.webhook_base_url:
            raise ApplicationError(
                "WEBHOOK_BASE_URL is required for webhook completion", non_retryable=True
            )
        if not secret:
            raise ApplicationError("Webhook completion requires a per-job secret", non_retryable=True)
        webhook = build_webhook_config(settings.webhook_base_url, secret)

    kind = SubmissionKind(request["kind"])
    dataset_id = (
        settings.brightdata_discovery_dataset_id
        if kind is SubmissionKind.DISCOVERY
        else settings.brightdata_details_dataset_id
    )
    client = get_brightdata_client()
    provider_handle = await client.submit(
        dataset_id,
        list(request["inputs"]),
        webhook=webhook,
        discover_by=DISCOVER_BY_INPUT_FILTERS if kind is SubmissionKind.DISCOVERY else None,
    )
    _safe_activity_heartbeat({"provider_handle": provider_handle})

    if webhook is not None:
        registry = WebhookRegistry(db)
        await asyncio.to_thread(
            registry.register,
            provider_handle,
            job_id=job_id,
            run_id=request["run_id"],
            kind=kind.value,
            secret=webhook.secret,
            ttl=timedelta(hours=runtime_config.webhook_registration_ttl_hours),
        )

    submitted_at = utc_now()
    await asyncio.to_thread(
        submissions.record,
        job_id,
        run_id=request["run_id"],
        kind=kind.value,
        provider_handle=provider_handle,
        input_payload=request["inputs"],
        completion_mode=mode.value,
        submitted_at=submitted_at,
    )
    return {
        "job_id": job_id,
        "provider_handle": provider_handle,
        "completion_mode": mode.value,
        "submitted_at": isoformat(submitted_at),
        "reused": False,
    }


@activity.defn
async def check_snapshot_completion(request: CompletionCheckRequest) -> CompletionCheckResult:
    """One completion step. Raises StillProcessingError so Temporal schedules the next check."""

    db = get_database()
    registry = WebhookRegistry(db)
    submissions = SubmissionStore(db)
    handle = request["provider_handle"]
    mode = CompletionMode(request.get("completion_mode") or CompletionMode.POLL)

    async def _webhook_lookup(provider_handle: str) -> Optional[WebhookState]:
        registration = await asyncio.to_thread(registry.lookup, provider_handle, include_expired=True)
        if registration is None:
            return None
        return WebhookState(
            status=registration.status,
            error=registration.error,
            record_count=registration.record_count,
            delivery_key=registration.delivery_key,
        )

    outcome = await evaluate_completion(
        handle,
        mode,
        poll=get_brightdata_client().poll_status,
        webhook_lookup=_webhook_lookup,
        now=utc_now(),
        deadline=parse_timestamp(request.get("deadline")),
    )
    _safe_activity_heartbeat({"provider_handle": handle, "outcome": type(outcome).__name__})

    if isinstance(outcome, Retry):
        logger.info(
            "Snapshot %s still %s (attempt=%s): %s", handle, outcome.state, _attempt(), outcome.reason
        )
    elif isinstance(outcome, Fatal):
        await asyncio.to_thread(
            submissions.record_resolution, request["job_id"], state=outcome.state.value, source=mode.value
        )
    elif isinstance(outcome, Done):
        await asyncio.to_thread(
            submissions.record_resolution,
            request["job_id"],
            state=CompletionState.READY.value,
            source=outcome.source,
            record_count=outcome.record_count,
        )

    done = raise_for_outcome(outcome)
    logger.info("Snapshot %s ready via %s (records=%s)", handle, done.source, done.record_count)
    return {
        "state": done.state.value,
        "source": done.source,
        "record_count": done.record_count,
        "delivery_key": done.delivery_key,
    }


@activity.defn
async def release_webhook_registration(provider_handle: str) -> bool:
    registry = WebhookRegistry(get_database())
    return await asyncio.to_thread(registry.release, provider_handle)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


async def _load_snapshot_text(handle: str, delivery_key: Optional[str]) -> Optional[str]:
    """Raw snapshot body from the webhook delivery blob or the provider; None when empty."""

    if delivery_key:
        data = await asyncio.to_thread(get_blob_store().get, delivery_key)
        logger.info("Snapshot %s loaded from webhook delivery %s", handle, delivery_key)
        return data.decode("utf-8", errors="replace")
    payload = await get_brightdata_client().fetch_result(handle)
    if payload.empty:
        return None
    return payload.text


def _persist_all(records: List[Record], persist_one) -> PersistSummary:
    summary: PersistSummary = {
        "stored": 0,
        "rejected": 0,
        "failed": 0,
        "failed_identifiers": [],
        "reasons": [],
    }
    for record in records:
        try:
            result = persist_one(record)
        except PersistenceFailureError as exc:
            summary["failed"] += 1
            if exc.identifier and len(summary["failed_identifiers"]) < MAX_REPORTED_IDENTIFIERS:
                summary["failed_identifiers"].append(exc.identifier)
            if len(summary["reasons"]) < MAX_REJECTION_REASONS:
                summary["reasons"].append(str(exc))
            continue
        if result.stored:
            summary["stored"] += 1
        else:
            summary["rejected"] += 1
            if len(summary["reasons"]) < MAX_REJECTION_REASONS:
                summary["reasons"].append(result.reason or "rejected")
    return summary


def _mirror_records(
    request: IngestRequest, records: List[Record]
) -> Tuple[Optional[StoredBlob], Optional[str]]:
    """Best-effort raw copy; a blob store failure is reported, never raised."""

    kind = RAW_DISCOVERY_KIND if request["kind"] == SubmissionKind.DISCOVERY else RAW_DETAILS_KIND
    key = build_blob_key(kind, request["source"], request["provider_handle"])
    try:
        stored = get_blob_store().put_json(
            key,
            records,
            {
                "run_id": request["run_id"],
                "provider_handle": request["provider_handle"],
                "record_count": len(records),
            },
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("Raw mirror of %s to %s failed: %s", request["provider_handle"], key, exc)
        return None, str(exc) or type(exc).__name__
    logger.info("Mirrored %s records to %s (%s bytes)", len(records), key, stored.size_bytes)
    return stored, None


@activity.defn
async def ingest_snapshot(request: IngestRequest) -> IngestSummary:
    """Load, decode, persist and mirror one ready snapshot.

    Records never leave the activity: only counts and keys go back to the
    workflow, so snapshot size is bounded by worker memory rather than the
    Temporal payload limit. Every write is keyed on the record identifier,
    which makes a retried attempt a plain re-upsert.
    """

    handle = request["provider_handle"]
    kind = SubmissionKind(request["kind"])
    summary: IngestSummary = {
        "provider_handle": handle,
        "shape": "empty",
        "empty": True,
        "raw_bytes": 0,
        "record_count": 0,
        "skipped_lines": 0,
        "stored": 0,
        "rejected": 0,
        "failed": 0,
        "failed_identifiers": [],
        "reasons": [],
        "blob_key": None,
        "blob_size_bytes": 0,
        "mirror_error": None,
    }

    text = await _load_snapshot_text(handle, request.get("delivery_key"))
    if text is None:
        logger.info("Snapshot %s is empty; nothing to ingest", handle)
        return summary
    _safe_activity_heartbeat({"provider_handle": handle, "bytes": len(text)})

    decoded = decode_records(text, identifier_field=settings.record_identifier_field)
    if isinstance(decoded, DecodeFailure):
        raise DecodeFailureError(f"Snapshot {handle} could not be decoded: {decoded.reason}")
    records = list(decoded.records)
    logger.info(
        "Snapshot %s decoded shape=%s skipped_lines=%s %s",
        handle,
        decoded.shape,
        decoded.skipped_lines,
        summarize_records(records, identifier_field=settings.record_identifier_field),
    )
    summary.update(
        shape=decoded.shape,
        empty=False,
        raw_bytes=len(text.encode("utf-8")),
        record_count=len(records),
        skipped_lines=decoded.skipped_lines,
    )

    writer = _writer(get_database())
    run_id = request["run_id"]
    if kind is SubmissionKind.DISCOVERY:
        collection_id = request.get("collection_id")
        persisted = await asyncio.to_thread(
            _persist_all,
            records,
            lambda record: writer.persist(record, collection_id=collection_id, run_id=run_id),
        )
    else:
        persisted = await asyncio.to_thread(
            _persist_all, records, lambda record: writer.persist_details(record, run_id=run_id)
        )
    summary.update(persisted)
    _safe_activity_heartbeat({"provider_handle": handle, "stored": persisted["stored"]})
    logger.info(
        "%s ingest run=%s snapshot=%s stored=%s rejected=%s failed=%s",
        kind.value.capitalize(),
        run_id,
        handle,
        persisted["stored"],
        persisted["rejected"],
        persisted["failed"],
    )

    if records:
        stored, error = await asyncio.to_thread(_mirror_records, request, records)
        if stored is not None:
            summary.update(blob_key=stored.key, blob_size_bytes=stored.size_bytes)
        summary["mirror_error"] = error
    return summary


# ---------------------------------------------------------------------------
# Daily monitoring
# ---------------------------------------------------------------------------


@activity.defn
async def start_monitoring_run(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Open the monitoring row and pin the collection this run will be diffed against."""

    store = MonitoringStore(get_database())
    run_id = payload["run_id"]
    locations = list(payload["locations"])
    await asyncio.to_thread(store.start_run, run_id, run_date=payload["run_date"], locations=locations)
    previous = await asyncio.to_thread(store.previous_collection, run_id, locations)
    logger.info("Monitoring run %s over %s locations (previous collection=%s)", run_id, len(locations), previous)
    return {"run_id": run_id, "previous_collection_id": previous}


@activity.defn
async def complete_monitoring_run(payload: Dict[str, Any]) -> Dict[str, int]:
    store = MonitoringStore(get_database())
    run_id = payload["run_id"]
    collection_id = payload["collection_id"]
    previous = payload.get("previous_collection_id")
    total_records = int(payload.get("total_records") or 0)

    if previous and total_records > 0:
        await asyncio.to_thread(store.mark_removed, previous, collection_id, run_id=run_id)
    elif previous:
        # An empty collection is far more likely a provider hiccup than an empty market.
        logger.warning(
            "Monitoring run %s stored no records; skipping removal detection against %s", run_id, previous
        )

    counts = await asyncio.to_thread(store.count_changes, collection_id)
    await asyncio.to_thread(
        store.complete_run,
        run_id,
        collection_id=collection_id,
        previous_collection_id=previous,
        total_records=total_records,
        counts=counts,
    )
    logger.info(
        "Monitoring run %s: records=%s new=%s price=%s status=%s removed=%s",
        run_id,
        total_records,
        counts[ChangeType.NEW_LISTING],
        counts[ChangeType.PRICE_CHANGE],
        counts[ChangeType.STATUS_CHANGE],
        counts[ChangeType.REMOVED],
    )
    return counts


@activity.defn
async def fail_monitoring_run(payload: Dict[str, Any]) -> None:
    store = MonitoringStore(get_database())
    await asyncio.to_thread(store.fail_run, payload["run_id"], payload.get("error_message") or "failed")


# ---------------------------------------------------------------------------
# Workflow events
# ---------------------------------------------------------------------------


def _build_event_message(payload: Dict[str, Any]) -> str:
    parts = [f"{payload.get('workflowName') or 'workflow'} | event={payload.get('event')}"]
    if payload.get("message"):
        parts.append(str(payload["message"]))
    if payload.get("data") is not None:
        parts.append(f"data={payload['data']}")
    return " | ".join(parts)


@activity.defn
async def record_workflow_event(entry: WorkflowEvent) -> None:
    """Emit a workflow event to the worker log and, when configured, OTLP."""

    payload: Dict[str, Any] = {k: v for k, v in entry.items() if v is not None}
    if "data" in payload:
        payload["data"] = json.dumps(
            shrink_for_log(payload["data"], max_chars=EVENT_DATA_MAX_CHARS), default=str
        )
    payload["message"] = _build_event_message(payload)
    logger.log(telemetry.normalize_log_level(payload.get("level")), payload["message"])

    if not telemetry.is_configured():
        return None
    try:
        telemetry.emit_event_log(payload)
    except asyncio.CancelledError:
        return None
    except Exception as e:  # noqa: BLE001
        raise RuntimeError(f"Failed to record workflow event: {e}") from e
