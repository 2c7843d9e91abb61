from __future__ import annotations

from typing import Any, Dict, List, NotRequired, TypedDict

# Records stay loose dicts; the provider schema is opaque apart from the identifier field.
Record = Dict[str, Any]


class SubmitRequest(TypedDict):
    run_id: str
    job_id: str
    kind: str
    inputs: List[Dict[str, Any]]
    completion_mode: str
    secret: NotRequired[str | None]


class SubmitResult(TypedDict):
    job_id: str
    provider_handle: str
    completion_mode: str
    submitted_at: str
    reused: bool


class CompletionCheckRequest(TypedDict):
    job_id: str
    provider_handle: str
    completion_mode: str
    deadline: NotRequired[str | None]


class CompletionCheckResult(TypedDict):
    state: str
    source: str
    record_count: int | None
    delivery_key: str | None


class IngestRequest(TypedDict):
    run_id: str
    job_id: str
    kind: str
    provider_handle: str
    source: str
    delivery_key: NotRequired[str | None]
    collection_id: NotRequired[str | None]


class PersistSummary(TypedDict):
    stored: int
    rejected: int
    failed: int
    failed_identifiers: List[str]
    reasons: List[str]


class IngestSummary(PersistSummary):
    """Counts and keys only; decoded records stay inside the activity."""

    provider_handle: str
    shape: str
    empty: bool
    raw_bytes: int
    record_count: int
    skipped_lines: int
    blob_key: str | None
    blob_size_bytes: int
    mirror_error: str | None


class EnrichmentCandidatePayload(TypedDict):
    identifier: str
    url: str


class EnrichmentSelectionResult(TypedDict):
    candidates: List[EnrichmentCandidatePayload]
    already_enriched: List[str]
    unknown: List[str]
    invalid: List[str]


class WorkflowEvent(TypedDict, total=False):
    """Lightweight workflow event shipped to logs / OTLP."""

    runId: str
    workflowId: str
    workflowName: str
    event: str
    message: str | None
    data: Any
    level: str
    createdAt: int
