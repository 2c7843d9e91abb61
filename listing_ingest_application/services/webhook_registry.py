from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .database import Database, dumps, isoformat, loads, parse_timestamp, utc_now

logger = logging.getLogger("temporal.worker.webhooks")

CALLBACK_NOTIFY_AND_DELIVERY = "notify+delivery"


@dataclass(frozen=True)
class WebhookRegistration:
    provider_handle: str
    job_id: str
    run_id: str
    kind: str
    secret: str
    callback_kind: str
    status: Optional[str] = None
    progress: Optional[str] = None
    error: Optional[str] = None
    delivery_key: Optional[str] = None
    record_count: Optional[int] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utc_now()) >= self.expires_at

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WebhookRegistration":
        return cls(
            provider_handle=row["provider_handle"],
            job_id=row["job_id"],
            run_id=row["run_id"],
            kind=row["kind"],
            secret=row["secret"],
            callback_kind=row["callback_kind"],
            status=row.get("status"),
            progress=row.get("progress"),
            error=row.get("error"),
            delivery_key=row.get("delivery_key"),
            record_count=row.get("record_count"),
            expires_at=parse_timestamp(row.get("expires_at")),
        )


class WebhookRegistry:
    """One registration per provider handle: who owns it and which secret it expects."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def register(
        self,
        provider_handle: str,
        *,
        job_id: str,
        run_id: str,
        kind: str,
        secret: str,
        ttl: timedelta,
        callback_kind: str = CALLBACK_NOTIFY_AND_DELIVERY,
    ) -> WebhookRegistration:
        now = utc_now()
        self.db.execute(
            """
            INSERT INTO webhook_registrations (provider_handle, job_id, run_id, kind, secret,
                                               callback_kind, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(provider_handle) DO NOTHING
            """,
            (
                provider_handle,
                job_id,
                run_id,
                kind,
                secret,
                callback_kind,
                isoformat(now),
                isoformat(now + ttl),
            ),
        )
        registration = self.lookup(provider_handle, include_expired=True)
        if registration is None:
            raise RuntimeError(f"Webhook registration for {provider_handle} vanished after insert")
        if registration.job_id != job_id:
            logger.warning(
                "Snapshot %s already registered to job %s; keeping it (requested by job %s)",
                provider_handle,
                registration.job_id,
                job_id,
            )
        return registration

    def lookup(
        self, provider_handle: str, *, include_expired: bool = False
    ) -> Optional[WebhookRegistration]:
        row = self.db.query_one(
            "SELECT * FROM webhook_registrations WHERE provider_handle = ?", (provider_handle,)
        )
        if row is None:
            return None
        registration = WebhookRegistration.from_row(row)
        if not include_expired and registration.is_expired():
            return None
        return registration

    def record_notify(
        self,
        provider_handle: str,
        *,
        status: str,
        progress: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        progress_text = None if progress is None else (
            progress if isinstance(progress, str) else dumps(progress)
        )
        updated = self.db.execute(
            """
            UPDATE webhook_registrations
            SET status = ?, progress = COALESCE(?, progress), error = COALESCE(?, error),
                notified_at = ?
            WHERE provider_handle = ?
            """,
            (status, progress_text, error, isoformat(), provider_handle),
        )
        return updated > 0

    def record_delivery(self, provider_handle: str, *, delivery_key: str, record_count: int) -> bool:
        previous = self.lookup(provider_handle, include_expired=True)
        if previous and previous.record_count is not None and previous.record_count != record_count:
            logger.warning(
                "Snapshot %s delivered again with %s records (previously %s); keeping latest",
                provider_handle,
                record_count,
                previous.record_count,
            )
        updated = self.db.execute(
            """
            UPDATE webhook_registrations
            SET delivery_key = ?, record_count = ?, delivered_at = ?
            WHERE provider_handle = ?
            """,
            (delivery_key, record_count, isoformat(), provider_handle),
        )
        return updated > 0

    def release(self, provider_handle: str) -> bool:
        return self.db.execute(
            "DELETE FROM webhook_registrations WHERE provider_handle = ?", (provider_handle,)
        ) > 0

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        removed = self.db.execute(
            "DELETE FROM webhook_registrations WHERE expires_at <= ?", (isoformat(now),)
        )
        if removed:
            logger.info("Purged %s expired webhook registrations", removed)
        return removed


@dataclass(frozen=True)
class JobSubmission:
    job_id: str
    run_id: str
    kind: str
    provider_handle: str
    input_payload: Any
    completion_mode: str
    submitted_at: Optional[datetime]
    resolved_state: Optional[str] = None
    resolution_source: Optional[str] = None
    record_count: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobSubmission":
        return cls(
            job_id=row["job_id"],
            run_id=row["run_id"],
            kind=row["kind"],
            provider_handle=row["provider_handle"],
            input_payload=loads(row["input_payload"], []),
            completion_mode=row["completion_mode"],
            submitted_at=parse_timestamp(row["submitted_at"]),
            resolved_state=row.get("resolved_state"),
            resolution_source=row.get("resolution_source"),
            record_count=row.get("record_count"),
        )


class SubmissionStore:
    """Job submissions keyed by the caller-assigned job id (the idempotency key)."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, job_id: str) -> Optional[JobSubmission]:
        row = self.db.query_one("SELECT * FROM job_submissions WHERE job_id = ?", (job_id,))
        return JobSubmission.from_row(row) if row else None

    def record(
        self,
        job_id: str,
        *,
        run_id: str,
        kind: str,
        provider_handle: str,
        input_payload: Any,
        completion_mode: str,
        submitted_at: Optional[datetime] = None,
    ) -> JobSubmission:
        self.db.execute(
            """
            INSERT INTO job_submissions (job_id, run_id, kind, provider_handle, input_payload,
                                         completion_mode, submitted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id) DO NOTHING
            """,
            (
                job_id,
                run_id,
                kind,
                provider_handle,
                dumps(input_payload),
                completion_mode,
                isoformat(submitted_at),
            ),
        )
        stored = self.get(job_id)
        if stored is None:
            raise RuntimeError(f"Submission {job_id} vanished after insert")
        return stored

    def record_resolution(
        self,
        job_id: str,
        *,
        state: str,
        source: str,
        record_count: Optional[int] = None,
    ) -> None:
        """Store how a submission resolved. A later resolution overwrites an earlier one."""

        previous = self.get(job_id)
        if (
            previous is not None
            and previous.resolved_state is not None
            and previous.record_count is not None
            and record_count is not None
            and previous.record_count != record_count
        ):
            logger.warning(
                "Submission %s resolved again via %s with %s records (previously %s via %s); "
                "last resolution wins",
                job_id,
                source,
                record_count,
                previous.record_count,
                previous.resolution_source,
            )
        self.db.execute(
            """
            UPDATE job_submissions
            SET resolved_state = ?, resolution_source = ?,
                record_count = COALESCE(?, record_count), resolved_at = ?
            WHERE job_id = ?
            """,
            (state, source, record_count, isoformat(), job_id),
        )

    def list_for_run(self, run_id: str) -> List[JobSubmission]:
        rows = self.db.query(
            "SELECT * FROM job_submissions WHERE run_id = ? ORDER BY submitted_at", (run_id,)
        )
        return [JobSubmission.from_row(row) for row in rows]


__all__ = [
    "CALLBACK_NOTIFY_AND_DELIVERY",
    "JobSubmission",
    "SubmissionStore",
    "WebhookRegistration",
    "WebhookRegistry",
]
