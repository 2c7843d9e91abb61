"""Run lifecycle and metric bookkeeping.

Status moves ``queued -> running -> completed | failed``; ``cancelled`` is
reachable from ``queued`` or ``running``. Terminal runs never change status
again. Metrics are merged per ``(run_id, step_key)`` so a retried step that
applies the same snapshot twice does not double-count.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..config import settings
from .database import Database, dumps, isoformat, loads, utc_now

logger = logging.getLogger("temporal.worker.runs")

RUN_KINDS = ("data_collector", "property_details")
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

# target status -> statuses it may be entered from
_ALLOWED_PREDECESSORS: Dict[str, tuple[str, ...]] = {
    "running": ("queued",),
    "completed": ("running",),
    "failed": ("queued", "running"),
    "cancelled": ("queued", "running"),
}


@dataclass
class RunMetrics:
    requested: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    blob_files_created: int = 0
    blob_total_size_bytes: int = 0
    provider_snapshots: List[str] = field(default_factory=list)
    webhook_used: bool = False

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RunMetrics":
        known = {key: payload[key] for key in cls.__dataclass_fields__ if key in payload}
        return cls(**known)


class RunTracker:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create_run(
        self,
        run_id: str,
        kind: str,
        input_params: Dict[str, Any] | None = None,
        *,
        triggered_by: str | None = None,
        collection_id: str | None = None,
    ) -> Dict[str, Any]:
        if kind not in RUN_KINDS:
            raise ValueError(f"Unknown run kind {kind!r}")
        now = isoformat()
        self.db.execute(
            """
            INSERT INTO workflow_runs (id, workflow_type, status, input_params, created_at,
                                       triggered_by, collection_id, environment,
                                       worker_version, updated_at)
            VALUES (?, ?, 'queued', ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (
                run_id,
                kind,
                dumps(input_params or {}),
                now,
                triggered_by,
                collection_id,
                settings.environment,
                settings.worker_version,
                now,
            ),
        )
        run = self.get_run(run_id)
        if run is None:
            raise RuntimeError(f"Run {run_id} vanished after insert")
        return run

    def update_status(
        self, run_id: str, status: str, *, error_message: str | None = None
    ) -> bool:
        """Apply one monotonic transition. Returns False when the transition is not allowed."""

        predecessors = _ALLOWED_PREDECESSORS.get(status)
        if predecessors is None:
            raise ValueError(f"Cannot transition a run to {status!r}")
        now = isoformat()
        placeholders = ",".join("?" for _ in predecessors)

        if status == "running":
            sql = f"""
                UPDATE workflow_runs SET status = ?, started_at = COALESCE(started_at, ?), updated_at = ?
                WHERE id = ? AND status IN ({placeholders})
            """
            params: tuple[Any, ...] = (status, now, now, run_id, *predecessors)
        else:
            sql = f"""
                UPDATE workflow_runs
                SET status = ?, completed_at = ?, updated_at = ?,
                    error_message = COALESCE(?, error_message),
                    duration_seconds = CASE
                        WHEN started_at IS NULL THEN NULL
                        ELSE CAST(ROUND((julianday(?) - julianday(started_at)) * 86400) AS INTEGER)
                    END
                WHERE id = ? AND status IN ({placeholders})
            """
            params = (status, now, now, error_message, now, run_id, *predecessors)

        updated = self.db.execute(sql, params)
        if not updated:
            current = self.get_run(run_id)
            logger.warning(
                "Ignoring run %s transition to %s (current status=%s)",
                run_id,
                status,
                current["status"] if current else "missing",
            )
            return False
        logger.info("Run %s -> %s", run_id, status)
        return True

    def apply_metrics(self, run_id: str, step_key: str, metrics: RunMetrics) -> bool:
        """Add ``metrics`` to the run once per ``step_key``. Returns False on a replay."""

        now = isoformat()
        with self.db.transaction() as conn:
            inserted = conn.execute(
                """
                INSERT INTO run_metric_applications (run_id, step_key, metrics, applied_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(run_id, step_key) DO NOTHING
                """,
                (run_id, step_key, dumps(asdict(metrics)), now),
            ).rowcount
            if not inserted:
                logger.info("Metrics for run %s step %s already applied", run_id, step_key)
                return False
            row = conn.execute(
                "SELECT provider_snapshots FROM workflow_runs WHERE id = ?", (run_id,)
            ).fetchone()
            if row is None:
                raise LookupError(f"Run {run_id} does not exist")
            snapshots: List[str] = loads(row["provider_snapshots"], [])
            for handle in metrics.provider_snapshots:
                if handle and handle not in snapshots:
                    snapshots.append(handle)
            conn.execute(
                """
                UPDATE workflow_runs
                SET total_requested = total_requested + ?,
                    total_processed = total_processed + ?,
                    total_errors = total_errors + ?,
                    total_skipped = total_skipped + ?,
                    blob_files_created = blob_files_created + ?,
                    blob_total_size_bytes = blob_total_size_bytes + ?,
                    provider_snapshots = ?,
                    webhook_used = MAX(webhook_used, ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    metrics.requested,
                    metrics.processed,
                    metrics.errors,
                    metrics.skipped,
                    metrics.blob_files_created,
                    metrics.blob_total_size_bytes,
                    dumps(snapshots),
                    1 if metrics.webhook_used else 0,
                    now,
                    run_id,
                ),
            )
        return True

    def set_output_summary(self, run_id: str, summary: Dict[str, Any]) -> None:
        self.db.execute(
            "UPDATE workflow_runs SET output_summary = ?, updated_at = ? WHERE id = ?",
            (dumps(summary), isoformat(), run_id),
        )

    def link_to_collection(self, run_id: str, collection_id: str) -> None:
        self.db.execute(
            "UPDATE workflow_runs SET collection_id = ?, updated_at = ? WHERE id = ?",
            (collection_id, isoformat(), run_id),
        )

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.query_one("SELECT * FROM workflow_runs WHERE id = ?", (run_id,))
        return _decode_run(row) if row else None

    def recent_runs(
        self,
        *,
        kind: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if kind:
            clauses.append("workflow_type = ?")
            params.append(kind)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.query(
            f"SELECT * FROM workflow_runs {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        return [_decode_run(row) for row in rows]

    def active_runs(self) -> List[Dict[str, Any]]:
        return self.db.query("SELECT * FROM active_workflows ORDER BY created_at DESC")

    def stats(self, days: int = 7) -> List[Dict[str, Any]]:
        since = isoformat(utc_now() - timedelta(days=days))
        return self.db.query(
            """
            SELECT workflow_type,
                   status,
                   COUNT(*) AS count,
                   AVG(duration_seconds) AS avg_duration_seconds,
                   SUM(total_requested) AS total_requested,
                   SUM(total_processed) AS total_processed,
                   SUM(total_errors) AS total_errors,
                   SUM(total_skipped) AS total_skipped
            FROM workflow_runs
            WHERE created_at >= ?
            GROUP BY workflow_type, status
            ORDER BY workflow_type, status
            """,
            (since,),
        )


def _decode_run(row: Dict[str, Any]) -> Dict[str, Any]:
    row["input_params"] = loads(row.get("input_params"), {})
    row["output_summary"] = loads(row.get("output_summary"))
    row["provider_snapshots"] = loads(row.get("provider_snapshots"), [])
    row["webhook_used"] = bool(row.get("webhook_used"))
    return row


__all__ = ["RUN_KINDS", "TERMINAL_STATUSES", "RunMetrics", "RunTracker"]
