"""SQLite-backed relational store.

Every operation opens a short-lived connection so callers running under
``asyncio.to_thread`` never share a connection across threads. All writes are
keyed upserts, which keeps concurrent runs safe without explicit locking.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ..config import settings

logger = logging.getLogger("temporal.worker.database")

SCHEMA_VERSION = 2

_SCHEMA = """
CREATE TABLE IF NOT EXISTS collections (
    id TEXT PRIMARY KEY,
    run_id TEXT,
    location TEXT,
    listing_category TEXT,
    home_type TEXT,
    days_on_market TEXT,
    exact_address INTEGER NOT NULL DEFAULT 0,
    input_count INTEGER NOT NULL DEFAULT 0,
    provider_handle TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'completed', 'failed')),
    record_count INTEGER NOT NULL DEFAULT 0,
    blob_key TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS records (
    identifier TEXT PRIMARY KEY,
    collection_id TEXT,
    url TEXT,
    attributes TEXT NOT NULL,
    has_details INTEGER NOT NULL DEFAULT 0,
    last_run_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_enrichment ON records(has_details, created_at);
CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection_id);

CREATE TABLE IF NOT EXISTS record_details (
    identifier TEXT PRIMARY KEY,
    attributes TEXT NOT NULL,
    last_run_id TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS record_children (
    identifier TEXT NOT NULL,
    collection TEXT NOT NULL,
    position INTEGER NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (identifier, collection, position)
);

CREATE TABLE IF NOT EXISTS job_submissions (
    job_id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    provider_handle TEXT NOT NULL,
    input_payload TEXT NOT NULL,
    completion_mode TEXT NOT NULL CHECK (completion_mode IN ('poll', 'webhook')),
    submitted_at TEXT NOT NULL,
    resolved_state TEXT,
    resolution_source TEXT,
    record_count INTEGER,
    resolved_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_job_submissions_run ON job_submissions(run_id);
CREATE INDEX IF NOT EXISTS idx_job_submissions_handle ON job_submissions(provider_handle);

CREATE TABLE IF NOT EXISTS webhook_registrations (
    provider_handle TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    run_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    secret TEXT NOT NULL,
    callback_kind TEXT NOT NULL,
    status TEXT,
    progress TEXT,
    error TEXT,
    delivery_key TEXT,
    record_count INTEGER,
    created_at TEXT NOT NULL,
    notified_at TEXT,
    delivered_at TEXT,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_runs (
    id TEXT PRIMARY KEY,
    workflow_type TEXT NOT NULL CHECK (workflow_type IN ('data_collector', 'property_details')),
    status TEXT NOT NULL DEFAULT 'queued'
        CHECK (status IN ('queued', 'running', 'completed', 'failed', 'cancelled')),
    input_params TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    duration_seconds INTEGER,
    total_requested INTEGER NOT NULL DEFAULT 0,
    total_processed INTEGER NOT NULL DEFAULT 0,
    total_errors INTEGER NOT NULL DEFAULT 0,
    total_skipped INTEGER NOT NULL DEFAULT 0,
    output_summary TEXT,
    error_message TEXT,
    blob_files_created INTEGER NOT NULL DEFAULT 0,
    blob_total_size_bytes INTEGER NOT NULL DEFAULT 0,
    provider_snapshots TEXT NOT NULL DEFAULT '[]',
    webhook_used INTEGER NOT NULL DEFAULT 0,
    triggered_by TEXT,
    collection_id TEXT,
    environment TEXT,
    worker_version TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_workflow_runs_status ON workflow_runs(status);
CREATE INDEX IF NOT EXISTS idx_workflow_runs_type_created ON workflow_runs(workflow_type, created_at);

CREATE TABLE IF NOT EXISTS run_metric_applications (
    run_id TEXT NOT NULL,
    step_key TEXT NOT NULL,
    metrics TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    PRIMARY KEY (run_id, step_key)
);

CREATE VIEW IF NOT EXISTS active_workflows AS
    SELECT id, workflow_type, status, created_at, started_at, total_requested,
           total_processed, total_errors, collection_id, triggered_by
    FROM workflow_runs
    WHERE status IN ('queued', 'running');

CREATE TABLE IF NOT EXISTS record_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identifier TEXT NOT NULL,
    change_type TEXT NOT NULL
        CHECK (change_type IN ('new_listing', 'price_change', 'status_change', 'removed')),
    change_date TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    collection_id TEXT,
    run_id TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_record_changes_identifier ON record_changes(identifier);
CREATE INDEX IF NOT EXISTS idx_record_changes_collection ON record_changes(collection_id, change_type);
CREATE INDEX IF NOT EXISTS idx_record_changes_date ON record_changes(change_date, change_type);

CREATE TABLE IF NOT EXISTS monitoring_runs (
    id TEXT PRIMARY KEY,
    run_date TEXT NOT NULL,
    locations TEXT NOT NULL,
    collection_id TEXT,
    previous_collection_id TEXT,
    status TEXT NOT NULL DEFAULT 'running'
        CHECK (status IN ('running', 'completed', 'failed')),
    total_records INTEGER NOT NULL DEFAULT 0,
    new_listings INTEGER NOT NULL DEFAULT 0,
    price_changes INTEGER NOT NULL DEFAULT 0,
    status_changes INTEGER NOT NULL DEFAULT 0,
    removed_listings INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_monitoring_runs_started ON monitoring_runs(status, started_at);
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime] = None) -> str:
    return (value or utc_now()).astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def loads(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Stored JSON column is not valid JSON: %s", value[:120])
        return default


@dataclass
class Database:
    """Thin wrapper around the SQLite file holding records, runs and registrations."""

    path: Path
    _initialized: bool = field(default=False, init=False, repr=False)
    _init_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    def _open(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            conn = self._open()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                version = conn.execute("PRAGMA user_version").fetchone()[0]
                # Older files only lack tables; CREATE IF NOT EXISTS brings them forward.
                if version > SCHEMA_VERSION:
                    raise RuntimeError(
                        f"DB schema version {version} is newer than this worker supports ({SCHEMA_VERSION})"
                    )
                conn.executescript(_SCHEMA)
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            finally:
                conn.close()
            self._initialized = True

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside BEGIN IMMEDIATE; commit on success, roll back on error."""

        self.initialize()
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self.transaction() as conn:
            return conn.execute(sql, params).rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        self.initialize()
        conn = self._open()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self.query(sql, params)
        return rows[0] if rows else None


_database: Database | None = None


def get_database() -> Database:
    """Return a singleton Database for the configured path."""

    global _database
    if _database is None:
        _database = Database(Path(settings.database_path))
    return _database


def _set_database_for_tests(database: Database | None) -> None:
    global _database
    _database = database


__all__ = [
    "Database",
    "SCHEMA_VERSION",
    "dumps",
    "get_database",
    "isoformat",
    "loads",
    "parse_timestamp",
    "utc_now",
]
