"""Listing change history and daily monitoring runs.

Every primary-row upsert compares the stored attributes with the incoming ones
and writes ``new_listing``, ``price_change`` and ``status_change`` rows in the
same transaction. ``removed`` rows come from a monitoring pass: records that
the previous monitoring collection held and the current one did not store.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Dict, List, Optional, Sequence

from .database import Database, dumps, isoformat, loads, utc_now

logger = logging.getLogger("temporal.worker.changes")

PRICE_FIELDS = ("price", "unformattedPrice")
STATUS_FIELDS = ("homeStatus", "home_status")


class ChangeType(StrEnum):
    NEW_LISTING = "new_listing"
    PRICE_CHANGE = "price_change"
    STATUS_CHANGE = "status_change"
    REMOVED = "removed"


@dataclass(frozen=True)
class RecordChange:
    identifier: str
    change_type: ChangeType
    old_value: Optional[str] = None
    new_value: Optional[str] = None


def _first_present(attributes: Dict[str, Any], fields: Sequence[str]) -> Any:
    for name in fields:
        value = attributes.get(name)
        if value is not None and value != "":
            return value
    return None


def tracked_price(attributes: Dict[str, Any]) -> Optional[float]:
    """Numeric price from ``price`` (``450000``, ``"$450,000"``) or ``unformattedPrice``."""

    value = _first_present(attributes, PRICE_FIELDS)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip().lstrip("$").replace(",", "")
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def tracked_status(attributes: Dict[str, Any]) -> Optional[str]:
    value = _first_present(attributes, STATUS_FIELDS)
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


def _format_price(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return str(int(value)) if value.is_integer() else str(value)


def detect_changes(
    identifier: str,
    previous: Optional[Dict[str, Any]],
    current: Dict[str, Any],
) -> List[RecordChange]:
    """Changes between the stored attributes (None for an unseen record) and the incoming ones."""

    new_price = tracked_price(current)
    if previous is None:
        return [RecordChange(identifier, ChangeType.NEW_LISTING, None, _format_price(new_price))]

    changes: List[RecordChange] = []
    old_price = tracked_price(previous)
    if old_price is not None and new_price is not None and old_price != new_price:
        changes.append(
            RecordChange(identifier, ChangeType.PRICE_CHANGE, _format_price(old_price), _format_price(new_price))
        )
    old_status = tracked_status(previous)
    new_status = tracked_status(current)
    if old_status is not None and new_status is not None and old_status != new_status:
        changes.append(RecordChange(identifier, ChangeType.STATUS_CHANGE, old_status, new_status))
    return changes


def insert_changes(
    conn: sqlite3.Connection,
    changes: Sequence[RecordChange],
    *,
    collection_id: Optional[str],
    run_id: Optional[str],
    when: Optional[datetime] = None,
) -> None:
    when = when or utc_now()
    conn.executemany(
        """
        INSERT INTO record_changes (identifier, change_type, change_date, old_value, new_value,
                                    collection_id, run_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                change.identifier,
                change.change_type.value,
                when.date().isoformat(),
                change.old_value,
                change.new_value,
                collection_id,
                run_id,
                isoformat(when),
            )
            for change in changes
        ],
    )


def _locations_key(locations: Sequence[str]) -> str:
    return dumps(sorted({location.strip() for location in locations if location.strip()}))


class MonitoringStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    # ---- changes -----------------------------------------------------------

    def list_changes(
        self,
        *,
        identifier: Optional[str] = None,
        collection_id: Optional[str] = None,
        change_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("identifier", identifier),
            ("collection_id", collection_id),
            ("change_type", change_type),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self.db.query(f"SELECT * FROM record_changes {where} ORDER BY id", params)

    def count_changes(self, collection_id: str) -> Dict[str, int]:
        rows = self.db.query(
            """
            SELECT change_type, COUNT(*) AS total FROM record_changes
            WHERE collection_id = ?
            GROUP BY change_type
            """,
            (collection_id,),
        )
        counts = {change_type.value: 0 for change_type in ChangeType}
        counts.update({row["change_type"]: int(row["total"]) for row in rows})
        return counts

    def mark_removed(
        self,
        previous_collection_id: str,
        collection_id: str,
        *,
        run_id: Optional[str] = None,
    ) -> int:
        """Record a ``removed`` change for listings the new collection did not store again.

        Upserts move a record's ``collection_id`` to the newest collection, so
        anything still pointing at the previous one went unseen. Safe to repeat.
        """

        now = utc_now()
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT r.identifier, r.attributes FROM records r
                WHERE r.collection_id = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM record_changes c
                      WHERE c.identifier = r.identifier
                        AND c.change_type = 'removed'
                        AND c.collection_id = ?
                  )
                ORDER BY r.identifier
                """,
                (previous_collection_id, collection_id),
            ).fetchall()
            changes = [
                RecordChange(
                    row["identifier"],
                    ChangeType.REMOVED,
                    tracked_status(loads(row["attributes"], {})),
                    None,
                )
                for row in rows
            ]
            insert_changes(conn, changes, collection_id=collection_id, run_id=run_id, when=now)
        if changes:
            logger.info(
                "Marked %s listings removed (absent from %s, present in %s)",
                len(changes),
                collection_id,
                previous_collection_id,
            )
        return len(changes)

    # ---- monitoring runs ---------------------------------------------------

    def start_run(self, run_id: str, *, run_date: str, locations: Sequence[str]) -> Dict[str, Any]:
        self.db.execute(
            """
            INSERT INTO monitoring_runs (id, run_date, locations, status, started_at)
            VALUES (?, ?, ?, 'running', ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (run_id, run_date, _locations_key(locations), isoformat()),
        )
        return self.get_run(run_id)

    def previous_collection(self, run_id: str, locations: Sequence[str]) -> Optional[str]:
        """Collection of the latest completed run over the same locations, excluding ``run_id``."""

        row = self.db.query_one(
            """
            SELECT collection_id FROM monitoring_runs
            WHERE status = 'completed' AND id != ? AND locations = ? AND collection_id IS NOT NULL
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (run_id, _locations_key(locations)),
        )
        return row["collection_id"] if row else None

    def complete_run(
        self,
        run_id: str,
        *,
        collection_id: str,
        previous_collection_id: Optional[str],
        total_records: int,
        counts: Dict[str, int],
    ) -> None:
        self.db.execute(
            """
            UPDATE monitoring_runs
            SET status = 'completed', collection_id = ?, previous_collection_id = ?,
                total_records = ?, new_listings = ?, price_changes = ?, status_changes = ?,
                removed_listings = ?, completed_at = ?, error_message = NULL
            WHERE id = ?
            """,
            (
                collection_id,
                previous_collection_id,
                total_records,
                counts.get(ChangeType.NEW_LISTING, 0),
                counts.get(ChangeType.PRICE_CHANGE, 0),
                counts.get(ChangeType.STATUS_CHANGE, 0),
                counts.get(ChangeType.REMOVED, 0),
                isoformat(),
                run_id,
            ),
        )

    def fail_run(self, run_id: str, error_message: str) -> None:
        self.db.execute(
            """
            UPDATE monitoring_runs SET status = 'failed', error_message = ?, completed_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (error_message, isoformat(), run_id),
        )

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.query_one("SELECT * FROM monitoring_runs WHERE id = ?", (run_id,))
        if row is not None:
            row["locations"] = loads(row["locations"], [])
        return row

    def list_runs(self, limit: int = 30) -> List[Dict[str, Any]]:
        rows = self.db.query(
            "SELECT * FROM monitoring_runs ORDER BY started_at DESC LIMIT ?", (limit,)
        )
        for row in rows:
            row["locations"] = loads(row["locations"], [])
        return rows


__all__ = [
    "ChangeType",
    "MonitoringStore",
    "RecordChange",
    "detect_changes",
    "insert_changes",
    "tracked_price",
    "tracked_status",
]
