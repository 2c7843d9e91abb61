from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .change_tracking import RecordChange, detect_changes, insert_changes
from .database import Database, dumps, isoformat, loads, utc_now

logger = logging.getLogger("temporal.worker.records")


@dataclass(frozen=True)
class EnrichmentCandidate:
    identifier: str
    url: Optional[str] = None


@dataclass(frozen=True)
class EnrichmentSelection:
    candidates: List[EnrichmentCandidate]
    already_enriched: List[str]
    unknown: List[str]

    @property
    def skipped(self) -> List[str]:
        return self.already_enriched + self.unknown


class RecordStore:
    """Keyed reads and writes for records, their details and nested collections.

    Identifiers passed here must already be canonical.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ---- records -----------------------------------------------------------

    def upsert_record(
        self,
        identifier: str,
        attributes: Dict[str, Any],
        *,
        collection_id: Optional[str] = None,
        url: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> List[RecordChange]:
        """Upsert the primary row and log what changed against the stored attributes."""

        now = utc_now()
        with self.db.transaction() as conn:
            previous = conn.execute(
                "SELECT attributes FROM records WHERE identifier = ?", (identifier,)
            ).fetchone()
            # has_details is intentionally absent from the update list: it is only ever set.
            conn.execute(
                """
                INSERT INTO records (identifier, collection_id, url, attributes, has_details,
                                     last_run_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                ON CONFLICT(identifier) DO UPDATE SET
                    attributes = excluded.attributes,
                    url = COALESCE(excluded.url, records.url),
                    collection_id = COALESCE(excluded.collection_id, records.collection_id),
                    last_run_id = COALESCE(excluded.last_run_id, records.last_run_id),
                    updated_at = excluded.updated_at
                """,
                (identifier, collection_id, url, dumps(attributes), run_id, isoformat(now), isoformat(now)),
            )
            changes = detect_changes(
                identifier,
                loads(previous["attributes"], {}) if previous is not None else None,
                attributes,
            )
            insert_changes(conn, changes, collection_id=collection_id, run_id=run_id, when=now)
        return changes

    def get_record(self, identifier: str) -> Optional[Dict[str, Any]]:
        row = self.db.query_one("SELECT * FROM records WHERE identifier = ?", (identifier,))
        if row is None:
            return None
        row["attributes"] = loads(row["attributes"], {})
        row["has_details"] = bool(row["has_details"])
        return row

    def mark_enriched(self, identifier: str) -> bool:
        updated = self.db.execute(
            "UPDATE records SET has_details = 1, updated_at = ? WHERE identifier = ?",
            (isoformat(), identifier),
        )
        return updated > 0

    # ---- details -----------------------------------------------------------

    def upsert_detail(
        self, identifier: str, attributes: Dict[str, Any], *, run_id: Optional[str] = None
    ) -> None:
        self.db.execute(
            """
            INSERT INTO record_details (identifier, attributes, last_run_id, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(identifier) DO UPDATE SET
                attributes = excluded.attributes,
                last_run_id = excluded.last_run_id,
                updated_at = excluded.updated_at
            """,
            (identifier, dumps(attributes), run_id, isoformat()),
        )

    def get_detail(self, identifier: str) -> Optional[Dict[str, Any]]:
        row = self.db.query_one(
            "SELECT attributes FROM record_details WHERE identifier = ?", (identifier,)
        )
        return loads(row["attributes"], {}) if row else None

    def replace_children(self, identifier: str, collection: str, entries: Sequence[Any]) -> int:
        """Replace one nested collection for ``identifier`` wholesale (delete, then insert)."""

        now = isoformat()
        with self.db.transaction() as conn:
            conn.execute(
                "DELETE FROM record_children WHERE identifier = ? AND collection = ?",
                (identifier, collection),
            )
            conn.executemany(
                """
                INSERT INTO record_children (identifier, collection, position, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (identifier, collection, position, dumps(entry), now)
                    for position, entry in enumerate(entries)
                ],
            )
        return len(entries)

    def get_children(self, identifier: str, collection: str) -> List[Any]:
        rows = self.db.query(
            """
            SELECT payload FROM record_children
            WHERE identifier = ? AND collection = ?
            ORDER BY position
            """,
            (identifier, collection),
        )
        return [loads(row["payload"]) for row in rows]

    # ---- enrichment selection ---------------------------------------------

    def partition_for_enrichment(self, identifiers: Sequence[str]) -> EnrichmentSelection:
        """Keep identifiers that exist and still lack details, in input order."""

        if not identifiers:
            return EnrichmentSelection(candidates=[], already_enriched=[], unknown=[])
        placeholders = ",".join("?" for _ in identifiers)
        rows = self.db.query(
            f"SELECT identifier, url, has_details FROM records WHERE identifier IN ({placeholders})",
            tuple(identifiers),
        )
        by_id = {row["identifier"]: row for row in rows}
        candidates: List[EnrichmentCandidate] = []
        enriched: List[str] = []
        unknown: List[str] = []
        for identifier in identifiers:
            row = by_id.get(identifier)
            if row is None:
                unknown.append(identifier)
            elif row["has_details"]:
                enriched.append(identifier)
            else:
                candidates.append(EnrichmentCandidate(identifier=identifier, url=row["url"]))
        return EnrichmentSelection(candidates=candidates, already_enriched=enriched, unknown=unknown)

    def select_unenriched(
        self,
        *,
        limit: int,
        collection_id: Optional[str] = None,
        lookback_days: int = 7,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Newest-first identifiers still missing details, within a collection or lookback window."""

        if collection_id:
            rows = self.db.query(
                """
                SELECT identifier FROM records
                WHERE has_details = 0 AND collection_id = ?
                ORDER BY created_at DESC, identifier
                LIMIT ?
                """,
                (collection_id, limit),
            )
        else:
            since = isoformat((now or utc_now()) - timedelta(days=lookback_days))
            rows = self.db.query(
                """
                SELECT identifier FROM records
                WHERE has_details = 0 AND created_at >= ?
                ORDER BY created_at DESC, identifier
                LIMIT ?
                """,
                (since, limit),
            )
        return [row["identifier"] for row in rows]

    # ---- collections -------------------------------------------------------

    def create_collection(
        self,
        collection_id: str,
        *,
        run_id: Optional[str],
        provider_handle: Optional[str],
        inputs: Iterable[Dict[str, Any]],
    ) -> None:
        inputs = list(inputs)
        first = inputs[0] if inputs else {}
        self.db.execute(
            """
            INSERT INTO collections (id, run_id, location, listing_category, home_type,
                                     days_on_market, exact_address, input_count,
                                     provider_handle, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'running', ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (
                collection_id,
                run_id,
                first.get("location"),
                first.get("listingCategory"),
                first.get("HomeType"),
                str(first.get("days_on_zillow") or "") or None,
                1 if first.get("exact_address") else 0,
                len(inputs),
                provider_handle,
                isoformat(),
            ),
        )

    def complete_collection(
        self,
        collection_id: str,
        *,
        status: str,
        record_count: int = 0,
        blob_key: Optional[str] = None,
    ) -> None:
        self.db.execute(
            """
            UPDATE collections
            SET status = ?, record_count = ?, blob_key = COALESCE(?, blob_key), completed_at = ?
            WHERE id = ?
            """,
            (status, record_count, blob_key, isoformat(), collection_id),
        )

    def get_collection(self, collection_id: str) -> Optional[Dict[str, Any]]:
        return self.db.query_one("SELECT * FROM collections WHERE id = ?", (collection_id,))


__all__ = ["EnrichmentCandidate", "EnrichmentSelection", "RecordStore"]
