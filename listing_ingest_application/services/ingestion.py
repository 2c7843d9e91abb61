"""Land decoded records in the relational store.

Enrichment writes happen in a fixed order: primary row, detail row, every
nested collection (replaced wholesale), and only then the ``has_details``
flag. If any earlier write fails the flag stays unset, so the record is picked
up again by the next auto-enrichment run.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ..workflows.exceptions import PersistenceFailureError
from ..workflows.helpers.identifiers import canonical_identifier
from .record_store import RecordStore

logger = logging.getLogger("temporal.worker.ingestion")

# Nested lists replaced per identifier on enrichment; first match wins for aliases.
NESTED_COLLECTIONS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("price_history", ("price_history", "priceHistory")),
    ("tax_history", ("tax_history", "taxHistory")),
    ("schools", ("schools",)),
    ("photos", ("photos", "responsive_photos", "responsivePhotos")),
)


@dataclass(frozen=True)
class PersistResult:
    status: str
    identifier: Optional[str] = None
    reason: Optional[str] = None

    @property
    def stored(self) -> bool:
        return self.status == "stored"

    @classmethod
    def ok(cls, identifier: str) -> "PersistResult":
        return cls(status="stored", identifier=identifier)

    @classmethod
    def rejected(cls, reason: str, identifier: Optional[str] = None) -> "PersistResult":
        return cls(status="rejected", identifier=identifier, reason=reason)


def split_nested_collections(record: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, list]]:
    """Separate nested collections from the flat attribute bag."""

    alias_keys = {alias for _, aliases in NESTED_COLLECTIONS for alias in aliases}
    flat = {key: value for key, value in record.items() if key not in alias_keys}
    nested: Dict[str, list] = {}
    for name, aliases in NESTED_COLLECTIONS:
        for alias in aliases:
            value = record.get(alias)
            if isinstance(value, list):
                nested[name] = value
                break
    return flat, nested


class IngestionWriter:
    def __init__(
        self,
        store: RecordStore,
        *,
        identifier_field: str = "zpid",
        detail_url_template: Optional[str] = None,
    ) -> None:
        self.store = store
        self.identifier_field = identifier_field
        self.detail_url_template = detail_url_template

    def _canonical(self, record: Any) -> Tuple[Optional[str], Optional[PersistResult]]:
        if not isinstance(record, dict):
            return None, PersistResult.rejected("record is not an object")
        if record.get("error") and record.get(self.identifier_field) is None:
            # Provider emits per-input error rows when include_errors=true.
            return None, PersistResult.rejected(f"provider error: {record.get('error')}")
        identifier = canonical_identifier(record.get(self.identifier_field))
        if identifier is None:
            return None, PersistResult.rejected(f"missing or invalid {self.identifier_field}")
        return identifier, None

    def _normalized(self, record: Dict[str, Any], identifier: str) -> Dict[str, Any]:
        attributes = dict(record)
        attributes[self.identifier_field] = identifier
        return attributes

    def persist(
        self,
        record: Any,
        *,
        collection_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> PersistResult:
        """Upsert one discovered record's primary row."""

        identifier, rejection = self._canonical(record)
        if rejection is not None:
            return rejection
        attributes = self._normalized(record, identifier)
        try:
            self.store.upsert_record(
                identifier,
                attributes,
                collection_id=collection_id,
                url=attributes.get("url"),
                run_id=run_id,
            )
        except sqlite3.Error as exc:
            raise PersistenceFailureError(
                f"Failed to store record {identifier}: {exc}", identifier=identifier
            ) from exc
        return PersistResult.ok(identifier)

    def persist_details(self, record: Any, *, run_id: Optional[str] = None) -> PersistResult:
        """Store one enrichment record and set its flag last.

        Raises PersistenceFailureError if any write fails; the flag is then left unset.
        """

        identifier, rejection = self._canonical(record)
        if rejection is not None:
            return rejection
        flat, nested = split_nested_collections(self._normalized(record, identifier))
        url = flat.get("url")
        if not url and self.detail_url_template:
            url = self.detail_url_template.format(identifier=identifier)

        step = "primary row"
        try:
            self.store.upsert_record(identifier, flat, url=url, run_id=run_id)
            step = "detail row"
            self.store.upsert_detail(identifier, flat, run_id=run_id)
            for name, entries in nested.items():
                step = f"{name} collection"
                self.store.replace_children(identifier, name, entries)
        except sqlite3.Error as exc:
            logger.warning(
                "Enrichment write failed for %s at %s: %s; leaving has_details unset",
                identifier,
                step,
                exc,
            )
            raise PersistenceFailureError(
                f"Failed writing {step} for {identifier}: {exc}", identifier=identifier
            ) from exc

        try:
            self.store.mark_enriched(identifier)
        except sqlite3.Error as exc:
            raise PersistenceFailureError(
                f"Failed to flag {identifier} as enriched: {exc}", identifier=identifier
            ) from exc
        return PersistResult.ok(identifier)


__all__ = ["IngestionWriter", "NESTED_COLLECTIONS", "PersistResult", "split_nested_collections"]
