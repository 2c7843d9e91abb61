"""Decode provider snapshot payloads of unknown shape.

Bright Data returns snapshots as a JSON array, a single JSON object, an
envelope object wrapping a record list, or newline-delimited JSON. Shapes are
tried in a fixed order and the first match wins. A malformed NDJSON line is
logged and skipped; only a payload with no usable records is a failure.
``decode_records`` never raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

logger = logging.getLogger("temporal.worker.decoder")

DEFAULT_IDENTIFIER_FIELD = "zpid"
ENVELOPE_LIST_FIELDS = ("data", "records", "results", "items")
_MISSING = object()


@dataclass(frozen=True)
class DecodedRecords:
    records: List[Dict[str, Any]]
    shape: str
    skipped_lines: int = 0
    header: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class DecodeFailure:
    reason: str
    skipped_lines: int = 0


DecodeResult = Union[DecodedRecords, DecodeFailure]
ShapeMatcher = Callable[[Any, str], Optional[DecodeResult]]


def has_identifier(obj: Dict[str, Any], identifier_field: str) -> bool:
    value = obj.get(identifier_field)
    return value is not None and value != ""


def _records_from_list(values: Sequence[Any], shape: str) -> DecodeResult:
    records = [item for item in values if isinstance(item, dict)]
    dropped = len(values) - len(records)
    if dropped:
        logger.warning("Dropped %s non-object entries from %s payload", dropped, shape)
    if not records:
        return DecodeFailure(f"{shape} payload contained no records", skipped_lines=dropped)
    return DecodedRecords(records=records, shape=shape, skipped_lines=dropped)


def _match_array(value: Any, identifier_field: str) -> Optional[DecodeResult]:  # noqa: ARG001
    if not isinstance(value, list):
        return None
    return _records_from_list(value, "array")


def _match_identified_object(value: Any, identifier_field: str) -> Optional[DecodeResult]:
    if isinstance(value, dict) and has_identifier(value, identifier_field):
        return DecodedRecords(records=[value], shape="object")
    return None


def _match_envelope(value: Any, identifier_field: str) -> Optional[DecodeResult]:  # noqa: ARG001
    if not isinstance(value, dict):
        return None
    for key in ENVELOPE_LIST_FIELDS:
        nested = value.get(key, _MISSING)
        if isinstance(nested, list):
            header = {k: v for k, v in value.items() if k != key}
            result = _records_from_list(nested, "envelope")
            if isinstance(result, DecodedRecords):
                return DecodedRecords(
                    records=result.records,
                    shape=result.shape,
                    skipped_lines=result.skipped_lines,
                    header=header or None,
                )
            return result
    return None


WHOLE_DOCUMENT_MATCHERS: tuple[ShapeMatcher, ...] = (
    _match_array,
    _match_identified_object,
    _match_envelope,
)


def _is_header_line(obj: Any, identifier_field: str) -> bool:
    return isinstance(obj, dict) and "status" in obj and not has_identifier(obj, identifier_field)


def _decode_lines(text: str, identifier_field: str) -> DecodeResult:
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]
    if len(lines) <= 1:
        return DecodeFailure("payload is not valid JSON")

    parsed: List[Any] = []
    skipped = 0
    for index, line in enumerate(lines, start=1):
        try:
            parsed.append(json.loads(line))
        except json.JSONDecodeError as exc:
            skipped += 1
            logger.warning(
                "Skipping malformed NDJSON line %s/%s: %s (%s)",
                index,
                len(lines),
                exc.msg,
                line[:120],
            )

    if not parsed:
        return DecodeFailure(
            f"none of {len(lines)} lines parsed as JSON", skipped_lines=skipped
        )

    header: Optional[Dict[str, Any]] = None
    if len(parsed) > 1 and _is_header_line(parsed[0], identifier_field):
        header = parsed[0]
        parsed = parsed[1:]

    records = [item for item in parsed if isinstance(item, dict)]
    non_objects = len(parsed) - len(records)
    if non_objects:
        logger.warning("Skipping %s NDJSON lines that are not JSON objects", non_objects)
    skipped += non_objects
    if not records:
        return DecodeFailure("NDJSON payload contained no records", skipped_lines=skipped)
    return DecodedRecords(records=records, shape="ndjson", skipped_lines=skipped, header=header)


def decode_records(
    payload: Union[str, bytes, None],
    *,
    identifier_field: str = DEFAULT_IDENTIFIER_FIELD,
) -> DecodeResult:
    """Turn a raw snapshot payload into records, or a failure with a reason."""

    if payload is None:
        return DecodeFailure("empty payload")
    if isinstance(payload, bytes):
        text = payload.decode("utf-8", errors="replace")
    else:
        text = payload
    text = text.lstrip("\ufeff").strip()
    if not text:
        return DecodeFailure("empty payload")

    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        return _decode_lines(text, identifier_field)

    for matcher in WHOLE_DOCUMENT_MATCHERS:
        result = matcher(document, identifier_field)
        if result is not None:
            return result

    if isinstance(document, dict):
        status = document.get("status")
        message = document.get("message") or document.get("error")
        detail = f" (status={status}, message={message})" if status or message else ""
        return DecodeFailure(f"JSON object has no {identifier_field} and no record list{detail}")
    return DecodeFailure(f"unsupported JSON value of type {type(document).__name__}")


__all__ = [
    "DecodedRecords",
    "DecodeFailure",
    "DecodeResult",
    "decode_records",
    "has_identifier",
]
