from __future__ import annotations

from itertools import islice
from typing import Any, Dict, List, Sequence


def shrink_for_log(
    value: Any,
    max_chars: int = 400,
    *,
    max_items: int = 6,
    max_depth: int = 2,
) -> Any:
    """Return a compact preview of ``value`` that is cheap to log or ship as an event."""

    if value is None or isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, str):
        if len(value) <= max_chars:
            return value
        return f"{value[:max_chars]}... (+{len(value) - max_chars} chars)"

    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"

    if isinstance(value, dict):
        size = len(value)
        if max_depth <= 0:
            return f"<dict size={size}>"
        if size > max_items:
            return {"_type": "dict", "size": size, "keys": [str(k) for k in islice(value.keys(), max_items)]}
        return {
            str(key): shrink_for_log(child, max_chars, max_items=max_items, max_depth=max_depth - 1)
            for key, child in value.items()
        }

    if isinstance(value, (list, tuple)):
        size = len(value)
        if max_depth <= 0:
            return f"<{type(value).__name__} size={size}>"
        sample = [
            shrink_for_log(child, max_chars, max_items=max_items, max_depth=max_depth - 1)
            for child in value[:max_items]
        ]
        if size <= max_items:
            return sample
        return {"_type": type(value).__name__, "size": size, "sample": sample}

    text = str(value)
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}... (+{len(text) - max_chars} chars)"


def summarize_records(
    records: Sequence[Dict[str, Any]],
    *,
    identifier_field: str,
    max_samples: int = 5,
) -> Dict[str, Any]:
    """Counts plus a few identifiers, for workflow event logs."""

    sample: List[Any] = []
    for record in records:
        if isinstance(record, dict) and record.get(identifier_field) is not None:
            sample.append(record.get(identifier_field))
        if len(sample) >= max_samples:
            break
    return {"count": len(records), "sample": sample}


__all__ = ["shrink_for_log", "summarize_records"]
