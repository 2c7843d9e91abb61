from __future__ import annotations

import math
import re
from typing import Any, Iterable, List, Tuple

# "12345.0" / "12345.000" come from float round-tripping upstream.
_INTEGRAL_FRACTION_RE = re.compile(r"^(-?\d+)\.0+$")


def canonical_identifier(value: Any) -> str | None:
    """Return the canonical string form of a record identifier, or None if unusable.

    Integers render without a fractional part, integral floats and "123.0"-style
    strings collapse to the integer string, and the result is stable under
    repeated normalization.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        return str(int(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        match = _INTEGRAL_FRACTION_RE.match(text)
        if match:
            return match.group(1)
        return text
    return None


def canonicalize_identifiers(values: Iterable[Any]) -> Tuple[List[str], List[Any]]:
    """Split raw identifiers into canonical unique ids (input order kept) and rejects."""

    seen: set[str] = set()
    valid: List[str] = []
    invalid: List[Any] = []
    for value in values:
        canonical = canonical_identifier(value)
        if canonical is None:
            invalid.append(value)
            continue
        if canonical in seen:
            continue
        seen.add(canonical)
        valid.append(canonical)
    return valid, invalid


__all__ = ["canonical_identifier", "canonicalize_identifiers"]
