from __future__ import annotations

import pytest

from listing_ingest_application.workflows.helpers.identifiers import (
    canonical_identifier,
    canonicalize_identifiers,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        (123, "123"),
        (123.0, "123"),
        ("123", "123"),
        ("123.0", "123"),
        ("123.000", "123"),
        ("-7.0", "-7"),
        ("  42 ", "42"),
        ("abc-1", "abc-1"),
    ],
)
def test_canonical_identifier(raw, expected):
    assert canonical_identifier(raw) == expected


@pytest.mark.parametrize("raw", [None, True, False, "", "   ", 1.5, float("nan"), float("inf"), [], {}])
def test_unusable_identifiers(raw):
    assert canonical_identifier(raw) is None


def test_canonical_form_is_stable():
    for raw in (2085632.0, "2085632.00", 2085632, " 2085632"):
        once = canonical_identifier(raw)
        assert canonical_identifier(once) == once == "2085632"


def test_canonicalize_dedupes_and_keeps_order():
    valid, invalid = canonicalize_identifiers(["3", 1, "1.0", None, 2.5, 3.0, "2"])

    assert valid == ["3", "1", "2"]
    assert invalid == [None, 2.5]
