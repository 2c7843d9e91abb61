from __future__ import annotations

from enum import StrEnum

DISCOVER_BY_INPUT_FILTERS = "input_filters"
DEFAULT_LISTING_CATEGORY = "House for sale"
MAX_REJECTION_REASONS = 10
MAX_REPORTED_IDENTIFIERS = 50
EVENT_DATA_MAX_CHARS = 900


class RunKind(StrEnum):
    DISCOVERY = "data_collector"
    DETAILS = "property_details"
    MONITORING = "daily_monitor"


class SubmissionKind(StrEnum):
    DISCOVERY = "discovery"
    DETAILS = "details"


class EnrichmentSource(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"
    COLLECTION = "collection_id"
