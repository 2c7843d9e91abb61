from __future__ import annotations

import uuid
from typing import Any, Callable, Iterator

import pytest

from listing_ingest_application.config import settings
from listing_ingest_application.services.blob_store import LocalBlobStore, _set_blob_store_for_tests
from listing_ingest_application.services.brightdata_client import _set_client_for_tests
from listing_ingest_application.services.database import Database, _set_database_for_tests
from listing_ingest_application.testing.brightdata_mock import MockBrightData
from listing_ingest_application.workflows.snapshot_steps import CompletionTiming

WEBHOOK_BASE_URL = "https://hooks.listing-ingest.test"


@pytest.fixture(autouse=True)
def _quiet_settings(monkeypatch):
    monkeypatch.setattr(settings, "otlp_logs_endpoint", None)
    monkeypatch.setattr(settings, "telemetry_disabled", True)
    monkeypatch.setattr(settings, "webhook_base_url", None)
    monkeypatch.setattr(settings, "webhooks_enabled", False)


@pytest.fixture
def database(tmp_path) -> Iterator[Database]:
    db = Database(tmp_path / "listing_ingest.db")
    db.initialize()
    _set_database_for_tests(db)
    yield db
    _set_database_for_tests(None)


@pytest.fixture
def blob_store(tmp_path) -> Iterator[LocalBlobStore]:
    store = LocalBlobStore(tmp_path / "blobs")
    _set_blob_store_for_tests(store)
    yield store
    _set_blob_store_for_tests(None)


@pytest.fixture
def brightdata() -> Iterator[MockBrightData]:
    mock = MockBrightData()
    _set_client_for_tests(mock.client())
    yield mock
    _set_client_for_tests(None)


@pytest.fixture
def brightdata_factory() -> Iterator[Callable[..., MockBrightData]]:
    """Install a mock with a specific scenario or progress script."""

    def _install(**kwargs: Any) -> MockBrightData:
        mock = MockBrightData(**kwargs)
        _set_client_for_tests(mock.client())
        return mock

    yield _install
    _set_client_for_tests(None)


@pytest.fixture
def webhook_settings(monkeypatch) -> str:
    monkeypatch.setattr(settings, "webhook_base_url", WEBHOOK_BASE_URL)
    monkeypatch.setattr(settings, "webhooks_enabled", True)
    return WEBHOOK_BASE_URL


@pytest.fixture
def fast_timing() -> CompletionTiming:
    return CompletionTiming(
        poll_interval_seconds=1,
        poll_backoff_coefficient=1.0,
        poll_max_interval_seconds=1,
        poll_max_retries=10,
        webhook_check_interval_seconds=5,
        webhook_max_retries=20,
        deadline_seconds=600,
    )


@pytest.fixture
def task_queue() -> str:
    return f"listing-ingest-test-{uuid.uuid4().hex[:6]}"
