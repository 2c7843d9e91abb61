from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    value = os.getenv(name, default)
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class Settings:
    temporal_address: str = os.getenv("TEMPORAL_ADDRESS", "localhost:7233")
    temporal_namespace: str = os.getenv("TEMPORAL_NAMESPACE", "default")
    task_queue: str = os.getenv("TEMPORAL_TASK_QUEUE", "listing-ingest-task-queue")

    # Bright Data datasets API
    brightdata_api_token: str | None = os.getenv("BRIGHTDATA_API_TOKEN")
    brightdata_base_url: str = os.getenv(
        "BRIGHTDATA_BASE_URL", "https://api.brightdata.com/datasets/v3"
    )
    brightdata_discovery_dataset_id: str = os.getenv(
        "BRIGHTDATA_DISCOVERY_DATASET_ID", "gd_lfqkr8wm13ixtbd8f5"
    )
    brightdata_details_dataset_id: str = os.getenv(
        "BRIGHTDATA_DETAILS_DATASET_ID", "gd_m794g571225l6vm7gh"
    )

    # Public base URL the provider can reach for callbacks (e.g., https://ingest.example.com)
    webhook_base_url: str | None = os.getenv("WEBHOOK_BASE_URL")
    webhooks_enabled: bool = _env_flag("BRIGHTDATA_WEBHOOKS_ENABLED", "false")
    webhook_host: str = os.getenv("WEBHOOK_HOST", "0.0.0.0")
    webhook_port: int = _env_int("WEBHOOK_PORT", 8787)

    # Relational store (SQLite file)
    database_path: str = os.getenv("LISTING_INGEST_DB_PATH", "data/listing_ingest.db")

    # Blob store: "local" or "s3"
    blob_backend: str = os.getenv("BLOB_STORE_BACKEND", "local")
    blob_root: str = os.getenv("BLOB_STORE_ROOT", "data/blobs")
    blob_bucket: str = os.getenv("BLOB_STORE_BUCKET", "listing-ingest")
    blob_prefix: str = os.getenv("BLOB_STORE_PREFIX", "")
    s3_endpoint: str | None = os.getenv("S3_ENDPOINT")
    s3_region: str | None = os.getenv("S3_REGION")
    s3_access_key: str | None = os.getenv("S3_ACCESS_KEY")
    s3_secret_key: str | None = os.getenv("S3_SECRET_KEY")
    s3_force_path_style: bool = _env_flag("S3_FORCE_PATH_STYLE", "false")

    # OTLP log export for workflow events
    otlp_logs_endpoint: str | None = os.getenv("OTLP_LOGS_ENDPOINT")
    otlp_logs_token: str | None = os.getenv("OTLP_LOGS_TOKEN")
    telemetry_disabled: bool = _env_flag("TELEMETRY_DISABLED", "false")

    environment: str = os.getenv("ENVIRONMENT", "development")
    worker_version: str = os.getenv("WORKER_VERSION", "0.1.0")

    # Records are opaque; only the identifier field is interpreted.
    record_identifier_field: str = os.getenv("RECORD_IDENTIFIER_FIELD", "zpid")
    detail_url_template: str = os.getenv(
        "DETAIL_URL_TEMPLATE", "https://www.zillow.com/homedetails/{identifier}_zpid/"
    )

    @property
    def default_completion_mode(self) -> str:
        if self.webhooks_enabled and self.webhook_base_url:
            return "webhook"
        return "poll"


settings = Settings()
