from __future__ import annotations

import importlib
import logging
from typing import Any, Dict

from opentelemetry import _logs as logs
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource

from ..config import settings

SERVICE_NAME = "listing-ingest-worker"

_logger_provider: LoggerProvider | None = None
_logger: logging.Logger | None = None


def is_configured() -> bool:
    return bool(settings.otlp_logs_endpoint) and not settings.telemetry_disabled


def _build_otlp_exporter(endpoint: str, token: str | None) -> OTLPLogExporter:
    headers = {"Authorization": f"Bearer {token}"} if token else None
    return OTLPLogExporter(endpoint=endpoint, headers=headers)


def _infer_workflow_id() -> str | None:
    """Best-effort: pull workflow_id from Temporal workflow/activity context if present."""

    candidates = [
        ("temporalio.workflow", "info", "workflow_id"),
        ("temporalio.activity", "info", "workflow_id"),
    ]
    for module_name, func_name, attr in candidates:
        try:
            mod = importlib.import_module(module_name)
            run_info = getattr(mod, func_name)()
        except Exception:  # noqa: BLE001 - outside a Temporal context
            continue
        wf_id = getattr(run_info, attr, None)
        if isinstance(wf_id, str) and wf_id.strip():
            return wf_id
    return None


def _ensure_logger() -> logging.Logger:
    global _logger, _logger_provider

    if _logger:
        return _logger

    endpoint = settings.otlp_logs_endpoint
    if not endpoint:
        raise RuntimeError("OTLP_LOGS_ENDPOINT is not configured")

    provider = LoggerProvider(
        resource=Resource.create(
            {"service.name": SERVICE_NAME, "deployment.environment": settings.environment}
        )
    )
    logs.set_logger_provider(provider)
    provider.add_log_record_processor(
        BatchLogRecordProcessor(_build_otlp_exporter(endpoint.rstrip("/"), settings.otlp_logs_token))
    )

    handler = LoggingHandler(level=logging.INFO, logger_provider=provider)
    logger = logging.getLogger("workflow.events")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    # Avoid duplicating OTLP handlers when the function is called multiple times.
    logger.handlers = [h for h in logger.handlers if not isinstance(h, LoggingHandler)]
    logger.addHandler(handler)

    _logger_provider = provider
    _logger = logger
    return logger


def normalize_log_level(level: Any) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        normalized = level.strip().lower()
        if normalized in {"warn", "warning"}:
            return logging.WARNING
        if normalized == "error":
            return logging.ERROR
        if normalized == "debug":
            return logging.DEBUG
        if normalized == "critical":
            return logging.CRITICAL
    return logging.INFO


def emit_event_log(payload: Dict[str, Any]) -> None:
    """Export a structured workflow event as an OTLP log record."""

    logger = _ensure_logger()

    workflow_id = payload.get("workflowId") or _infer_workflow_id()
    message = payload.get("message") or payload.get("event") or "workflow.event"
    if workflow_id and f"workflow_id={workflow_id}" not in str(message):
        message = f"{message} | workflow_id={workflow_id}"

    attributes = {k: v for k, v in payload.items() if k != "message" and v is not None}
    if workflow_id:
        attributes.setdefault("workflowId", workflow_id)

    # stacklevel points OTLP code locations at the caller, not this helper.
    logger.log(normalize_log_level(payload.get("level")), message, extra=attributes, stacklevel=2)


def force_flush_event_logs(timeout_ms: int = 30000) -> bool:
    if _logger_provider:
        return _logger_provider.force_flush(timeout_ms)
    return True


__all__ = ["emit_event_log", "force_flush_event_logs", "is_configured", "normalize_log_level"]
