from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

import yaml

from .paths import resolve_config_path

logger = logging.getLogger("temporal.worker.config")


@dataclass
class RuntimeConfig:
    batch_size: int
    batch_concurrency: int
    poll_interval_seconds: int
    poll_backoff_coefficient: float
    poll_max_interval_seconds: int
    poll_max_retries: int
    webhook_check_interval_seconds: int
    webhook_max_interval_seconds: int
    webhook_max_retries: int
    completion_deadline_minutes: int
    provider_http_timeout_seconds: int
    auto_enrich_limit: int
    auto_enrich_lookback_days: int
    webhook_registration_ttl_hours: int
    recent_runs_limit: int
    monitored_locations: List[str]


def _load_runtime_yaml() -> Dict[str, Any]:
    path = resolve_config_path("runtime.yaml")
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring unreadable runtime config %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _coerce_int(config: Dict[str, Any], key: str, default: int) -> int:
    value = config.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def _coerce_float(config: Dict[str, Any], key: str, default: float) -> float:
    value = config.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    return default


def _coerce_str_list(config: Dict[str, Any], key: str) -> List[str]:
    value = config.get(key)
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        value = [value]
    if not isinstance(value, list):
        return []
    return [
        str(item).strip()
        for item in value
        if isinstance(item, (str, int)) and not isinstance(item, bool) and str(item).strip()
    ]


_raw_runtime_config = _load_runtime_yaml()

runtime_config = RuntimeConfig(
    batch_size=_coerce_int(_raw_runtime_config, "batch_size", 10),
    batch_concurrency=_coerce_int(_raw_runtime_config, "batch_concurrency", 1),
    poll_interval_seconds=_coerce_int(_raw_runtime_config, "poll_interval_seconds", 30),
    poll_backoff_coefficient=_coerce_float(
        _raw_runtime_config, "poll_backoff_coefficient", 2.0
    ),
    poll_max_interval_seconds=_coerce_int(
        _raw_runtime_config, "poll_max_interval_seconds", 300
    ),
    poll_max_retries=_coerce_int(_raw_runtime_config, "poll_max_retries", 24),
    webhook_check_interval_seconds=_coerce_int(
        _raw_runtime_config, "webhook_check_interval_seconds", 300
    ),
    webhook_max_interval_seconds=_coerce_int(
        _raw_runtime_config, "webhook_max_interval_seconds", 1800
    ),
    webhook_max_retries=_coerce_int(_raw_runtime_config, "webhook_max_retries", 2),
    completion_deadline_minutes=_coerce_int(
        _raw_runtime_config, "completion_deadline_minutes", 180
    ),
    provider_http_timeout_seconds=_coerce_int(
        _raw_runtime_config, "provider_http_timeout_seconds", 60
    ),
    auto_enrich_limit=_coerce_int(_raw_runtime_config, "auto_enrich_limit", 50),
    auto_enrich_lookback_days=_coerce_int(
        _raw_runtime_config, "auto_enrich_lookback_days", 7
    ),
    webhook_registration_ttl_hours=_coerce_int(
        _raw_runtime_config, "webhook_registration_ttl_hours", 24
    ),
    recent_runs_limit=_coerce_int(_raw_runtime_config, "recent_runs_limit", 50),
    monitored_locations=_coerce_str_list(_raw_runtime_config, "monitored_locations"),
)
