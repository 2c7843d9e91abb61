from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

logger = logging.getLogger("temporal.worker.activities")

NOTIFY_PATH = "/webhooks/notify"
DELIVERY_PATH = "/webhooks/endpoint"


@dataclass(frozen=True)
class WebhookConfig:
    """Callback URLs and credential handed to the provider for one submission."""

    notify_url: str
    endpoint_url: str
    secret: str

    @property
    def auth_header(self) -> str:
        return f"Bearer {self.secret}"


def build_webhook_config(base_url: str, secret: str) -> WebhookConfig:
    """Build notify/data-delivery URLs that carry the per-submission secret."""

    base = base_url.rstrip("/")
    query = urlencode({"secret": secret})
    return WebhookConfig(
        notify_url=f"{base}{NOTIFY_PATH}?{query}",
        endpoint_url=f"{base}{DELIVERY_PATH}?{query}",
        secret=secret,
    )


def log_provider_dispatch(provider: str, url: str, **context: Any) -> None:
    """One INFO line per outbound provider call; None-valued context is left out."""

    details = " ".join(f"{key}={value}" for key, value in context.items() if value is not None)
    logger.info("Dispatching to %s %s%s", provider, url, f" ({details})" if details else "")


def mask_secret(secret: Optional[str]) -> Optional[str]:
    """First four and last two characters of a webhook secret, for logs."""

    if not secret:
        return None
    if len(secret) <= 6:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-2:]}"


__all__ = [
    "DELIVERY_PATH",
    "NOTIFY_PATH",
    "WebhookConfig",
    "build_webhook_config",
    "log_provider_dispatch",
    "mask_secret",
]
