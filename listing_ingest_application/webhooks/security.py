"""Authentication for provider callbacks.

Every submission made in webhook mode registers its provider handle with a
random secret. Callbacks must present that secret in the ``secret`` query
parameter, and data deliveries must also carry ``Authorization: Bearer
<secret>``. Callbacks for a handle nobody registered are not errors for the
provider (it may retry a stale delivery); they are quarantined for inspection.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Optional

from ..services.blob_store import BlobStore, build_quarantine_key
from ..services.webhook_registry import WebhookRegistration, WebhookRegistry
from ..workflows.exceptions import SecurityRejectedError, UnsolicitedCallbackError
from ..workflows.helpers.provider import mask_secret

logger = logging.getLogger("temporal.worker.webhooks")

_BEARER_PREFIX = "bearer "


def _secrets_match(expected: str, presented: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    value = authorization.strip()
    if not value.lower().startswith(_BEARER_PREFIX):
        return None
    token = value[len(_BEARER_PREFIX):].strip()
    return token or None


class WebhookSecurityGate:
    def __init__(self, registry: WebhookRegistry, blob_store: BlobStore) -> None:
        self.registry = registry
        self.blob_store = blob_store

    def validate(self, secret: Optional[str], provider_handle: Optional[str]) -> WebhookRegistration:
        """Return the live registration for ``provider_handle`` if ``secret`` matches it."""

        if not secret:
            raise SecurityRejectedError("Webhook secret is missing")
        if not provider_handle:
            raise SecurityRejectedError("Webhook payload does not name a snapshot")
        registration = self.registry.lookup(provider_handle)
        if registration is None:
            raise UnsolicitedCallbackError(provider_handle)
        if not _secrets_match(registration.secret, secret):
            logger.warning(
                "Rejected callback for snapshot %s: secret %s does not match",
                provider_handle,
                mask_secret(secret),
            )
            raise SecurityRejectedError(f"Webhook secret mismatch for snapshot {provider_handle}")
        return registration

    def validate_delivery(
        self,
        secret: Optional[str],
        provider_handle: Optional[str],
        authorization: Optional[str],
    ) -> WebhookRegistration:
        """Like ``validate`` and additionally require ``Authorization: Bearer <secret>``."""

        registration = self.validate(secret, provider_handle)
        token = bearer_token(authorization)
        if token is None:
            raise SecurityRejectedError("Data delivery is missing a bearer credential")
        if not _secrets_match(registration.secret, token):
            logger.warning(
                "Rejected delivery for snapshot %s: bearer %s does not match",
                provider_handle,
                mask_secret(token),
            )
            raise SecurityRejectedError(f"Bearer credential mismatch for snapshot {provider_handle}")
        return registration

    def quarantine(
        self,
        provider_handle: Optional[str],
        callback: str,
        body: bytes,
        when: Optional[datetime] = None,
    ) -> str:
        """Keep an unsolicited callback body so it can be inspected or replayed."""

        key = build_quarantine_key(provider_handle or "unknown", callback, when)
        self.blob_store.put(
            key,
            body,
            {"provider_handle": provider_handle or "", "callback": callback, "content_type": "application/json"},
        )
        logger.warning("Quarantined unsolicited %s callback for snapshot %s at %s", callback, provider_handle, key)
        return key


__all__ = ["WebhookSecurityGate", "bearer_token"]
