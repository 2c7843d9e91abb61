from __future__ import annotations

from fastapi import Depends

from ..services.blob_store import BlobStore, get_blob_store
from ..services.database import get_database
from ..services.webhook_registry import WebhookRegistry
from .security import WebhookSecurityGate


def get_registry() -> WebhookRegistry:
    return WebhookRegistry(get_database())


def get_webhook_blob_store() -> BlobStore:
    return get_blob_store()


def get_security_gate(
    registry: WebhookRegistry = Depends(get_registry),
    blob_store: BlobStore = Depends(get_webhook_blob_store),
) -> WebhookSecurityGate:
    return WebhookSecurityGate(registry, blob_store)
