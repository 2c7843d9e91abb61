from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ..config import settings
from ..services.blob_store import WEBHOOK_DELIVERY_KIND, BlobStore, build_blob_key
from ..services.webhook_registry import WebhookRegistry
from ..workflows.exceptions import SecurityRejectedError, UnsolicitedCallbackError
from ..workflows.helpers.decoder import DecodedRecords, DecodeFailure, decode_records
from .deps import get_registry, get_security_gate, get_webhook_blob_store
from .security import WebhookSecurityGate

logger = logging.getLogger("temporal.worker.webhooks")

router = APIRouter(prefix="/webhooks")


def _unsolicited(gate: WebhookSecurityGate, exc: UnsolicitedCallbackError, callback: str, body: bytes) -> JSONResponse:
    key = gate.quarantine(exc.provider_handle, callback, body)
    return JSONResponse(
        status_code=202,
        content={"status": "unsolicited", "snapshot_id": exc.provider_handle, "quarantine_key": key},
    )


def _handle_from_notify(payload: Dict[str, Any]) -> Optional[str]:
    for key in ("snapshot_id", "snapshotId", "id"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _handle_from_records(decoded: DecodedRecords | DecodeFailure) -> Optional[str]:
    if isinstance(decoded, DecodeFailure) or not decoded.records:
        return None
    first = decoded.records[0]
    candidate = first.get("snapshot_id") if isinstance(first, dict) else None
    return candidate.strip() if isinstance(candidate, str) and candidate.strip() else None


@router.post("/notify")
async def notify(
    request: Request,
    secret: Optional[str] = Query(default=None),
    gate: WebhookSecurityGate = Depends(get_security_gate),
    registry: WebhookRegistry = Depends(get_registry),
) -> Any:
    """Status callback: ``{snapshot_id, status, progress?, error?}``."""

    body = await request.body()
    try:
        payload = json.loads(body or b"null")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Notify body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Notify body must be a JSON object")

    provider_handle = _handle_from_notify(payload)
    try:
        await asyncio.to_thread(gate.validate, secret, provider_handle)
    except SecurityRejectedError as exc:
        raise HTTPException(status_code=401, detail=exc.message) from exc
    except UnsolicitedCallbackError as exc:
        return await asyncio.to_thread(_unsolicited, gate, exc, "notify", body)

    status = str(payload.get("status") or "").strip() or "unknown"
    await asyncio.to_thread(
        registry.record_notify,
        provider_handle,
        status=status,
        progress=payload.get("progress"),
        error=payload.get("error") or payload.get("error_message"),
    )
    logger.info("Notify for snapshot %s: status=%s", provider_handle, status)
    return {"status": "ok", "snapshot_id": provider_handle}


@router.post("/endpoint")
async def deliver(
    request: Request,
    secret: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
    x_snapshot_id: Optional[str] = Header(default=None),
    gate: WebhookSecurityGate = Depends(get_security_gate),
    registry: WebhookRegistry = Depends(get_registry),
    blob_store: BlobStore = Depends(get_webhook_blob_store),
) -> Any:
    """Data delivery: NDJSON or a JSON array of records.

    With an ``x-snapshot-id`` header the caller is authenticated before the
    body is parsed; without one the snapshot id can only come from the records.
    """

    body = await request.body()
    provider_handle = (x_snapshot_id or "").strip() or None
    decoded = None
    if provider_handle is None:
        decoded = decode_records(body, identifier_field=settings.record_identifier_field)
        provider_handle = _handle_from_records(decoded)
        if provider_handle is None:
            if isinstance(decoded, DecodeFailure):
                raise HTTPException(status_code=400, detail=f"Delivery could not be decoded: {decoded.reason}")
            raise HTTPException(status_code=400, detail="Delivery does not identify its snapshot")

    try:
        registration = await asyncio.to_thread(gate.validate_delivery, secret, provider_handle, authorization)
    except SecurityRejectedError as exc:
        raise HTTPException(status_code=401, detail=exc.message) from exc
    except UnsolicitedCallbackError as exc:
        return await asyncio.to_thread(_unsolicited, gate, exc, "delivery", body)

    if decoded is None:
        decoded = decode_records(body, identifier_field=settings.record_identifier_field)
    if isinstance(decoded, DecodeFailure):
        raise HTTPException(status_code=400, detail=f"Delivery could not be decoded: {decoded.reason}")

    key = build_blob_key(WEBHOOK_DELIVERY_KIND, registration.kind, provider_handle)
    stored = await asyncio.to_thread(
        blob_store.put,
        key,
        body,
        {
            "content_type": "application/json",
            "provider_handle": provider_handle,
            "job_id": registration.job_id,
            "record_count": len(decoded.records),
        },
    )
    await asyncio.to_thread(
        registry.record_delivery,
        provider_handle,
        delivery_key=stored.key,
        record_count=len(decoded.records),
    )
    logger.info(
        "Stored delivery for snapshot %s: %s records (%s skipped lines) at %s",
        provider_handle,
        len(decoded.records),
        decoded.skipped_lines,
        stored.key,
    )
    return {"status": "ok", "snapshot_id": provider_handle, "records": len(decoded.records)}


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
