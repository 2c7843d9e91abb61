"""Async client for the Bright Data datasets API.

Owns the vendor's URL and field conventions: ``/trigger`` to submit,
``/progress/{snapshot_id}`` to poll and ``/snapshot/{snapshot_id}`` to fetch.
HTTP failures are mapped onto the workflow error taxonomy so Temporal knows
which ones to retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import runtime_config, settings
from ..workflows.exceptions import (
    PaymentRequiredWorkflowError,
    ProviderRejectedError,
    ProviderUnavailableError,
    RateLimitWorkflowError,
    StillProcessingError,
)
from ..workflows.helpers.completion import CompletionSignal
from ..workflows.helpers.provider import WebhookConfig, log_provider_dispatch, mask_secret

logger = logging.getLogger("temporal.worker.brightdata")

PROVIDER_NAME = "brightdata"
_NOT_FOUND_MARKERS = ("does not exist", "not found")
_EMPTY_SNAPSHOT_MARKER = "snapshot is empty"


class TriggerResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    snapshot_id: str


class ProgressResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    snapshot_id: Optional[str] = None
    status: str
    records: Optional[int] = None
    errors: Optional[int] = None
    error: Optional[str] = None
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    progress: Optional[Any] = None


@dataclass(frozen=True)
class FetchedPayload:
    provider_handle: str
    text: str
    empty: bool = False
    followed_url: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.text.encode("utf-8"))


def _body_preview(response: httpx.Response, limit: int = 300) -> str:
    try:
        text = response.text
    except Exception:  # noqa: BLE001
        return "<unreadable body>"
    return text[:limit]


def _raise_for_status(response: httpx.Response, action: str) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = f"Bright Data {action} failed: HTTP {status} {_body_preview(response)}"
    if status == 402:
        raise PaymentRequiredWorkflowError(detail, status_code=status)
    if status == 429:
        raise RateLimitWorkflowError(detail, status_code=status)
    if status >= 500:
        raise ProviderUnavailableError(detail, status_code=status)
    raise ProviderRejectedError(detail, status_code=status)


class BrightDataClient:
    def __init__(
        self,
        *,
        api_token: str | None,
        base_url: str,
        timeout_seconds: float = 60.0,
        identifier_field: str = "zpid",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.identifier_field = identifier_field
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        if not self.api_token:
            raise ProviderRejectedError("BRIGHTDATA_API_TOKEN is not configured")
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._headers(),
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        action: str,
        params: Dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, params=params, json=json_body)
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"Bright Data {action} request failed: {exc}") from exc

    async def submit(
        self,
        dataset_id: str,
        inputs: List[Dict[str, Any]],
        *,
        webhook: WebhookConfig | None = None,
        discover_by: str | None = None,
    ) -> str:
        """Trigger a snapshot and return its provider handle."""

        params: Dict[str, Any] = {"dataset_id": dataset_id, "include_errors": "true"}
        if discover_by:
            params["type"] = "discover_new"
            params["discover_by"] = discover_by
        if webhook is not None:
            params.update(
                {
                    "notify": webhook.notify_url,
                    "endpoint": webhook.endpoint_url,
                    "auth_header": webhook.auth_header,
                    "format": "json",
                    "uncompressed_webhook": "true",
                }
            )

        url = f"{self.base_url}/trigger"
        log_provider_dispatch(
            PROVIDER_NAME,
            url,
            dataset_id=dataset_id,
            inputs=len(inputs),
            webhook=bool(webhook),
            secret=mask_secret(webhook.secret) if webhook else None,
        )
        response = await self._request("POST", url, action="trigger", params=params, json_body=inputs)
        _raise_for_status(response, "trigger")
        try:
            trigger = TriggerResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ProviderUnavailableError(
                f"Bright Data trigger returned an unexpected body: {_body_preview(response)}"
            ) from exc
        logger.info("Bright Data snapshot %s triggered (dataset=%s)", trigger.snapshot_id, dataset_id)
        return trigger.snapshot_id

    async def poll_status(self, provider_handle: str) -> CompletionSignal:
        url = f"{self.base_url}/progress/{provider_handle}"
        response = await self._request("GET", url, action="progress")
        if response.status_code in (400, 404):
            body = _body_preview(response).lower()
            if any(marker in body for marker in _NOT_FOUND_MARKERS):
                logger.info("Snapshot %s not provisioned yet", provider_handle)
                return CompletionSignal(provider_handle=provider_handle, status="pending", not_found=True)
        _raise_for_status(response, "progress")
        try:
            progress = ProgressResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ProviderUnavailableError(
                f"Bright Data progress returned an unexpected body: {_body_preview(response)}"
            ) from exc
        return CompletionSignal(
            provider_handle=provider_handle,
            status=progress.status,
            error=progress.error or progress.error_message,
            progress=None if progress.progress is None else str(progress.progress),
            record_count=progress.records,
        )

    def _download_url(self, response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict) or body.get(self.identifier_field) is not None:
            return None
        for key in ("download_url", "downloadUrl", "url"):
            candidate = body.get(key)
            if isinstance(candidate, str) and candidate.startswith(("http://", "https://")):
                return candidate
        return None

    async def fetch_result(self, provider_handle: str) -> FetchedPayload:
        """Download a ready snapshot. Follows an external download URL at most once."""

        url = f"{self.base_url}/snapshot/{provider_handle}"
        response = await self._request("GET", url, action="snapshot", params={"format": "json"})
        if response.status_code == 202:
            raise StillProcessingError(f"Snapshot {provider_handle} is not ready for download yet")
        if response.status_code == 400 and _EMPTY_SNAPSHOT_MARKER in _body_preview(response).lower():
            logger.info("Snapshot %s is empty", provider_handle)
            return FetchedPayload(provider_handle=provider_handle, text="", empty=True)
        _raise_for_status(response, "snapshot")

        download_url = self._download_url(response)
        if download_url is None:
            return FetchedPayload(provider_handle=provider_handle, text=response.text)

        logger.info("Snapshot %s served via download URL", provider_handle)
        followed = await self._request("GET", download_url, action="download")
        _raise_for_status(followed, "download")
        return FetchedPayload(
            provider_handle=provider_handle, text=followed.text, followed_url=download_url
        )


_client: BrightDataClient | None = None


def get_brightdata_client() -> BrightDataClient:
    """Return a singleton client built from settings."""

    global _client
    if _client is None:
        _client = BrightDataClient(
            api_token=settings.brightdata_api_token,
            base_url=settings.brightdata_base_url,
            timeout_seconds=float(runtime_config.provider_http_timeout_seconds),
            identifier_field=settings.record_identifier_field,
        )
    return _client


def _set_client_for_tests(client: BrightDataClient | None) -> None:
    global _client
    _client = client


__all__ = [
    "BrightDataClient",
    "FetchedPayload",
    "ProgressResponse",
    "TriggerResponse",
    "get_brightdata_client",
]
