from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlparse

from .simulator import MockSnapshot


class MockWebhookSender:
    """Replays the callbacks Bright Data would send for a webhook-mode snapshot.

    ``http`` is anything with a ``post(url, **kwargs)`` method returning a
    response, normally FastAPI's ``TestClient`` wrapping the webhook app.
    """

    def __init__(self, http: Any) -> None:
        self.http = http

    @staticmethod
    def _path(url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.path}?{parsed.query}" if parsed.query else parsed.path

    def notify(self, snapshot: MockSnapshot, *, status: str = "ready", error: Optional[str] = None) -> Any:
        payload: Dict[str, Any] = {"snapshot_id": snapshot.snapshot_id, "status": status}
        if error:
            payload["error"] = error
        return self.http.post(self._path(snapshot.params["notify"]), json=payload)

    def deliver(self, snapshot: MockSnapshot, *, authorization: Optional[str] = None) -> Any:
        headers = {
            "Authorization": authorization if authorization is not None else snapshot.params.get("auth_header", ""),
            "Content-Type": "application/x-ndjson",
            "x-snapshot-id": snapshot.snapshot_id,
        }
        return self.http.post(
            self._path(snapshot.params["endpoint"]),
            content=snapshot.body.encode("utf-8"),
            headers=headers,
        )


__all__ = ["MockWebhookSender"]
