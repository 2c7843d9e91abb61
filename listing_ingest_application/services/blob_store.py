"""Blob storage for raw snapshot mirrors and quarantined webhook payloads.

Keys follow ``{kind}/{source}/{timestamp}-{handle}.json``. The local backend
writes a ``.meta.json`` sidecar next to each object; the S3 backend stores
metadata on the object itself.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import settings

logger = logging.getLogger("temporal.worker.blobs")

RAW_DISCOVERY_KIND = "listing-snapshots"
RAW_DETAILS_KIND = "listing-details"
WEBHOOK_DELIVERY_KIND = "webhook-deliveries"
QUARANTINE_KIND = "temp-webhooks"

_META_SUFFIX = ".meta.json"


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", str(value).strip())
    return cleaned.strip("._") or "unknown"


def blob_timestamp(when: Optional[datetime] = None) -> str:
    moment = (when or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.strftime("%Y%m%dT%H%M%S%fZ")


def build_blob_key(kind: str, source: str, handle: str, when: Optional[datetime] = None) -> str:
    """``{kind}/{source}/{timestamp}-{handle}.json`` with unsafe characters replaced."""

    return f"{_clean_segment(kind)}/{_clean_segment(source)}/{blob_timestamp(when)}-{_clean_segment(handle)}.json"


def build_quarantine_key(provider_handle: str, callback: str, when: Optional[datetime] = None) -> str:
    return build_blob_key(QUARANTINE_KIND, provider_handle, callback, when)


@dataclass(frozen=True)
class StoredBlob:
    key: str
    size_bytes: int


class BlobStore:
    backend_name = "base"

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, Any]] = None) -> StoredBlob:
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def list(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def put_json(self, key: str, payload: Any, metadata: Optional[Dict[str, Any]] = None) -> StoredBlob:
        data = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
        meta = {"content_type": "application/json", **(metadata or {})}
        return self.put(key, data, meta)


class LocalBlobStore(BlobStore):
    backend_name = "local"

    def __init__(self, root: str | Path, *, bucket: str = "") -> None:
        self._root = Path(root) / bucket if bucket else Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for_key(self, key: str) -> Path:
        parts = [part for part in key.split("/") if part]
        if not parts or any(part in {".", ".."} for part in parts):
            raise ValueError(f"Invalid blob key {key!r}")
        return self._root.joinpath(*parts)

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, Any]] = None) -> StoredBlob:
        path = self._path_for_key(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        meta = {
            "content_type": "application/octet-stream",
            "created_at": datetime.now(timezone.utc).isoformat(),
            **(metadata or {}),
        }
        Path(f"{path}{_META_SUFFIX}").write_text(
            json.dumps(meta, ensure_ascii=True, sort_keys=True, default=str), encoding="utf-8"
        )
        return StoredBlob(key=key, size_bytes=len(data))

    def get(self, key: str) -> bytes:
        path = self._path_for_key(key)
        if not path.exists():
            raise FileNotFoundError(key)
        return path.read_bytes()

    def get_metadata(self, key: str) -> Dict[str, Any]:
        meta_path = Path(f"{self._path_for_key(key)}{_META_SUFFIX}")
        if not meta_path.exists():
            return {}
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}

    def list(self, prefix: str = "") -> List[str]:
        if not self._root.exists():
            return []
        keys = []
        for path in self._root.rglob("*"):
            if not path.is_file() or path.name.endswith(_META_SUFFIX):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def delete(self, key: str) -> bool:
        path = self._path_for_key(key)
        if not path.exists():
            return False
        path.unlink()
        meta_path = Path(f"{path}{_META_SUFFIX}")
        if meta_path.exists():
            meta_path.unlink()
        return True


class S3BlobStore(BlobStore):
    backend_name = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        prefix: str = "",
        endpoint: str | None = None,
        region: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        force_path_style: bool = False,
    ) -> None:
        try:
            import boto3  # type: ignore
            from botocore.config import Config  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for the s3 blob store backend") from exc
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        session = boto3.session.Session(
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=endpoint or None,
            config=Config(s3={"addressing_style": "path" if force_path_style else "auto"}),
        )

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}/{key}" if self._prefix else key

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, Any]] = None) -> StoredBlob:
        meta = dict(metadata or {})
        content_type = str(meta.pop("content_type", "application/octet-stream"))
        self._client.put_object(
            Bucket=self._bucket,
            Key=self._full_key(key),
            Body=data,
            ContentType=content_type,
            Metadata={str(k): str(v) for k, v in meta.items()},
        )
        return StoredBlob(key=key, size_bytes=len(data))

    def get(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._full_key(key))
        except self._client.exceptions.NoSuchKey as exc:
            raise FileNotFoundError(key) from exc
        return response["Body"].read()

    def list(self, prefix: str = "") -> List[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        strip = f"{self._prefix}/" if self._prefix else ""
        keys: List[str] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=self._full_key(prefix)):
            for item in page.get("Contents", []):
                keys.append(item["Key"][len(strip):])
        return sorted(keys)

    def delete(self, key: str) -> bool:
        self._client.delete_object(Bucket=self._bucket, Key=self._full_key(key))
        return True


def create_blob_store() -> BlobStore:
    backend = (settings.blob_backend or "local").strip().lower()
    if backend == "s3":
        return S3BlobStore(
            bucket=settings.blob_bucket,
            prefix=settings.blob_prefix,
            endpoint=settings.s3_endpoint,
            region=settings.s3_region,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            force_path_style=settings.s3_force_path_style,
        )
    if backend != "local":
        raise ValueError(f"Unsupported blob store backend {backend!r}")
    return LocalBlobStore(settings.blob_root, bucket=settings.blob_bucket)


_blob_store: BlobStore | None = None


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store is None:
        _blob_store = create_blob_store()
    return _blob_store


def _set_blob_store_for_tests(store: BlobStore | None) -> None:
    global _blob_store
    _blob_store = store


__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "QUARANTINE_KIND",
    "RAW_DETAILS_KIND",
    "RAW_DISCOVERY_KIND",
    "S3BlobStore",
    "StoredBlob",
    "WEBHOOK_DELIVERY_KIND",
    "build_blob_key",
    "build_quarantine_key",
    "create_blob_store",
    "get_blob_store",
]
