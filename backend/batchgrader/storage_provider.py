"""Pluggable object storage providers for uploaded presentation media."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

from batchgrader.settings import settings
from batchgrader.storage import ensure_dir

logger = logging.getLogger(__name__)


class StorageProvider(Protocol):
    def get_upload_url(self, key: str, content_type: str, expires_seconds: int = 3600) -> str:
        """Return a URL the client can PUT the object to."""

    def get_download_url(self, key: str, expires_seconds: int = 3600) -> str:
        """Return a signed or directly accessible URL for a stored object."""

    def put_bytes(self, key: str, data: bytes, content_type: str) -> dict[str, str]:
        """Persist bytes and return storage metadata."""

    def get_bytes(self, key: str) -> bytes:
        """Read a stored object."""

    def delete(self, key: str) -> None:
        """Remove a stored object. Missing objects are not an error."""


class LocalDiskProvider:
    """Stores objects under data_path/objects for local development."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = ensure_dir(base_dir)

    def _resolve(self, key: str) -> Path:
        clean_key = key.strip("/")
        destination = (self.base_dir / clean_key).resolve()
        if self.base_dir.resolve() not in destination.parents and destination != self.base_dir.resolve():
            raise ValueError("Invalid storage key")
        return destination

    def get_upload_url(self, key: str, content_type: str, expires_seconds: int = 3600) -> str:
        del content_type, expires_seconds
        return f"/files/local?key={quote(key)}"

    def get_download_url(self, key: str, expires_seconds: int = 3600) -> str:
        del expires_seconds
        return f"/files/local?key={quote(key)}"

    def put_bytes(self, key: str, data: bytes, content_type: str) -> dict[str, str]:
        del content_type
        destination = self._resolve(key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
        return {"key": key, "url": self.get_download_url(key)}

    def resolve_local_path(self, key: str) -> Path:
        return self._resolve(key)

    def get_bytes(self, key: str) -> bytes:
        return self._resolve(key).read_bytes()

    def delete(self, key: str) -> None:
        self._resolve(key).unlink(missing_ok=True)


class S3Provider:
    """S3-compatible object storage provider (AWS S3, Cloudflare R2)."""

    def __init__(
        self,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        endpoint_url: str | None = None,
        region: str | None = None,
        public_base_url: str | None = None,
    ) -> None:
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        import boto3

        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region or "auto",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def get_upload_url(self, key: str, content_type: str, expires_seconds: int = 3600) -> str:
        return self._client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_seconds,
        )

    def get_download_url(self, key: str, expires_seconds: int = 3600) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(key)}"
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )

    def put_bytes(self, key: str, data: bytes, content_type: str) -> dict[str, str]:
        self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return {"key": key, "url": self.get_download_url(key)}

    def get_bytes(self, key: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)


_provider: StorageProvider | None = None


def _create_provider() -> StorageProvider:
    backend = settings.storage_backend.lower().strip()
    if backend == "s3":
        if not settings.s3_bucket or not settings.s3_access_key_id or not settings.s3_secret_access_key:
            raise RuntimeError("S3 storage backend requires S3_BUCKET, S3_ACCESS_KEY_ID, and S3_SECRET_ACCESS_KEY")
        return S3Provider(
            bucket=settings.s3_bucket,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            public_base_url=settings.s3_public_base_url,
        )
    return LocalDiskProvider(settings.data_path / "objects")


def get_storage_provider() -> StorageProvider:
    global _provider
    if _provider is None:
        _provider = _create_provider()
    return _provider


def reset_storage_provider() -> None:
    global _provider
    _provider = None


def delete_objects_best_effort(provider: StorageProvider, keys: list[str]) -> int:
    """Delete each key, logging and skipping failures. Returns the number deleted."""
    deleted = 0
    for key in keys:
        try:
            provider.delete(key)
            deleted += 1
        except Exception:
            logger.warning("storage delete failed", extra={"key": key}, exc_info=True)
    return deleted
