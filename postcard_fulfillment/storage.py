"""Durable object storage for print-ready assets.

Two backends share the :class:`ObjectStorage` interface:

- :class:`LocalObjectStorage` writes below a directory served at a public base URL.
- :class:`S3ObjectStorage` uploads to an S3 bucket through ``aioboto3``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

import aioboto3

from .errors import UploadError


class ObjectStorage:
    """Interface implemented by concrete storage backends."""

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Store ``data`` at ``path`` and return its stable public URL."""
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: str | Path, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path.lstrip('/')}"

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        target = self.root / path.lstrip("/")

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise UploadError(path, str(exc)) from exc
        return self.public_url(path)


class S3ObjectStorage(ObjectStorage):
    def __init__(
        self,
        bucket: str,
        *,
        region: Optional[str] = None,
        prefix: str = "",
        public_base_url: Optional[str] = None,
        session: Any = None,
    ):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.strip("/")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._session = session

    def key_for(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.prefix}/{path}" if self.prefix else path

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        key = self.key_for(path)
        session = self._session or aioboto3.Session()
        try:
            async with session.client("s3", region_name=self.region) as s3:
                await s3.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                    Metadata=metadata or {},
                )
        except Exception as exc:
            raise UploadError(path, str(exc)) from exc
        return self.public_url(key)


def build_storage(settings: Dict[str, Any]) -> ObjectStorage:
    """Create the storage backend selected by ``settings['storage_backend']``."""
    backend = (settings.get("storage_backend") or "local").lower()
    if backend == "s3":
        bucket = settings.get("s3_bucket")
        if not bucket:
            raise ValueError("s3 storage backend requires 's3_bucket'")
        return S3ObjectStorage(
            bucket,
            region=settings.get("s3_region"),
            prefix=settings.get("s3_prefix") or "",
            public_base_url=settings.get("public_base_url"),
        )
    if backend == "local":
        return LocalObjectStorage(
            settings.get("local_root") or "/data/assets",
            settings.get("public_base_url") or "http://localhost:8000/assets",
        )
    raise ValueError(f"Unknown storage backend: {backend}")
