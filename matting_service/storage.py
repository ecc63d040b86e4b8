"""
Persistence backends for finished cutouts.

`S3Storage` uploads to Cloudflare R2 (or any S3-compatible endpoint) and is
used whenever the R2 settings are complete; `LocalStorage` writes to disk
for development. Both implement `StorageBackend`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional, Protocol, Union
from urllib.parse import urljoin

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .entities import StoredArtifact
from .errors import StorageError

logger = logging.getLogger(__name__)

OwnerId = Union[str, int]

SEGMENT_RE = re.compile(r"[A-Za-z0-9_-]+")
FILE_NAME_RE = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9._-]*")


def build_object_key(owner_id: OwnerId, category: str, file_name: str) -> str:
    """Spread owners over a three-level prefix: images/<cat>/0/0/1/<owner>/<file>."""
    owner = str(owner_id)
    if not SEGMENT_RE.fullmatch(owner):
        raise StorageError(f"Invalid owner id: {owner!r}")
    if not SEGMENT_RE.fullmatch(category):
        raise StorageError(f"Invalid storage category: {category!r}")
    if not FILE_NAME_RE.fullmatch(file_name):
        raise StorageError(f"Invalid file name: {file_name!r}")
    padded = owner.rjust(6, "0")
    return f"images/{category}/{padded[0]}/{padded[1]}/{padded[2]}/{owner}/{file_name}"


class StorageBackend(Protocol):
    async def store(
        self,
        data: bytes,
        owner_id: OwnerId,
        category: str,
        file_name: str,
        content_type: str,
    ) -> StoredArtifact:
        ...


class S3Storage:
    def __init__(self, settings: Optional[config.Settings] = None, client=None):
        self._settings = settings or config.get_settings()
        self._client = client

    def _get_s3_client(self):
        if self._client is not None:
            return self._client
        settings = self._settings
        if not settings.r2_configured:
            raise StorageError("R2 configuration is incomplete; check env vars.")
        session = boto3.session.Session()
        self._client = session.client(
            service_name="s3",
            aws_access_key_id=settings.r2_access_key_id,
            aws_secret_access_key=settings.r2_secret_access_key,
            endpoint_url=settings.r2_endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                connect_timeout=settings.connect_timeout_seconds,
                read_timeout=settings.request_timeout_seconds,
            ),
        )
        return self._client

    def _build_public_url(self, key: str) -> str:
        settings = self._settings
        if settings.r2_public_base_url:
            return urljoin(settings.r2_public_base_url.rstrip("/") + "/", key)
        return self._get_s3_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": settings.r2_bucket_name, "Key": key},
            ExpiresIn=settings.presigned_url_ttl_seconds,
        )

    def _put(self, data: bytes, key: str, content_type: str) -> str:
        client = self._get_s3_client()
        client.put_object(
            Bucket=self._settings.r2_bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return self._build_public_url(key)

    async def store(
        self,
        data: bytes,
        owner_id: OwnerId,
        category: str,
        file_name: str,
        content_type: str,
    ) -> StoredArtifact:
        key = build_object_key(owner_id, category, file_name)
        loop = asyncio.get_running_loop()
        try:
            url = await loop.run_in_executor(None, self._put, data, key, content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Upload of {key} failed: {exc}") from exc
        logger.info("Uploaded %s (%d bytes)", key, len(data))
        return StoredArtifact(url=url, path=key, file_name=file_name)


class LocalStorage:
    def __init__(self, root: Path, base_url: str = "/static"):
        self._root = Path(root)
        self._base_url = base_url

    def _write(self, data: bytes, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def store(
        self,
        data: bytes,
        owner_id: OwnerId,
        category: str,
        file_name: str,
        content_type: str,
    ) -> StoredArtifact:
        key = build_object_key(owner_id, category, file_name)
        root = self._root.resolve()
        target = (root / key).resolve()
        if not target.is_relative_to(root):
            raise StorageError(f"Refusing to write outside {root}: {key}")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write, data, target)
        except OSError as exc:
            raise StorageError(f"Could not write {target}: {exc}") from exc
        logger.info("Stored %s locally at %s", content_type, target)
        url = urljoin(self._base_url.rstrip("/") + "/", key)
        return StoredArtifact(url=url, path=str(target), file_name=file_name)


def build_storage(settings: Optional[config.Settings] = None) -> StorageBackend:
    settings = settings or config.get_settings()
    if settings.r2_configured:
        return S3Storage(settings)
    logger.warning("R2 is not configured; storing outputs under %s", settings.local_storage_dir)
    return LocalStorage(settings.local_storage_dir, base_url=settings.local_storage_base_url)
