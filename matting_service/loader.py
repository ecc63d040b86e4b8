"""
Resolve a `SourceReference` into raw bytes.

Blocking reads and downloads run in the default executor so the event loop
keeps serving other requests. No pixel interpretation happens here.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import requests

from . import config
from .entities import SourceKind, SourceReference
from .errors import ImageFetchError

logger = logging.getLogger(__name__)

UPLOADS_PREFIX = "/uploads/"


def resolve_local_path(value: str, settings: config.Settings) -> Path:
    """Map public upload URLs (`/uploads/...`) onto the uploads directory."""
    if not value.startswith(UPLOADS_PREFIX):
        return Path(value)
    root = Path(settings.uploads_root).resolve()
    path = (root / value.lstrip("/")).resolve()
    if not path.is_relative_to(root):
        raise ValueError(f"{value} escapes the uploads directory")
    return path


def _read_file(path: Path) -> bytes:
    return path.read_bytes()


def _download_image(url: str, settings: config.Settings) -> bytes:
    resp = requests.get(
        url,
        timeout=(settings.connect_timeout_seconds, settings.request_timeout_seconds),
    )
    resp.raise_for_status()
    return resp.content


async def load_source_bytes(
    source: SourceReference, settings: Optional[config.Settings] = None
) -> bytes:
    """Return the raw bytes behind `source`, raising `ImageFetchError` on any I/O failure."""
    settings = settings or config.get_settings()
    loop = asyncio.get_running_loop()

    if source.kind is SourceKind.BUFFER:
        data = source.value
    elif source.kind is SourceKind.PATH:
        try:
            path = resolve_local_path(source.value, settings)
            logger.debug("Loading local file: %s", path)
            data = await loop.run_in_executor(None, _read_file, path)
        except (OSError, ValueError) as exc:
            raise ImageFetchError(f"Could not read {source.value}: {exc}", reference=source) from exc
    elif source.kind is SourceKind.URL:
        logger.debug("Fetching remote image: %s", source.value)
        try:
            data = await loop.run_in_executor(None, _download_image, source.value, settings)
        except requests.RequestException as exc:
            raise ImageFetchError(f"Could not download {source.value}: {exc}", reference=source) from exc
    else:
        raise ImageFetchError(f"Unsupported source kind: {source.kind}", reference=source)

    if not data:
        raise ImageFetchError(f"Source {source.describe()} is empty", reference=source)
    logger.debug("Loaded %s: %d bytes", source.describe(), len(data))
    return bytes(data)
