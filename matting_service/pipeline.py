"""
High-level background-removal pipeline.

`BackgroundRemover.remove_background` is the main entry point used by the
HTTP API and the local CLI. Stages run strictly in order:
fetch -> decode -> model_load -> inference -> mask -> composite -> storage.
Any stage failure is wrapped in `BackgroundRemovalError` with the stage
name; nothing is retried.
"""

from __future__ import annotations

import asyncio
from functools import lru_cache
import logging
import time
from typing import Awaitable, Optional, TypeVar
import uuid

from . import config
from .entities import (
    CompositeResult,
    ModelProfile,
    OutputMode,
    ProcessingOptions,
    SourceReference,
    StoredArtifact,
)
from .errors import BackgroundRemovalError
from .inference import InferenceAdapter
from .loader import load_source_bytes
from .mask import resolve_alpha_mask
from .model_loader import ModelPool, get_model_pool
from .postprocessing import compose
from .preprocessing import decode_canonical
from .storage import OwnerId, StorageBackend, build_storage

logger = logging.getLogger(__name__)

T = TypeVar("T")

PNG_CONTENT_TYPE = "image/png"
FILE_SUFFIXES = {
    OutputMode.FOREGROUND: "_nobg",
    OutputMode.BACKGROUND: "_bgonly",
}


def build_file_name(mode: OutputMode) -> str:
    """`<epoch ms>_<8 hex><suffix>.png`; the random part keeps same-millisecond runs apart."""
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{FILE_SUFFIXES[mode]}.png"


async def _stage(name: str, awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except Exception as exc:  # noqa: BLE001
        logger.error("Background removal stage '%s' failed: %s", name, exc)
        raise BackgroundRemovalError(name, exc) from exc


class BackgroundRemover:
    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        models: Optional[ModelPool] = None,
        storage: Optional[StorageBackend] = None,
    ):
        self.settings = settings or config.get_settings()
        self.models = models or get_model_pool()
        self.storage = storage or build_storage(self.settings)

    def _resolve_profile(self, options: ProcessingOptions) -> ModelProfile:
        return options.model_profile or ModelProfile(self.settings.default_model_profile)

    def _resolve_quality(self, options: ProcessingOptions) -> int:
        return options.quality if options.quality is not None else self.settings.default_quality

    async def render(
        self, source: SourceReference, options: Optional[ProcessingOptions] = None
    ) -> CompositeResult:
        """Run every stage except persistence and return the encoded composite."""
        options = options or ProcessingOptions()
        settings = self.settings
        loop = asyncio.get_running_loop()
        resource = self.models.get(self._resolve_profile(options))
        adapter = InferenceAdapter(resource, settings=settings)

        image_bytes = await _stage("fetch", load_source_bytes(source, settings))
        image = await _stage("decode", loop.run_in_executor(None, decode_canonical, image_bytes))
        logger.debug("Decoded %s to %dx%d RGBA", source.describe(), image.width, image.height)

        await _stage("model_load", resource.ensure_ready())
        tensor = await _stage("inference", adapter.infer(image))
        mask = await _stage(
            "mask",
            loop.run_in_executor(None, resolve_alpha_mask, tensor, image.width, image.height),
        )

        compress_level = config.quality_to_compress_level(self._resolve_quality(options))
        return await _stage(
            "composite",
            loop.run_in_executor(None, compose, image, mask, options.mode, compress_level, settings),
        )

    async def remove_background(
        self,
        source: SourceReference,
        owner_id: OwnerId,
        options: Optional[ProcessingOptions] = None,
    ) -> StoredArtifact:
        options = options or ProcessingOptions()
        logger.info(
            "Starting background removal for owner %s: %s (mode=%s)",
            owner_id,
            source.describe(),
            options.mode.value,
        )
        result = await self.render(source, options)

        file_name = build_file_name(result.mode)
        artifact = await _stage(
            "storage",
            self.storage.store(
                result.data,
                owner_id,
                self.settings.storage_category,
                file_name,
                PNG_CONTENT_TYPE,
            ),
        )
        logger.info(
            "Background removal done (%s, %dx%d): %s",
            result.mode.value,
            result.width,
            result.height,
            artifact.url,
        )
        return artifact


@lru_cache()
def get_background_remover() -> BackgroundRemover:
    return BackgroundRemover()


async def remove_background(
    source: SourceReference,
    owner_id: OwnerId,
    options: Optional[ProcessingOptions] = None,
) -> StoredArtifact:
    """Run the default pipeline and persist the result."""
    return await get_background_remover().remove_background(source, owner_id, options)
