"""
Model loading utilities for BiRefNet.

The loader:
 - downloads/loads the segmentation model for a profile from Hugging Face,
 - pairs it with the torchvision preprocessor for its working resolution,
 - keeps a single shared instance per profile for the process lifetime,
 - collapses concurrent first calls onto one in-flight load.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
import logging
import time
from typing import Any, Callable, Dict, Optional

import torch
from transformers import AutoModelForImageSegmentation

from . import config
from .entities import ModelProfile
from .errors import ModelLoadError
from .preprocessing import build_preprocessor

logger = logging.getLogger(__name__)


def select_device() -> torch.device:
    """Prefer CUDA -> Apple MPS -> CPU to support both GPU servers and local macOS dev."""
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


@dataclass
class ModelHandle:
    model: Any
    preprocessor: Callable[[Any], torch.Tensor]
    device: torch.device
    model_id: str
    working_size: int


class ModelState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def load_birefnet(model_id: str, settings: config.Settings) -> ModelHandle:
    """Blocking load of a BiRefNet checkpoint plus its preprocessor."""
    device = select_device()
    model = AutoModelForImageSegmentation.from_pretrained(
        model_id,
        trust_remote_code=True,
        token=settings.hf_token,
    )
    model.to(device)
    model.eval()
    if device.type == "cuda":
        torch.set_float32_matmul_precision("high")
    return ModelHandle(
        model=model,
        preprocessor=build_preprocessor(settings.model_working_size),
        device=device,
        model_id=model_id,
        working_size=settings.model_working_size,
    )


Loader = Callable[[str, config.Settings], ModelHandle]


class ModelResource:
    """
    Shared segmentation model with a guarded memoized-future lifecycle.

    `ensure_ready()` returns the cached handle once loaded. While a load is
    in flight every caller awaits the same task, so N concurrent callers
    trigger exactly one load and observe the same outcome. A failed load
    leaves the resource in FAILED and the next call starts over.

    Every load carries a generation number. `unload()` and a timed-out load
    bump it, so a load that finishes afterwards is discarded instead of
    resurrecting the model.
    """

    def __init__(
        self,
        model_id: str,
        settings: Optional[config.Settings] = None,
        loader: Optional[Loader] = None,
    ):
        self.model_id = model_id
        self._settings = settings or config.get_settings()
        self._loader = loader or load_birefnet
        self._state = ModelState.UNLOADED
        self._handle: Optional[ModelHandle] = None
        self._inflight: Optional[asyncio.Future] = None
        self._generation = 0

    @property
    def state(self) -> ModelState:
        return self._state

    async def ensure_ready(self) -> ModelHandle:
        if self._state is ModelState.READY and self._handle is not None:
            return self._handle

        if self._inflight is None:
            self._state = ModelState.LOADING
            self._inflight = asyncio.ensure_future(self._load())
        else:
            logger.info("Model %s is loading, waiting...", self.model_id)
        # Shielded so a cancelled waiter does not cancel the shared load.
        return await asyncio.shield(self._inflight)

    def _load_blocking(self, generation: int) -> ModelHandle:
        handle = self._loader(self.model_id, self._settings)
        if generation != self._generation:
            logger.warning(
                "Model %s finished loading after it was abandoned; discarding it", self.model_id
            )
        return handle

    async def _load(self) -> ModelHandle:
        self._generation += 1
        generation = self._generation
        loop = asyncio.get_running_loop()
        timeout = self._settings.model_load_timeout_seconds
        logger.info("Loading segmentation model %s", self.model_id)
        start = time.perf_counter()
        try:
            handle = await asyncio.wait_for(
                loop.run_in_executor(None, self._load_blocking, generation),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            self._abandon(generation)
            logger.error("Model %s did not load within %.0fs", self.model_id, timeout)
            raise ModelLoadError(f"Loading {self.model_id} timed out after {timeout:.0f}s") from exc
        except Exception as exc:  # noqa: BLE001
            self._abandon(generation)
            logger.error("Failed to load model %s: %s", self.model_id, exc)
            raise ModelLoadError(f"Failed to load {self.model_id}: {exc}") from exc
        except BaseException:
            self._abandon(generation)
            raise

        if generation != self._generation:
            raise ModelLoadError(f"Model {self.model_id} was unloaded while loading")

        self._handle = handle
        self._state = ModelState.READY
        logger.info(
            "Model %s loaded on device %s in %.1fs",
            self.model_id,
            handle.device,
            time.perf_counter() - start,
        )
        return handle

    def _abandon(self, generation: int) -> None:
        # A stale load must not overwrite the state set by unload().
        if generation != self._generation:
            return
        self._generation += 1
        self._handle = None
        self._inflight = None
        self._state = ModelState.FAILED

    def unload(self) -> None:
        """Drop the loaded model and free accelerator memory; fences off any in-flight load."""
        handle = self._handle
        self._generation += 1
        self._handle = None
        self._inflight = None
        self._state = ModelState.UNLOADED
        if handle is not None and handle.device.type == "cuda" and torch.cuda.is_available():
            torch.cuda.empty_cache()
        if handle is not None:
            logger.info("Model %s unloaded", self.model_id)


class ModelPool:
    """One `ModelResource` per profile, created on first use."""

    def __init__(self, settings: Optional[config.Settings] = None, loader: Optional[Loader] = None):
        self._settings = settings or config.get_settings()
        self._loader = loader
        self._resources: Dict[ModelProfile, ModelResource] = {}

    def get(self, profile: ModelProfile) -> ModelResource:
        profile = ModelProfile(profile)
        resource = self._resources.get(profile)
        if resource is None:
            resource = ModelResource(
                self._settings.model_id_for(profile.value),
                settings=self._settings,
                loader=self._loader,
            )
            self._resources[profile] = resource
        return resource

    def unload_all(self) -> None:
        for resource in self._resources.values():
            resource.unload()


@lru_cache()
def get_model_pool() -> ModelPool:
    """Return the process-wide model pool."""
    return ModelPool()
