"""
Inference adapter around the shared BiRefNet model.

This is the only module that knows what the model library returns. BiRefNet
in eval mode returns a list of side predictions whose last element is the
final full-resolution logit map; that is the one output this adapter
accepts. Anything else is an `InferenceError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import numpy as np
import torch

from . import config
from .entities import CanonicalImage, ProbabilityTensor
from .errors import InferenceError
from .model_loader import ModelHandle, ModelResource
from .preprocessing import to_model_image

logger = logging.getLogger(__name__)


def extract_logits(outputs: Any) -> torch.Tensor:
    """Return the final prediction from a BiRefNet forward pass."""
    if not isinstance(outputs, (list, tuple)) or not outputs:
        raise InferenceError(
            f"Expected a non-empty sequence of predictions, got {type(outputs).__name__}"
        )
    logits = outputs[-1]
    if not isinstance(logits, torch.Tensor) or logits.dim() != 4:
        raise InferenceError("Final prediction is not a (batch, channels, height, width) tensor")
    return logits


def run_model(handle: ModelHandle, image: CanonicalImage) -> ProbabilityTensor:
    """Blocking forward pass: canonical image -> preprocessor -> model -> raw logits."""
    model_image = to_model_image(image)
    input_tensor = handle.preprocessor(model_image).unsqueeze(0).to(handle.device)
    try:
        with torch.no_grad():
            outputs = handle.model(input_tensor)
    except RuntimeError as exc:
        raise InferenceError(f"Model forward pass failed: {exc}") from exc
    logits = extract_logits(outputs)
    data = logits.detach().float().cpu().numpy().astype(np.float32, copy=False)
    return ProbabilityTensor(data=data)


class InferenceAdapter:
    """Runs canonical images through one `ModelResource`."""

    def __init__(self, resource: ModelResource, settings: Optional[config.Settings] = None):
        self._resource = resource
        self._settings = settings or config.get_settings()

    async def infer(self, image: CanonicalImage) -> ProbabilityTensor:
        handle = await self._resource.ensure_ready()
        loop = asyncio.get_running_loop()
        timeout = self._settings.inference_timeout_seconds
        start = time.perf_counter()
        try:
            tensor = await asyncio.wait_for(
                loop.run_in_executor(None, run_model, handle, image),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise InferenceError(f"Inference timed out after {timeout:.0f}s") from exc
        logger.debug(
            "Inference on %dx%d image took %.0fms, output dims=%s",
            image.width,
            image.height,
            (time.perf_counter() - start) * 1000,
            tensor.dims,
        )
        return tensor
