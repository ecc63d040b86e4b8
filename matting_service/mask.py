"""Turn raw model logits into an 8-bit alpha mask at source resolution."""

from __future__ import annotations

import cv2
import numpy as np

from .entities import AlphaMask, MaskStage, ProbabilityTensor
from .errors import MaskResolutionError


def sigmoid(x: np.ndarray) -> np.ndarray:
    # exp overflow for very negative logits just saturates to 0.
    with np.errstate(over="ignore"):
        return 1.0 / (1.0 + np.exp(-x.astype(np.float64)))


def quantize(probabilities: np.ndarray) -> np.ndarray:
    """Round half up to 0..255."""
    scaled = np.floor(probabilities * 255.0 + 0.5)
    return np.clip(scaled, 0, 255).astype(np.uint8)


def activate(tensor: ProbabilityTensor) -> AlphaMask:
    """Sigmoid + quantize the first batch item at the model's working resolution."""
    dims = tensor.dims
    if len(dims) != 4:
        raise MaskResolutionError(f"Expected 4-D tensor, got dims={dims}")
    batch, channels, height, width = dims
    if batch < 1 or height < 1 or width < 1:
        raise MaskResolutionError(f"Degenerate tensor dims={dims}")
    if channels != 1:
        raise MaskResolutionError(f"Expected a single channel, got {channels}")

    logits = tensor.data[0, 0]
    if not np.all(np.isfinite(logits)):
        raise MaskResolutionError("Tensor contains non-finite values")

    alpha = quantize(sigmoid(logits))
    return AlphaMask(data=alpha, width=width, height=height, stage=MaskStage.MODEL)


def resample(mask: AlphaMask, width: int, height: int) -> AlphaMask:
    """Bilinear resize to the target size; always runs, even for equal sizes."""
    if width < 1 or height < 1:
        raise MaskResolutionError(f"Invalid target size {width}x{height}")
    resized = cv2.resize(mask.data, (width, height), interpolation=cv2.INTER_LINEAR)
    return AlphaMask(data=resized, width=width, height=height, stage=MaskStage.IMAGE)


def resolve_alpha_mask(tensor: ProbabilityTensor, width: int, height: int) -> AlphaMask:
    return resample(activate(tensor), width, height)
