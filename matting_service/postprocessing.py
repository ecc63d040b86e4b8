"""
Alpha compositing for cutouts.

Foreground and background outputs share one code path: background mode is
foreground compositing with the inverted mask, so the two alphas always sum
to 255.
"""

from __future__ import annotations

from io import BytesIO
import logging
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from . import config
from .entities import AlphaMask, CanonicalImage, CompositeResult, MaskStage, OutputMode
from .errors import CompositingError

logger = logging.getLogger(__name__)


def invert_mask(mask: AlphaMask) -> AlphaMask:
    return AlphaMask(
        data=(255 - mask.data).astype(np.uint8),
        width=mask.width,
        height=mask.height,
        stage=mask.stage,
    )


def apply_alpha(image: CanonicalImage, mask: AlphaMask) -> np.ndarray:
    """Copy RGB unchanged and take alpha from the mask."""
    if mask.stage is not MaskStage.IMAGE:
        raise CompositingError("Mask has not been resampled to image resolution")
    if (mask.width, mask.height) != (image.width, image.height) or mask.data.shape != image.data.shape[:2]:
        raise CompositingError(
            f"Mask {mask.width}x{mask.height} does not match image {image.width}x{image.height}"
        )
    rgba = image.data.copy()
    rgba[..., 3] = mask.data
    return rgba


def encode_png(rgba: np.ndarray, compress_level: int = 6) -> bytes:
    try:
        buf = BytesIO()
        Image.fromarray(rgba).save(buf, format="PNG", compress_level=compress_level)
    except (OSError, ValueError) as exc:
        raise CompositingError(f"PNG encoding failed: {exc}") from exc
    return buf.getvalue()


def _maybe_dump_debug(alpha_u8: np.ndarray, mode: OutputMode, debug_dir: Path) -> None:
    """Optionally write the applied alpha when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        alpha_path = debug_dir / f"alpha_{mode.value}.png"
        cv2.imwrite(str(alpha_path), alpha_u8)
        logger.debug("postprocess: wrote debug alpha to %s", alpha_path)
    except Exception as exc:  # noqa: BLE001
        logger.warning("postprocess: failed to write debug outputs: %s", exc)


def compose(
    image: CanonicalImage,
    mask: AlphaMask,
    mode: OutputMode = OutputMode.FOREGROUND,
    compress_level: int = 6,
    settings: Optional[config.Settings] = None,
) -> CompositeResult:
    """Apply the (possibly inverted) mask to `image` and encode the result as PNG."""
    settings = settings or config.get_settings()
    mode = OutputMode(mode)
    applied = invert_mask(mask) if mode is OutputMode.BACKGROUND else mask
    rgba = apply_alpha(image, applied)

    if settings.debug:
        _maybe_dump_debug(applied.data, mode, Path(settings.debug_output_dir))

    png_bytes = encode_png(rgba, compress_level=compress_level)
    logger.debug("Composited %s output: %d bytes", mode.value, len(png_bytes))
    return CompositeResult(data=png_bytes, width=image.width, height=image.height, mode=mode)
