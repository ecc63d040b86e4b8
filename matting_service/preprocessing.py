"""
Image decoding and model-facing preprocessing.

Everything after decoding works on `CanonicalImage` (RGBA numpy pixels).
The model only ever sees PIL RGB images, and the two conversion functions
below are the single crossing point between those representations.
"""

from __future__ import annotations

from io import BytesIO
from typing import Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError
from torchvision import transforms

from .entities import CanonicalImage
from .errors import ImageDecodeError

# BiRefNet was trained on ImageNet-normalized inputs.
IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]


def decode_canonical(image_bytes: bytes) -> CanonicalImage:
    """
    Decode arbitrary image bytes into an opaque RGBA `CanonicalImage`.

    EXIF orientation is applied to the pixels so nothing downstream has to
    look at metadata. Raises `ImageDecodeError` for anything Pillow cannot
    fully decode.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image data")
    try:
        image = Image.open(BytesIO(image_bytes))
        # Image.open is lazy; force the decode so truncated files fail here.
        image.load()
        image = ImageOps.exif_transpose(image)
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Unsupported or oversized image: {exc}") from exc
    except (OSError, ValueError, SyntaxError) as exc:
        raise ImageDecodeError(f"Invalid image data: {exc}") from exc

    if image.width == 0 or image.height == 0:
        raise ImageDecodeError("Image has zero width or height")
    return from_pil_image(image)


def from_pil_image(image: Image.Image) -> CanonicalImage:
    """Convert a PIL image into the canonical RGBA buffer with opaque alpha."""
    rgba = np.array(image.convert("RGBA"), dtype=np.uint8)
    rgba[..., 3] = 255
    height, width = rgba.shape[:2]
    return CanonicalImage(data=rgba, width=width, height=height)


def to_model_image(image: CanonicalImage) -> Image.Image:
    """Convert a canonical buffer into the RGB PIL image the preprocessor expects."""
    rgb = np.ascontiguousarray(image.data[..., :3])
    return Image.fromarray(rgb)


def build_preprocessor(working_size: int) -> transforms.Compose:
    """Resize to the model's square working resolution and normalize."""
    size: Tuple[int, int] = (working_size, working_size)
    return transforms.Compose(
        [
            transforms.Resize(size),
            transforms.ToTensor(),
            transforms.Normalize(IMAGENET_MEAN, IMAGENET_STD),
        ]
    )
