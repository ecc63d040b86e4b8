"""
Error taxonomy for the matting pipeline.

Stage-local failures derive from `MattingError`. The pipeline wraps each of
them into a single `BackgroundRemovalError` that records the failing stage,
so callers only need to catch one type and can still inspect the cause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .entities import SourceReference


class MattingError(Exception):
    """Base class for stage-local failures."""


class ModelLoadError(MattingError):
    """The segmentation model or its preprocessor failed to initialize."""


class ImageFetchError(MattingError):
    """Source bytes could not be obtained."""

    def __init__(self, message: str, reference: Optional["SourceReference"] = None):
        super().__init__(message)
        self.reference = reference


class ImageDecodeError(MattingError):
    """Bytes could not be decoded into a canonical pixel buffer."""


class InferenceError(MattingError):
    """The model ran but did not produce the expected output."""


class MaskResolutionError(MattingError):
    """The raw model tensor could not be turned into a per-pixel mask."""


class CompositingError(MattingError):
    """Mask and image disagree, or the composite could not be encoded."""


class StorageError(MattingError):
    """The persistence collaborator failed."""


class BackgroundRemovalError(Exception):
    """Top-level failure surfaced to callers of the pipeline."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"Background removal failed during {stage}: {cause}")
        self.stage = stage
        self.cause = cause
