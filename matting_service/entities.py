"""Request-scoped data passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np


class SourceKind(str, Enum):
    PATH = "path"
    URL = "url"
    BUFFER = "buffer"


class OutputMode(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class ModelProfile(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"


class MaskStage(str, Enum):
    MODEL = "model"  # tensor working resolution
    IMAGE = "image"  # source image resolution


@dataclass(frozen=True)
class ProcessingOptions:
    """Per-request knobs. `None` means "use the configured default"."""

    mode: OutputMode = OutputMode.FOREGROUND
    quality: Optional[int] = None
    model_profile: Optional[ModelProfile] = None

    def __post_init__(self) -> None:
        # Accept plain strings from callers that do not import the enums.
        object.__setattr__(self, "mode", OutputMode(self.mode))
        if self.model_profile is not None:
            object.__setattr__(self, "model_profile", ModelProfile(self.model_profile))
        if self.quality is not None:
            quality = int(self.quality)
            if not 1 <= quality <= 100:
                raise ValueError("quality must be between 1 and 100")
            object.__setattr__(self, "quality", quality)


@dataclass(frozen=True)
class SourceReference:
    kind: SourceKind
    value: Union[str, bytes] = field(repr=False)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "SourceReference":
        return cls(SourceKind.PATH, str(path))

    @classmethod
    def from_url(cls, url: str) -> "SourceReference":
        return cls(SourceKind.URL, url)

    @classmethod
    def from_bytes(cls, data: bytes) -> "SourceReference":
        return cls(SourceKind.BUFFER, bytes(data))

    @classmethod
    def from_string(cls, value: str) -> "SourceReference":
        """Classify a bare string reference: http(s) URLs are remote, anything else is a path."""
        if value.startswith(("http://", "https://")):
            return cls.from_url(value)
        return cls.from_path(value)

    def describe(self) -> str:
        """Log-safe description; buffers are never dumped."""
        if self.kind is SourceKind.BUFFER:
            return f"buffer({len(self.value)} bytes)"
        return f"{self.kind.value}:{self.value}"


@dataclass
class CanonicalImage:
    """Decoded RGBA pixels, shape (height, width, 4), uint8."""

    data: np.ndarray
    width: int
    height: int

    @property
    def channels(self) -> int:
        return 4

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass
class ProbabilityTensor:
    """Raw (pre-activation) model scores, shape (batch, channels, height, width)."""

    data: np.ndarray

    @property
    def dims(self) -> Tuple[int, ...]:
        return tuple(int(d) for d in self.data.shape)


@dataclass
class AlphaMask:
    data: np.ndarray  # (height, width) uint8
    width: int
    height: int
    stage: MaskStage = MaskStage.IMAGE


@dataclass
class CompositeResult:
    data: bytes = field(repr=False)
    width: int
    height: int
    mode: OutputMode
    content_type: str = "image/png"


@dataclass(frozen=True)
class StoredArtifact:
    url: str
    path: str
    file_name: str
