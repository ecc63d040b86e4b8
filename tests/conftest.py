"""
Pytest configuration and shared fixtures.

No test downloads a real model: the model pool is built with a loader that
returns a deterministic fake BiRefNet.
"""

from io import BytesIO
from pathlib import Path
import threading
import time
from typing import List, Optional

import pytest
import torch
from PIL import Image, ImageDraw

from matting_service.config import Settings
from matting_service.entities import StoredArtifact
from matting_service.model_loader import ModelHandle, ModelPool
from matting_service.pipeline import BackgroundRemover
from matting_service.preprocessing import build_preprocessor

WORKING_SIZE = 64


class FakeBiRefNet(torch.nn.Module):
    """
    Mimics BiRefNet's eval output: a list of side predictions whose last
    element is the full-resolution logit map. The logits ramp from -6 on the
    left edge to +6 on the right edge.
    """

    def __init__(self):
        super().__init__()
        self.calls = 0

    def forward(self, x: torch.Tensor):
        self.calls += 1
        b, _, h, w = x.shape
        ramp = torch.linspace(-6.0, 6.0, w).view(1, 1, 1, w).expand(b, 1, h, w).clone()
        return [torch.zeros(b, 1, h // 2, w // 2), ramp]


class CountingLoader:
    """Loader stand-in that counts calls and can be told to fail or stall."""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.calls = 0
        self.model = FakeBiRefNet()
        self._lock = threading.Lock()

    def __call__(self, model_id: str, settings: Settings) -> ModelHandle:
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise OSError(f"Could not reach the hub for {model_id}")
        return ModelHandle(
            model=self.model,
            preprocessor=build_preprocessor(settings.model_working_size),
            device=torch.device("cpu"),
            model_id=model_id,
            working_size=settings.model_working_size,
        )


class RecordingStorage:
    def __init__(self, fail: Optional[Exception] = None):
        self.calls: List[dict] = []
        self.fail = fail

    async def store(self, data, owner_id, category, file_name, content_type):
        self.calls.append(
            {
                "data": data,
                "owner_id": owner_id,
                "category": category,
                "file_name": file_name,
                "content_type": content_type,
            }
        )
        if self.fail is not None:
            raise self.fail
        path = f"images/{category}/{owner_id}/{file_name}"
        return StoredArtifact(url=f"https://cdn.example.com/{path}", path=path, file_name=file_name)


def encode(image: Image.Image, fmt: str, **kwargs) -> bytes:
    buf = BytesIO()
    image.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


def make_portrait(size=(512, 512)) -> Image.Image:
    """White background with a skin-toned oval 'face' and dark 'hair'."""
    width, height = size
    img = Image.new("RGB", size, color=(255, 255, 255))
    draw = ImageDraw.Draw(img)
    draw.ellipse(
        [(width * 0.3, height * 0.25), (width * 0.7, height * 0.65)],
        fill=(255, 220, 177),
        outline=(200, 180, 150),
        width=2,
    )
    draw.rectangle([(width * 0.3, height * 0.15), (width * 0.7, height * 0.3)], fill=(50, 30, 20))
    return img


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        model_working_size=WORKING_SIZE,
        model_load_timeout_seconds=5,
        inference_timeout_seconds=5,
        uploads_root=tmp_path / "public",
        local_storage_dir=tmp_path / "output",
        debug_output_dir=tmp_path / "debug",
        debug=False,
    )


@pytest.fixture
def loader() -> CountingLoader:
    return CountingLoader()


@pytest.fixture
def storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture
def remover(settings: Settings, loader: CountingLoader, storage: RecordingStorage) -> BackgroundRemover:
    return BackgroundRemover(settings=settings, models=ModelPool(settings, loader=loader), storage=storage)


@pytest.fixture(scope="session")
def portrait_jpeg() -> bytes:
    """512x512 opaque JPEG."""
    return encode(make_portrait(), "JPEG", quality=92)


@pytest.fixture(scope="session")
def landscape_png() -> bytes:
    """Non-square input to catch width/height swaps."""
    return encode(make_portrait((300, 200)), "PNG")


@pytest.fixture(scope="session")
def image_bytes():
    """Factory: image_bytes(size, fmt, **save_kwargs) -> encoded synthetic portrait."""

    def _make(size=(512, 512), fmt="PNG", **kwargs) -> bytes:
        return encode(make_portrait(size), fmt, **kwargs)

    return _make


@pytest.fixture
def make_loader():
    """Factory for loaders with custom delay/failure behaviour."""
    return CountingLoader


@pytest.fixture
def make_storage():
    return RecordingStorage
