"""
FastAPI layer exposing the background-removal pipeline.

Endpoints:
 - GET /health
 - POST /remove-bg
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Literal, Optional, Union

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, field_validator

from . import config
from .entities import ProcessingOptions, SourceReference
from .errors import BackgroundRemovalError
from .loader import UPLOADS_PREFIX
from .model_loader import get_model_pool
from .pipeline import get_background_remover
from .storage import SEGMENT_RE

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

# Client-side problems; everything else is on us.
STAGE_STATUS = {
    "fetch": 400,
    "decode": 400,
    "storage": 502,
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    get_model_pool().unload_all()


app = FastAPI(title="Background Removal Service", version="0.1.0", lifespan=lifespan)


class RemoveBgRequest(BaseModel):
    imageUrl: str
    userId: Union[int, str]
    mode: Literal["foreground", "background"] = "foreground"
    quality: Optional[int] = Field(None, ge=1, le=100)
    modelProfile: Optional[Literal["small", "medium"]] = None

    @field_validator("userId")
    @classmethod
    def _safe_user_id(cls, value):
        if not SEGMENT_RE.fullmatch(str(value)):
            raise ValueError("userId may only contain letters, digits, '_' and '-'")
        return value


class RemoveBgResponse(BaseModel):
    url: str
    path: str
    fileName: str
    mode: str


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/remove-bg", response_model=RemoveBgResponse)
async def remove_bg(body: RemoveBgRequest):
    # Only remote URLs and public uploads; never arbitrary server paths.
    if not body.imageUrl.startswith(("http://", "https://", UPLOADS_PREFIX)):
        raise HTTPException(status_code=400, detail="imageUrl must be an http(s) URL or an /uploads/ path")
    options = ProcessingOptions(
        mode=body.mode,
        quality=body.quality,
        model_profile=body.modelProfile,
    )
    try:
        artifact = await get_background_remover().remove_background(
            SourceReference.from_string(body.imageUrl),
            body.userId,
            options,
        )
    except BackgroundRemovalError as exc:
        status = STAGE_STATUS.get(exc.stage, 500)
        if status >= 500:
            logger.exception("Background removal failed at %s: %s", exc.stage, exc.cause)
        else:
            logger.warning("Rejected request at %s: %s", exc.stage, exc.cause)
        raise HTTPException(status_code=status, detail=f"Background removal failed during {exc.stage}") from exc

    return RemoveBgResponse(
        url=artifact.url,
        path=artifact.path,
        fileName=artifact.file_name,
        mode=options.mode.value,
    )
