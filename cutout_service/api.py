"""
FastAPI layer exposing background removal.

Endpoints:
 - GET /health
 - POST /remove-bg        (multipart upload)
 - POST /remove-bg/url    (JSON with an image URL)
 - GET /usage             (current month's remote quota)
"""

from __future__ import annotations

from functools import lru_cache
import logging

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, HttpUrl

from . import config
from .errors import CutoutError, ErrorKind, ImageDecodeError, QuotaLookupError, user_message
from .pipeline import BackgroundRemovalOrchestrator, ProcessedResult, build_orchestrator

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Cutout Background Removal Service", version="0.1.0")

SOURCE_HEADER = "X-Cutout-Source"


class RemoveBgUrlRequest(BaseModel):
    imageUrl: HttpUrl


class UsageResponse(BaseModel):
    serviceName: str
    year: int
    month: int
    count: int
    limit: int
    remaining: int


@lru_cache()
def get_orchestrator() -> BackgroundRemovalOrchestrator:
    return build_orchestrator(config.get_settings())


def _status_for(error: CutoutError) -> int:
    if isinstance(error, ImageDecodeError):
        return 400
    if error.kind in (ErrorKind.HARDWARE_BACKEND_UNAVAILABLE, ErrorKind.INFERENCE_TIMEOUT):
        return 503
    return 500


def _to_response(result: ProcessedResult) -> Response:
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={SOURCE_HEADER: result.source},
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/remove-bg")
async def remove_bg(
    file: UploadFile = File(...),
    orchestrator: BackgroundRemovalOrchestrator = Depends(get_orchestrator),
):
    image_bytes = await file.read()
    try:
        result = await orchestrator.remove_background(image_bytes)
    except CutoutError as exc:
        logger.warning("Background removal failed (%s): %s", exc.kind.value, exc)
        raise HTTPException(status_code=_status_for(exc), detail=user_message(exc)) from exc
    return _to_response(result)


@app.post("/remove-bg/url")
async def remove_bg_from_url(
    body: RemoveBgUrlRequest,
    orchestrator: BackgroundRemovalOrchestrator = Depends(get_orchestrator),
):
    try:
        result = await orchestrator.remove_background_from_url(
            str(body.imageUrl), timeout_seconds=settings.source_fetch_timeout_seconds
        )
    except CutoutError as exc:
        logger.warning("Background removal from URL failed (%s): %s", exc.kind.value, exc)
        raise HTTPException(status_code=_status_for(exc), detail=user_message(exc)) from exc
    return _to_response(result)


@app.get("/usage", response_model=UsageResponse)
def usage(orchestrator: BackgroundRemovalOrchestrator = Depends(get_orchestrator)):
    try:
        snapshot = orchestrator.quota.usage(orchestrator.service_name)
    except QuotaLookupError as exc:
        logger.exception("Failed to read quota usage: %s", exc)
        raise HTTPException(status_code=503, detail=user_message(exc)) from exc
    return UsageResponse(
        serviceName=snapshot.service_name,
        year=snapshot.year,
        month=snapshot.month,
        count=snapshot.count,
        limit=snapshot.limit,
        remaining=snapshot.remaining,
    )
