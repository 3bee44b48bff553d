"""
High-level background removal pipeline.

`BackgroundRemovalOrchestrator.remove_background` is the single entry point
used by the HTTP API and the local CLI:
normalize -> quota check -> remote attempt (at most one) -> local fallback.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Optional

import requests

from . import config
from .errors import (
    ErrorKind,
    RemoteError,
    SegmentationError,
    SourceFetchError,
    SourceRestrictedError,
)
from .model_loader import SegformerSegmenter
from .preprocessing import ImageInput, NormalizedImage, encode_jpeg, normalize_image
from .quota import QuotaStore, QuotaTracker, SqlQuotaStore
from .remote import RemoteBackgroundRemover
from .segmentation import LocalSegmentationFallback

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    NORMALIZING = "normalizing"
    REMOTE_ATTEMPT = "remote_attempt"
    FALLBACK = "fallback"
    LOCAL_ATTEMPT = "local_attempt"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class ProcessedResult:
    content: bytes
    source: str  # "remote" | "local"
    media_type: str = "image/png"


class BackgroundRemovalOrchestrator:
    def __init__(
        self,
        quota: QuotaTracker,
        remote: RemoteBackgroundRemover,
        fallback: LocalSegmentationFallback,
        service_name: str = "remove.bg",
        max_dimension: int = 1024,
        jpeg_quality: float = 0.95,
        inference_timeout_seconds: Optional[float] = 120.0,
        inference_workers: int = 1,
    ):
        self.quota = quota
        self.remote = remote
        self.fallback = fallback
        self.service_name = service_name
        self.max_dimension = max_dimension
        self.jpeg_quality = jpeg_quality
        self.inference_timeout_seconds = inference_timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=inference_workers, thread_name_prefix="cutout-inference"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _transition(self, state: RequestState) -> None:
        logger.debug("pipeline: state=%s", state.value)

    async def remove_background(self, raw_image: ImageInput) -> ProcessedResult:
        """
        Remove the background of `raw_image` (bytes or PIL image).

        Raises:
            ImageDecodeError: input could not be decoded.
            SegmentationError: the local fallback failed (terminal).
        """
        normalized = await self._normalize(raw_image)

        eligible = await asyncio.to_thread(self.quota.check_eligible, self.service_name)
        if eligible:
            self._transition(RequestState.REMOTE_ATTEMPT)
            result = await self._try_remote(normalized)
            if result is not None:
                self._transition(RequestState.SUCCESS)
                return result
        else:
            logger.info("pipeline: monthly quota for %s exhausted, using local model", self.service_name)

        self._transition(RequestState.FALLBACK)
        return await self._run_local(normalized)

    async def remove_background_locally(self, raw_image: ImageInput) -> ProcessedResult:
        """Run only the local model; the quota store and remote service are not touched."""
        normalized = await self._normalize(raw_image)
        return await self._run_local(normalized)

    async def _normalize(self, raw_image: ImageInput) -> NormalizedImage:
        self._transition(RequestState.NORMALIZING)
        normalized = await asyncio.to_thread(normalize_image, raw_image, self.max_dimension)
        logger.info(
            "pipeline: image %s resized. Final dimensions: %dx%d",
            "was" if normalized.resized else "was not",
            *normalized.size,
        )
        return normalized

    async def _try_remote(self, normalized: NormalizedImage) -> Optional[ProcessedResult]:
        jpeg_bytes = await asyncio.to_thread(encode_jpeg, normalized.image, self.jpeg_quality)
        try:
            content = await asyncio.to_thread(self.remote.remove, jpeg_bytes)
        except RemoteError as exc:
            logger.warning("pipeline: remote removal failed (%s), falling back to local model: %s", exc.kind.value, exc)
            return None

        await asyncio.to_thread(self.quota.record_usage, self.service_name)
        logger.info("pipeline: processed image with remote service %s", self.service_name)
        return ProcessedResult(content=content, source="remote")

    async def _run_local(self, normalized: NormalizedImage) -> ProcessedResult:
        self._transition(RequestState.LOCAL_ATTEMPT)
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self.fallback.remove_locally, normalized)
        try:
            content = await asyncio.wait_for(future, timeout=self.inference_timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._transition(RequestState.FAILED)
            raise SegmentationError(
                f"Local inference exceeded {self.inference_timeout_seconds}s",
                kind=ErrorKind.INFERENCE_TIMEOUT,
            ) from exc
        except SegmentationError:
            self._transition(RequestState.FAILED)
            logger.exception("pipeline: local segmentation failed")
            raise

        self._transition(RequestState.SUCCESS)
        return ProcessedResult(content=content, source="local")

    async def remove_background_from_url(
        self, url: str, timeout_seconds: float = 30.0
    ) -> ProcessedResult:
        image_bytes = await asyncio.to_thread(download_image, url, timeout_seconds)
        return await self.remove_background(image_bytes)


def download_image(url: str, timeout_seconds: float = 30.0) -> bytes:
    try:
        resp = requests.get(url, timeout=(5, timeout_seconds))
    except requests.RequestException as exc:
        raise SourceFetchError(f"Could not download image: {exc}") from exc
    if resp.status_code in (401, 403):
        raise SourceRestrictedError(f"Image host refused access (HTTP {resp.status_code})")
    if not resp.ok:
        raise SourceFetchError(f"Could not download image (HTTP {resp.status_code})")
    return resp.content


def build_orchestrator(
    settings: Optional[config.Settings] = None, store: Optional[QuotaStore] = None
) -> BackgroundRemovalOrchestrator:
    """Wire the quota store, remote client and local model from settings."""
    settings = settings or config.get_settings()
    if store is None:
        store = SqlQuotaStore.from_url(settings.quota_database_url, create_tables=settings.quota_create_tables)
    return BackgroundRemovalOrchestrator(
        quota=QuotaTracker(store, monthly_limit=settings.monthly_api_limit),
        remote=RemoteBackgroundRemover(
            api_url=settings.remove_bg_api_url,
            api_key=settings.remove_bg_api_key,
            timeout_seconds=settings.remote_timeout_seconds,
        ),
        fallback=LocalSegmentationFallback(
            SegformerSegmenter(settings.segmentation_model_id, settings.local_inference_device)
        ),
        service_name=settings.remote_service_name,
        max_dimension=settings.max_image_dimension,
        jpeg_quality=settings.remote_jpeg_quality,
        inference_timeout_seconds=settings.local_inference_timeout_seconds,
        inference_workers=settings.local_inference_workers,
    )
