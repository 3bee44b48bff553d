from __future__ import annotations

from datetime import datetime, timezone
from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from cutout_service.errors import RemoteServiceError
from cutout_service.pipeline import BackgroundRemovalOrchestrator
from cutout_service.quota import InMemoryQuotaStore, QuotaTracker
from cutout_service.segmentation import LocalSegmentationFallback

SERVICE = "remove.bg"
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
REMOTE_PNG = b"\x89PNG\r\n\x1a\nremote-cutout"


def make_image_bytes(width: int, height: int, fmt: str = "PNG", color=(200, 40, 40)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


class FakeRemote:
    """Stands in for RemoteBackgroundRemover; records every upload."""

    def __init__(self, result: bytes = REMOTE_PNG, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls: list[bytes] = []

    def remove(self, jpeg_bytes: bytes) -> bytes:
        self.calls.append(jpeg_bytes)
        if self.error is not None:
            raise self.error
        return self.result


class FakeSegmenter:
    """Returns a constant-confidence mask matching the image size."""

    def __init__(self, value: float = 0.25):
        self.value = value
        self.calls = 0

    def __call__(self, image: Image.Image) -> np.ndarray:
        self.calls += 1
        width, height = image.size
        return np.full((height, width), self.value, dtype=np.float32)


class CountingTracker(QuotaTracker):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.record_calls = 0

    def record_usage(self, service_name: str) -> None:
        self.record_calls += 1
        super().record_usage(service_name)


def store_with_count(count: int) -> InMemoryQuotaStore:
    return InMemoryQuotaStore({(SERVICE, NOW.year, NOW.month): count})


@pytest.fixture
def build():
    """Factory building an orchestrator around fakes; closes them afterwards."""
    created: list[BackgroundRemovalOrchestrator] = []

    def _build(
        count: int = 0,
        remote: FakeRemote | None = None,
        segmenter=None,
        **kwargs,
    ) -> BackgroundRemovalOrchestrator:
        store = store_with_count(count)
        tracker = CountingTracker(store, monthly_limit=49, clock=lambda: NOW)
        orchestrator = BackgroundRemovalOrchestrator(
            quota=tracker,
            remote=remote or FakeRemote(),
            fallback=LocalSegmentationFallback(segmenter or FakeSegmenter()),
            service_name=SERVICE,
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in created:
        orchestrator.close()


@pytest.fixture
def server_error():
    return RemoteServiceError(500, "internal error")
