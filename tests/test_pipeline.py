from io import BytesIO
import time

import pytest
import requests
from PIL import Image

from cutout_service import model_loader, pipeline
from cutout_service.config import Settings
from cutout_service.errors import (
    ErrorKind,
    ImageDecodeError,
    RemoteUnavailableError,
    SegmentationError,
    SourceFetchError,
    SourceRestrictedError,
)
from cutout_service.quota import InMemoryQuotaStore

from conftest import NOW, REMOTE_PNG, SERVICE, FakeRemote, FakeSegmenter, make_image_bytes


def _count(orchestrator):
    return orchestrator.quota.store.get_usage(SERVICE, NOW.month, NOW.year)


@pytest.mark.asyncio
async def test_remote_success_records_usage_once(build):
    remote = FakeRemote()
    segmenter = FakeSegmenter()
    orchestrator = build(count=0, remote=remote, segmenter=segmenter)

    result = await orchestrator.remove_background(make_image_bytes(64, 32))

    assert result.content == REMOTE_PNG
    assert result.source == "remote"
    assert len(remote.calls) == 1
    assert Image.open(BytesIO(remote.calls[0])).format == "JPEG"
    assert orchestrator.quota.record_calls == 1
    assert _count(orchestrator) == 1
    assert segmenter.calls == 0


@pytest.mark.asyncio
async def test_exhausted_quota_goes_straight_to_local(build):
    remote = FakeRemote()
    orchestrator = build(count=49, remote=remote)

    result = await orchestrator.remove_background(make_image_bytes(64, 32))

    assert result.source == "local"
    assert remote.calls == []
    assert orchestrator.quota.record_calls == 0
    assert _count(orchestrator) == 49


@pytest.mark.asyncio
async def test_remote_server_error_falls_back_without_counting(build, server_error):
    remote = FakeRemote(error=server_error)
    orchestrator = build(count=10, remote=remote)

    result = await orchestrator.remove_background(make_image_bytes(64, 32))

    assert result.source == "local"
    assert result.media_type == "image/png"
    assert len(remote.calls) == 1
    assert orchestrator.quota.record_calls == 0
    assert _count(orchestrator) == 10
    assert Image.open(BytesIO(result.content)).mode == "RGBA"


@pytest.mark.asyncio
async def test_remote_unavailable_falls_back(build):
    orchestrator = build(remote=FakeRemote(error=RemoteUnavailableError("timeout")))
    result = await orchestrator.remove_background(make_image_bytes(16, 16))
    assert result.source == "local"
    assert orchestrator.quota.record_calls == 0


@pytest.mark.asyncio
async def test_large_input_is_normalized_before_upload(build):
    remote = FakeRemote()
    orchestrator = build(remote=remote)

    await orchestrator.remove_background(make_image_bytes(2000, 1000, fmt="JPEG"))

    assert Image.open(BytesIO(remote.calls[0])).size == (1024, 512)


@pytest.mark.asyncio
async def test_local_output_matches_normalized_size(build):
    orchestrator = build(count=49)
    result = await orchestrator.remove_background(make_image_bytes(2000, 1000))
    assert Image.open(BytesIO(result.content)).size == (1024, 512)


@pytest.mark.asyncio
async def test_decode_error_propagates_before_any_call(build):
    remote = FakeRemote()
    segmenter = FakeSegmenter()
    orchestrator = build(remote=remote, segmenter=segmenter)

    with pytest.raises(ImageDecodeError):
        await orchestrator.remove_background(b"garbage")
    assert remote.calls == []
    assert segmenter.calls == 0


@pytest.mark.asyncio
async def test_model_init_failure_is_terminal(build, monkeypatch):
    def fail_load(model_id, device):
        raise OSError("cannot download weights")

    monkeypatch.setattr(model_loader, "_load_segformer", fail_load)
    segmenter = model_loader.SegformerSegmenter("some/model", "cpu")
    orchestrator = build(count=49, segmenter=segmenter)

    with pytest.raises(SegmentationError) as info:
        await orchestrator.remove_background(make_image_bytes(16, 16))
    assert info.value.kind is ErrorKind.SEGMENTATION


@pytest.mark.asyncio
async def test_slow_inference_times_out(build):
    class SlowSegmenter(FakeSegmenter):
        def __call__(self, image):
            time.sleep(0.5)
            return super().__call__(image)

    orchestrator = build(count=49, segmenter=SlowSegmenter(), inference_timeout_seconds=0.05)
    with pytest.raises(SegmentationError) as info:
        await orchestrator.remove_background(make_image_bytes(16, 16))
    assert info.value.kind is ErrorKind.INFERENCE_TIMEOUT


@pytest.mark.asyncio
async def test_remove_background_from_url(build, monkeypatch):
    payload = make_image_bytes(20, 20)
    seen = {}

    def fake_download(url, timeout_seconds):
        seen["url"] = url
        return payload

    monkeypatch.setattr(pipeline, "download_image", fake_download)
    orchestrator = build()
    result = await orchestrator.remove_background_from_url("https://example.com/a.png")

    assert seen["url"] == "https://example.com/a.png"
    assert result.source == "remote"


class _Resp:
    def __init__(self, status_code, content=b""):
        self.status_code = status_code
        self.content = content
        self.ok = 200 <= status_code < 300


def test_download_image_maps_forbidden_to_restricted(monkeypatch):
    monkeypatch.setattr(pipeline.requests, "get", lambda url, timeout: _Resp(403))
    with pytest.raises(SourceRestrictedError) as info:
        pipeline.download_image("https://example.com/a.png")
    assert info.value.kind is ErrorKind.SOURCE_RESTRICTED


def test_download_image_wraps_transport_errors(monkeypatch):
    def boom(url, timeout):
        raise requests.ConnectionError("dns failure")

    monkeypatch.setattr(pipeline.requests, "get", boom)
    with pytest.raises(SourceFetchError):
        pipeline.download_image("https://example.com/a.png")


def test_download_image_returns_body(monkeypatch):
    monkeypatch.setattr(pipeline.requests, "get", lambda url, timeout: _Resp(200, b"img"))
    assert pipeline.download_image("https://example.com/a.png") == b"img"


@pytest.mark.asyncio
async def test_local_only_skips_quota_and_remote(build, monkeypatch):
    remote = FakeRemote()
    segmenter = FakeSegmenter()
    orchestrator = build(count=0, remote=remote, segmenter=segmenter)

    def no_lookup(service_name):
        raise AssertionError("quota store must not be consulted")

    monkeypatch.setattr(orchestrator.quota, "check_eligible", no_lookup)
    result = await orchestrator.remove_background_locally(make_image_bytes(2000, 1000))

    assert result.source == "local"
    assert Image.open(BytesIO(result.content)).size == (1024, 512)
    assert remote.calls == []
    assert segmenter.calls == 1
    assert orchestrator.quota.record_calls == 0
    assert _count(orchestrator) == 0


def test_build_orchestrator_uses_injected_store(monkeypatch):
    def no_sql(*args, **kwargs):
        raise AssertionError("SQL store must not be created")

    monkeypatch.setattr(pipeline.SqlQuotaStore, "from_url", no_sql)
    store = InMemoryQuotaStore()
    orchestrator = pipeline.build_orchestrator(Settings(_env_file=None), store=store)
    try:
        assert orchestrator.quota.store is store
    finally:
        orchestrator.close()
