import pytest

from cutout_service.errors import (
    CutoutError,
    ErrorKind,
    HardwareBackendUnavailable,
    ImageDecodeError,
    RemoteError,
    RemoteServiceError,
    SegmentationError,
    SourceRestrictedError,
    user_message,
)


def test_message_follows_kind_not_text():
    error = SegmentationError("webgpu CORS API error X-Api-Key")
    assert user_message(error) == user_message(SegmentationError("anything"))


@pytest.mark.parametrize(
    "error,fragment",
    [
        (HardwareBackendUnavailable("cuda missing"), "hardware"),
        (SourceRestrictedError("403"), "does not allow downloads"),
        (RemoteServiceError(500), "API error"),
        (ImageDecodeError("bad"), "could not be read"),
        (SegmentationError("t", kind=ErrorKind.INFERENCE_TIMEOUT), "too long"),
    ],
)
def test_user_messages_by_kind(error, fragment):
    assert fragment in user_message(error)


def test_kind_override_and_hierarchy():
    assert SourceRestrictedError("x").kind is ErrorKind.SOURCE_RESTRICTED
    assert isinstance(SourceRestrictedError("x"), ImageDecodeError)
    assert CutoutError("x", kind=ErrorKind.QUOTA_LOOKUP).kind is ErrorKind.QUOTA_LOOKUP
    assert RemoteServiceError(404, "nope").status == 404


def test_base_errors_do_not_claim_segmentation():
    assert CutoutError("x").kind is ErrorKind.INTERNAL
    assert RemoteError("x").kind is ErrorKind.REMOTE_UNAVAILABLE
    assert "went wrong" in user_message(CutoutError("x"))
