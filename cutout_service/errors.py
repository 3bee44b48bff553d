"""
Error taxonomy for the cutout pipeline.

Every error carries an `ErrorKind` so callers branch on the kind rather than
on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INTERNAL = "internal"
    IMAGE_DECODE = "image_decode"
    SOURCE_RESTRICTED = "source_restricted"
    QUOTA_LOOKUP = "quota_lookup"
    REMOTE_SERVICE = "remote_service"
    REMOTE_UNAVAILABLE = "remote_unavailable"
    HARDWARE_BACKEND_UNAVAILABLE = "hardware_backend_unavailable"
    SEGMENTATION = "segmentation"
    INFERENCE_TIMEOUT = "inference_timeout"


class CutoutError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ImageDecodeError(CutoutError):
    """Input could not be decoded or has a zero dimension."""

    kind = ErrorKind.IMAGE_DECODE


class SourceFetchError(ImageDecodeError):
    """Source image could not be downloaded."""


class SourceRestrictedError(SourceFetchError):
    """Source host refused to serve the image (401/403)."""

    kind = ErrorKind.SOURCE_RESTRICTED


class QuotaLookupError(CutoutError):
    kind = ErrorKind.QUOTA_LOOKUP


class RemoteError(CutoutError):
    """Base for failures on the metered remote path; never fatal to a request."""

    kind = ErrorKind.REMOTE_UNAVAILABLE


class RemoteServiceError(RemoteError):
    kind = ErrorKind.REMOTE_SERVICE

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"Remote service returned HTTP {status}")
        self.status = status
        self.body = body


class RemoteUnavailableError(RemoteError):
    kind = ErrorKind.REMOTE_UNAVAILABLE


class SegmentationError(CutoutError):
    """Local fallback failed; terminal for the request."""

    kind = ErrorKind.SEGMENTATION


class HardwareBackendUnavailable(SegmentationError):
    kind = ErrorKind.HARDWARE_BACKEND_UNAVAILABLE


_USER_MESSAGES = {
    ErrorKind.INTERNAL: "Something went wrong while processing the image. Please try again.",
    ErrorKind.IMAGE_DECODE: "The image could not be read. Please try a different image.",
    ErrorKind.SOURCE_RESTRICTED: (
        "The image URL does not allow downloads. Try uploading the image directly "
        "or use a different image source."
    ),
    ErrorKind.QUOTA_LOOKUP: "Usage data is temporarily unavailable.",
    ErrorKind.REMOTE_SERVICE: "Background removal API error. Please try again later or with a different image.",
    ErrorKind.REMOTE_UNAVAILABLE: "Background removal API is unreachable. Please try again later.",
    ErrorKind.HARDWARE_BACKEND_UNAVAILABLE: (
        "The configured inference hardware is not available on this server."
    ),
    ErrorKind.SEGMENTATION: "Failed to remove background. Please try a different image.",
    ErrorKind.INFERENCE_TIMEOUT: "Background removal took too long. Please try a smaller image.",
}


def user_message(error: CutoutError) -> str:
    """Return a user-facing message for an error, chosen by its kind."""
    return _USER_MESSAGES.get(error.kind, _USER_MESSAGES[ErrorKind.INTERNAL])
