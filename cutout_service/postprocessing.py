"""Mask validation, alpha derivation and RGBA composition."""

from __future__ import annotations

from io import BytesIO
import logging

import numpy as np
from PIL import Image

from .errors import SegmentationError

logger = logging.getLogger(__name__)


def validate_mask(mask: np.ndarray, size: tuple[int, int]) -> np.ndarray:
    """Check a mask against its image size (width, height) and clip it to [0, 1]."""
    if mask is None:
        raise SegmentationError("Segmentation returned no mask")
    mask = np.asarray(mask, dtype=np.float32)
    if mask.size == 0:
        raise SegmentationError("Segmentation returned an empty mask")
    width, height = size
    if mask.shape != (height, width):
        raise SegmentationError(
            f"Mask shape {mask.shape} does not match image size {width}x{height}"
        )
    if not np.all(np.isfinite(mask)):
        raise SegmentationError("Segmentation mask contains non-finite values")
    return np.clip(mask, 0.0, 1.0)


def mask_to_alpha(mask: np.ndarray) -> np.ndarray:
    """
    Derive an 8-bit alpha channel from a mask.

    High mask confidence is treated as background: alpha = round((1 - m) * 255).
    """
    alpha = np.floor((1.0 - mask) * 255.0 + 0.5)
    return np.clip(alpha, 0, 255).astype(np.uint8)


def compose_rgba(rgb_image: Image.Image, alpha_u8: np.ndarray) -> Image.Image:
    rgb_np = np.array(rgb_image.convert("RGB")).astype(np.uint8)
    rgba = np.dstack((rgb_np, alpha_u8))
    return Image.fromarray(rgba)  # (H, W, 4) uint8 -> RGBA


def encode_png(image: Image.Image) -> bytes:
    buf = BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def cut_out(rgb_image: Image.Image, mask: np.ndarray) -> bytes:
    """Apply a segmentation mask to an RGB image and return RGBA PNG bytes."""
    mask = validate_mask(mask, rgb_image.size)
    alpha_u8 = mask_to_alpha(mask)
    logger.debug(
        "postprocess: transparent=%.2f%% opaque=%.2f%%",
        float(np.mean(alpha_u8 == 0)) * 100.0,
        float(np.mean(alpha_u8 == 255)) * 100.0,
    )
    return encode_png(compose_rgba(rgb_image, alpha_u8))
