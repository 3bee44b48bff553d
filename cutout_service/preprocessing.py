"""
Image decoding and normalization.

Inputs are decoded to RGB and bounded by the longest edge so both the remote
upload and local inference work on a predictable working resolution.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import math
from typing import Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ImageDecodeError

ImageInput = Union[bytes, bytearray, Image.Image]


@dataclass
class NormalizedImage:
    image: Image.Image  # RGB
    resized: bool
    original_size: Tuple[int, int]  # (width, height)

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_resize_dims(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Preserve aspect ratio while constraining the longest edge."""
    if max(width, height) <= max_dimension:
        return width, height
    if width > height:
        return max_dimension, max(1, _round_half_up(height * max_dimension / width))
    return max(1, _round_half_up(width * max_dimension / height)), max_dimension


def decode_image(data: ImageInput) -> Image.Image:
    """Decode bytes (or accept a PIL image) into an RGB image."""
    if isinstance(data, Image.Image):
        image = data
    else:
        if not data:
            raise ImageDecodeError("Empty image payload")
        try:
            image = Image.open(BytesIO(data))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise ImageDecodeError("Invalid image data") from exc
        image = ImageOps.exif_transpose(image)

    width, height = image.size
    if width <= 0 or height <= 0:
        raise ImageDecodeError(f"Image has zero dimension: {width}x{height}")
    return image.convert("RGB") if image.mode != "RGB" else image


def normalize_image(data: ImageInput, max_dimension: int) -> NormalizedImage:
    """
    Decode an image and bound its longest edge to `max_dimension`.

    Images already within the bound pass through untouched.
    """
    image = decode_image(data)
    orig_w, orig_h = image.size
    new_w, new_h = compute_resize_dims(orig_w, orig_h, max_dimension)

    if (new_w, new_h) == (orig_w, orig_h):
        return NormalizedImage(image=image, resized=False, original_size=(orig_w, orig_h))

    resized = image.resize((new_w, new_h), Image.BILINEAR)
    return NormalizedImage(image=resized, resized=True, original_size=(orig_w, orig_h))


def encode_jpeg(image: Image.Image, quality: float) -> bytes:
    """Encode an RGB image as JPEG; `quality` is a 0..1 fraction."""
    pil_quality = min(max(_round_half_up(quality * 100), 1), 95)
    buf = BytesIO()
    image.convert("RGB").save(buf, format="JPEG", quality=pil_quality)
    return buf.getvalue()
