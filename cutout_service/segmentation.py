"""
Local background removal via semantic segmentation.

Used when the remote quota is exhausted or the remote call fails. There is no
further fallback: any failure here is terminal for the request.
"""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np
from PIL import Image

from .errors import SegmentationError
from .postprocessing import cut_out
from .preprocessing import NormalizedImage

logger = logging.getLogger(__name__)

Segmenter = Callable[[Image.Image], np.ndarray]


class LocalSegmentationFallback:
    def __init__(self, segmenter: Segmenter):
        self.segmenter = segmenter

    def remove_locally(self, normalized: NormalizedImage) -> bytes:
        """Segment the normalized image and return an RGBA PNG cut-out."""
        width, height = normalized.size
        logger.info("local: running segmentation on %dx%d image", width, height)
        try:
            mask = self.segmenter(normalized.image)
        except SegmentationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SegmentationError(f"Segmentation inference failed: {exc}") from exc
        return cut_out(normalized.image, mask)
