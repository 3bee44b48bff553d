"""
Model loading and inference for the local segmentation fallback.

The loader:
 - resolves the inference device from configuration,
 - loads a Segformer checkpoint from the HuggingFace hub on first use,
 - keeps one instance per segmenter, guarded by a lock,
 - returns the probability map of the first reported segment for an image.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Optional, Tuple

import numpy as np
import torch
import torch.nn.functional as F
from PIL import Image

from .errors import HardwareBackendUnavailable, SegmentationError

logger = logging.getLogger(__name__)


def _mps_available() -> bool:
    mps = getattr(torch.backends, "mps", None)
    return bool(mps is not None and mps.is_available())


def resolve_device(preference: str = "auto") -> torch.device:
    """
    Map a configured backend name to a torch device.

    `auto` prefers CUDA -> Apple MPS -> CPU. An explicit backend that is not
    present raises HardwareBackendUnavailable.
    """
    preference = (preference or "auto").lower()
    if preference == "auto":
        if torch.cuda.is_available():
            return torch.device("cuda")
        if _mps_available():
            return torch.device("mps")
        return torch.device("cpu")
    if preference == "cuda" and not torch.cuda.is_available():
        raise HardwareBackendUnavailable("CUDA was requested but is not available")
    if preference == "mps" and not _mps_available():
        raise HardwareBackendUnavailable("MPS was requested but is not available")
    if preference not in {"cuda", "mps", "cpu"}:
        raise HardwareBackendUnavailable(f"Unknown inference backend: {preference}")
    return torch.device(preference)


def _load_segformer(model_id: str, device: torch.device):
    # Imported lazily: transformers is heavy and only the fallback path needs it.
    from transformers import AutoImageProcessor, SegformerForSemanticSegmentation

    processor = AutoImageProcessor.from_pretrained(model_id)
    model = SegformerForSemanticSegmentation.from_pretrained(model_id)
    model.to(device)
    model.eval()
    return processor, model


class SegformerSegmenter:
    """Callable returning a (H, W) float32 mask in [0, 1] for an RGB image."""

    def __init__(self, model_id: str, device_preference: str = "auto"):
        self.model_id = model_id
        self.device_preference = device_preference
        self._loaded: Optional[Tuple[object, torch.nn.Module, torch.device]] = None
        self._lock = Lock()

    def _get_model(self):
        if self._loaded is not None:
            return self._loaded

        with self._lock:
            if self._loaded is None:
                device = resolve_device(self.device_preference)
                try:
                    logger.info("Loading segmentation model %s on %s", self.model_id, device)
                    processor, model = _load_segformer(self.model_id, device)
                except Exception as exc:  # noqa: BLE001
                    raise SegmentationError(
                        f"Could not load segmentation model {self.model_id}: {exc}"
                    ) from exc
                self._loaded = (processor, model, device)
                logger.info("Segmentation model loaded on device: %s", device)
        return self._loaded

    def __call__(self, image: Image.Image) -> np.ndarray:
        processor, model, device = self._get_model()
        width, height = image.size

        inputs = processor(images=image, return_tensors="pt")
        inputs = {k: v.to(device) for k, v in inputs.items()}
        with torch.no_grad():
            logits = model(**inputs).logits  # (B, C, h, w)
        logits = F.interpolate(logits, size=(height, width), mode="bilinear", align_corners=False)
        probs = logits.softmax(dim=1)[0]  # (C, H, W)

        labels = probs.argmax(dim=0)
        # First reported segment: segments are listed by class id, so the lowest id present.
        first = int(labels.unique().min())
        mask = probs[first].detach().cpu().numpy().astype(np.float32)
        logger.debug("segmentation: first class=%d mean confidence=%.4f", first, float(mask.mean()))
        return mask
