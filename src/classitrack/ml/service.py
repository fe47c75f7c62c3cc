"""Classification service: the public face of the inference pipeline.

Both entry points run the same steps::

    still bytes -> decode ----\\
                               resize -> normalize -> infer -> top-1
    camera frame -> convert --/

A failure anywhere yields ``None`` for that call only; nothing raised
here escapes to a live classification loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from classitrack.errors import FrameConversionError, ImageDecodeError, ModelUnavailableError
from classitrack.ml.color import convert_frame
from classitrack.ml.engine import clean_label, select_top
from classitrack.ml.preprocessing import decode_image, to_input_tensor

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from classitrack.ml.color import CameraFrame
    from classitrack.ml.engine import InferenceEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """Top-1 prediction plus the full score vector."""

    top_label: str
    top_index: int
    top_confidence: float
    scores: tuple[float, ...]

    @property
    def display_label(self) -> str:
        return clean_label(self.top_label)


class ClassificationService:
    """Runs stills and camera frames through the classifier."""

    def __init__(self, engine: InferenceEngine, max_image_pixels: int | None = None) -> None:
        self._engine = engine
        self._max_image_pixels = max_image_pixels

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def model_unavailable(self) -> bool:
        """True when the last ``None`` result was caused by the model, not the input."""
        return not self._engine.is_ready

    def classify_still(self, image_bytes: bytes) -> ClassificationResult | None:
        """Decode an encoded still image and classify it."""
        if not self._ensure_loaded():
            return None
        try:
            raster = decode_image(image_bytes, self._max_image_pixels)
        except ImageDecodeError as exc:
            logger.warning("Still image rejected: %s", exc)
            return None
        return self._classify(raster)

    def classify_frame(self, frame: CameraFrame) -> ClassificationResult | None:
        """Convert a raw camera frame to RGB and classify it."""
        if not self._ensure_loaded():
            return None
        try:
            raster = convert_frame(frame)
        except FrameConversionError as exc:
            logger.warning("Frame rejected: %s", exc)
            return None
        except Exception:
            logger.exception("Unexpected error converting %s frame", frame.format)
            return None
        return self._classify(raster)

    # -- Internal -----------------------------------------------------------

    def _ensure_loaded(self) -> bool:
        try:
            self._engine.load()
        except ModelUnavailableError:
            return False
        return True

    def _classify(self, raster: NDArray[np.uint8]) -> ClassificationResult | None:
        try:
            height, width = self._engine.input_size
            tensor = to_input_tensor(raster, height, width)
            scores = self._engine.run(tensor)
            top_index, top_confidence = select_top(scores)
        except ModelUnavailableError as exc:
            logger.warning("Classification skipped: %s", exc)
            return None
        except Exception:
            logger.exception("Inference failed")
            return None

        return ClassificationResult(
            top_label=self._engine.label_for(top_index),
            top_index=top_index,
            top_confidence=top_confidence,
            scores=tuple(float(s) for s in scores),
        )
