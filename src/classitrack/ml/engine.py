"""Inference engine: owns the loaded classifier and its labels.

Lifecycle: ``unloaded -> loading -> ready``. ``dispose()`` drops the
session and returns to ``unloaded``; a later ``load()`` starts over.
"""

from __future__ import annotations

import logging
import re
import threading
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from classitrack.errors import ModelUnavailableError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from classitrack.ml.model_manager import ModelArtifacts, ModelLoader

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"

_INDEX_TOKEN = re.compile(r"[+-]?\d+")


class EngineState(StrEnum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


def select_top(scores: Sequence[float] | NDArray[np.float32]) -> tuple[int, float]:
    """Return ``(index, score)`` of the highest score.

    Ties resolve to the lowest index: only a strictly greater score
    replaces the current best.
    """
    values = [float(s) for s in scores]
    if not values:
        raise ValueError("Cannot select top-1 from an empty score vector")
    top_index, top_score = 0, values[0]
    for index in range(1, len(values)):
        if values[index] > top_score:
            top_index, top_score = index, values[index]
    return top_index, top_score


def clean_label(label: str) -> str:
    """Strip a leading numeric index token, e.g. ``"3 Sourdough"`` -> ``"Sourdough"``."""
    head, sep, rest = label.partition(" ")
    if sep and _INDEX_TOKEN.fullmatch(head):
        return rest
    return label


class InferenceEngine:
    """Loads the classifier at most once and runs it on prepared tensors."""

    def __init__(self, loader: ModelLoader) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._state = EngineState.UNLOADED
        self._artifacts: ModelArtifacts | None = None

    # -- State --------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is EngineState.READY

    @property
    def labels(self) -> tuple[str, ...]:
        """Raw labels in model output order; empty until loaded."""
        artifacts = self._artifacts
        return artifacts.labels if artifacts is not None else ()

    @property
    def display_labels(self) -> list[str]:
        return [clean_label(label) for label in self.labels]

    @property
    def input_size(self) -> tuple[int, int]:
        """Model input ``(height, width)``."""
        artifacts = self._require_ready()
        return artifacts.input_height, artifacts.input_width

    @property
    def num_classes(self) -> int:
        return self._require_ready().num_classes

    # -- Lifecycle ----------------------------------------------------------

    def load(self) -> None:
        """Load the model and labels. No-op when already ready.

        Raises:
            ModelUnavailableError: If the artifact or label file cannot be loaded.
        """
        with self._lock:
            if self._state is EngineState.READY:
                return
            self._state = EngineState.LOADING
            try:
                artifacts = self._loader.load()
            except Exception as exc:
                self._state = EngineState.UNLOADED
                logger.error("Model load failed: %s", exc)
                raise ModelUnavailableError(f"Model unavailable: {exc}") from exc
            self._artifacts = artifacts
            self._state = EngineState.READY
            logger.info("Inference engine ready (%d labels)", len(artifacts.labels))

    def dispose(self) -> None:
        """Release the session. Inference is rejected until the next load()."""
        with self._lock:
            self._artifacts = None
            self._state = EngineState.UNLOADED
            logger.info("Inference engine disposed")

    # -- Inference ----------------------------------------------------------

    def run(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the classifier on a ``[1, H, W, 3]`` tensor and return per-class scores.

        Raises:
            ModelUnavailableError: If called before a successful load().
        """
        artifacts = self._require_ready()
        outputs = artifacts.session.run(None, {artifacts.input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size != artifacts.num_classes:
            raise ValueError(f"Model returned {scores.size} scores, expected {artifacts.num_classes}")
        return scores

    def label_for(self, index: int) -> str:
        """Return the label at ``index``, or ``"Unknown"`` when out of range."""
        labels = self.labels
        return labels[index] if 0 <= index < len(labels) else UNKNOWN_LABEL

    # -- Internal -----------------------------------------------------------

    def _require_ready(self) -> ModelArtifacts:
        artifacts = self._artifacts
        if self._state is not EngineState.READY or artifacts is None:
            raise ModelUnavailableError("Model is not loaded")
        return artifacts
