"""Shared fixtures: a fake ONNX session/loader and record factories."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pytest

from classitrack.ledger.records import DetectionRecord
from classitrack.ledger.store import DetectionLedger
from classitrack.ml.engine import InferenceEngine
from classitrack.ml.model_manager import ModelArtifacts

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

RAW_LABELS = ("0 Baguette", "1 Croissant", "2 Sourdough")
DISPLAY_LABELS = ["Baguette", "Croissant", "Sourdough"]


class FakeSession:
    """Stands in for onnxruntime.InferenceSession."""

    def __init__(self, scores: Sequence[float]) -> None:
        self.scores = np.asarray(scores, dtype=np.float32)
        self.feeds: list[dict[str, np.ndarray]] = []

    def run(self, output_names: object, feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        self.feeds.append(feeds)
        return [self.scores.reshape(1, -1)]


class FakeLoader:
    """ModelLoader that hands out a FakeSession, or fails on demand."""

    def __init__(
        self,
        scores: Sequence[float] = (0.1, 0.7, 0.2),
        labels: Sequence[str] = RAW_LABELS,
        input_size: tuple[int, int] = (4, 4),
        error: Exception | None = None,
    ) -> None:
        self.session = FakeSession(scores)
        self.labels = tuple(labels)
        self.input_size = input_size
        self.error = error
        self.load_count = 0

    def load(self) -> ModelArtifacts:
        self.load_count += 1
        if self.error is not None:
            raise self.error
        return ModelArtifacts(
            session=self.session,  # type: ignore[arg-type]
            labels=self.labels,
            input_name="input",
            input_height=self.input_size[0],
            input_width=self.input_size[1],
            num_classes=self.session.scores.size,
        )


@pytest.fixture()
def fake_loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture()
def make_loader() -> type[FakeLoader]:
    return FakeLoader


@pytest.fixture()
def engine(fake_loader: FakeLoader) -> InferenceEngine:
    return InferenceEngine(fake_loader)


@pytest.fixture()
def ledger_path(tmp_path: Path) -> Path:
    return tmp_path / "ledger" / "records.json"


@pytest.fixture()
def ledger(ledger_path: Path) -> DetectionLedger:
    store = DetectionLedger(ledger_path)
    store.load()
    return store


@pytest.fixture()
def make_record() -> Callable[..., DetectionRecord]:
    """Factory for records; class names follow DISPLAY_LABELS."""

    def _make(
        gt: int = 0,
        pred: int = 0,
        *,
        confidence: float = 0.9,
        verified: bool = False,
        timestamp: datetime | None = None,
        gt_class: str | None = None,
        pred_class: str | None = None,
    ) -> DetectionRecord:
        scores = [0.0] * len(DISPLAY_LABELS)
        if 0 <= pred < len(scores):
            scores[pred] = confidence
        record = DetectionRecord.create(
            ground_truth_class=gt_class if gt_class is not None else (DISPLAY_LABELS[gt] if gt >= 0 else ""),
            ground_truth_index=gt,
            predicted_class=pred_class if pred_class is not None else DISPLAY_LABELS[pred],
            predicted_index=pred,
            confidence=confidence,
            scores=scores,
            timestamp=timestamp or datetime.now(UTC),
        )
        return record.with_verified() if verified else record

    return _make
