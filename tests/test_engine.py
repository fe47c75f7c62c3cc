"""Tests for the inference engine and its top-1 helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from classitrack.errors import ModelUnavailableError
from classitrack.ml.engine import UNKNOWN_LABEL, EngineState, InferenceEngine, clean_label, select_top

if TYPE_CHECKING:
    from conftest import FakeLoader


class TestSelectTop:
    def test_picks_maximum(self) -> None:
        assert select_top([0.1, 0.7, 0.2]) == (1, pytest.approx(0.7))

    def test_ties_resolve_to_lowest_index(self) -> None:
        assert select_top([0.2, 0.4, 0.4, 0.1, 0.4])[0] == 1

    def test_all_equal_picks_first(self) -> None:
        assert select_top([0.25, 0.25, 0.25, 0.25])[0] == 0

    def test_random_vectors_pick_first_maximum(self) -> None:
        rng = np.random.default_rng(42)
        for _ in range(50):
            scores = rng.integers(0, 4, size=8).astype(np.float32)
            index, value = select_top(scores)
            assert value == scores.max()
            assert index == int(np.flatnonzero(scores == scores.max())[0])

    def test_empty_vector_rejected(self) -> None:
        with pytest.raises(ValueError, match="empty"):
            select_top([])


class TestCleanLabel:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("0 Baguette", "Baguette"),
            ("12 Whole Wheat", "Whole Wheat"),
            ("Baguette", "Baguette"),
            ("Rye 2", "Rye 2"),
            ("2nd Loaf", "2nd Loaf"),
            ("7", "7"),
        ],
    )
    def test_strips_numeric_prefix_only(self, raw: str, expected: str) -> None:
        assert clean_label(raw) == expected


class TestEngineLifecycle:
    def test_starts_unloaded(self, engine: InferenceEngine) -> None:
        assert engine.state is EngineState.UNLOADED
        assert engine.is_ready is False
        assert engine.labels == ()

    def test_load_reaches_ready(self, engine: InferenceEngine) -> None:
        engine.load()
        assert engine.state is EngineState.READY
        assert engine.input_size == (4, 4)
        assert engine.num_classes == 3
        assert engine.display_labels == ["Baguette", "Croissant", "Sourdough"]

    def test_load_is_idempotent(self, engine: InferenceEngine, fake_loader: FakeLoader) -> None:
        engine.load()
        engine.load()
        assert fake_loader.load_count == 1

    def test_load_failure_reports_unavailable(self, make_loader: type[FakeLoader]) -> None:
        engine = InferenceEngine(make_loader(error=FileNotFoundError("assets/model.onnx")))
        with pytest.raises(ModelUnavailableError, match="model.onnx"):
            engine.load()
        assert engine.state is EngineState.UNLOADED

    def test_load_retried_after_failure(self, make_loader: type[FakeLoader]) -> None:
        loader = make_loader(error=OSError("disk"))
        engine = InferenceEngine(loader)
        with pytest.raises(ModelUnavailableError):
            engine.load()
        loader.error = None
        engine.load()
        assert engine.is_ready
        assert loader.load_count == 2

    def test_dispose_returns_to_unloaded(self, engine: InferenceEngine, fake_loader: FakeLoader) -> None:
        engine.load()
        engine.dispose()
        assert engine.state is EngineState.UNLOADED
        with pytest.raises(ModelUnavailableError):
            engine.run(np.zeros((1, 4, 4, 3), dtype=np.float32))
        engine.load()
        assert fake_loader.load_count == 2


class TestEngineRun:
    def test_run_before_load_rejected(self, engine: InferenceEngine) -> None:
        with pytest.raises(ModelUnavailableError):
            engine.run(np.zeros((1, 4, 4, 3), dtype=np.float32))

    def test_run_returns_score_vector(self, engine: InferenceEngine, fake_loader: FakeLoader) -> None:
        engine.load()
        tensor = np.zeros((1, 4, 4, 3), dtype=np.float32)
        scores = engine.run(tensor)
        np.testing.assert_allclose(scores, [0.1, 0.7, 0.2], rtol=1e-6)
        assert fake_loader.session.feeds[0]["input"] is tensor

    def test_score_count_mismatch_raises(self, make_loader: type[FakeLoader]) -> None:
        loader = make_loader()
        engine = InferenceEngine(loader)
        engine.load()
        loader.session.scores = np.array([0.5, 0.5], dtype=np.float32)
        with pytest.raises(ValueError, match="expected 3"):
            engine.run(np.zeros((1, 4, 4, 3), dtype=np.float32))


class TestLabelFor:
    def test_in_range(self, engine: InferenceEngine) -> None:
        engine.load()
        assert engine.label_for(2) == "2 Sourdough"

    def test_out_of_range_is_unknown(self, make_loader: type[FakeLoader]) -> None:
        engine = InferenceEngine(make_loader(scores=(0.1, 0.2, 0.3, 0.9), labels=("a", "b", "c")))
        engine.load()
        assert engine.label_for(3) == UNKNOWN_LABEL

    def test_unloaded_is_unknown(self, engine: InferenceEngine) -> None:
        assert engine.label_for(0) == UNKNOWN_LABEL
