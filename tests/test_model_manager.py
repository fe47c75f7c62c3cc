"""Tests for the ONNX model loader."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from onnxruntime import ExecutionMode, GraphOptimizationLevel

from classitrack.config import Settings
from classitrack.ml.model_manager import OnnxModelLoader, execution_providers, load_labels, session_options

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(tmp_path: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "model_path": str(tmp_path / "model.onnx"),
        "labels_path": str(tmp_path / "labels.txt"),
        "models_dir": str(tmp_path / "models"),
        "model_repo_id": None,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "default_input_size": 224,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _fake_session(input_shape: list[object], output_shape: list[object]) -> MagicMock:
    session = MagicMock()
    model_input = MagicMock()
    model_input.name = "serving_input"
    model_input.shape = input_shape
    model_output = MagicMock()
    model_output.shape = output_shape
    session.get_inputs.return_value = [model_input]
    session.get_outputs.return_value = [model_output]
    return session


@pytest.fixture()
def artifacts(tmp_path: Path) -> Path:
    (tmp_path / "model.onnx").write_bytes(b"onnx")
    (tmp_path / "labels.txt").write_text("0 Baguette\n\n1 Croissant  \n   \n2 Sourdough\n", encoding="utf-8")
    return tmp_path


# ---------------------------------------------------------------------------
# Label file
# ---------------------------------------------------------------------------


class TestLoadLabels:
    def test_trims_and_skips_blank_lines(self, artifacts: Path) -> None:
        assert load_labels(artifacts / "labels.txt") == ("0 Baguette", "1 Croissant", "2 Sourdough")

    def test_windows_line_endings(self, tmp_path: Path) -> None:
        path = tmp_path / "labels.txt"
        path.write_bytes(b"Rye\r\nSpelt\r\n")
        assert load_labels(path) == ("Rye", "Spelt")

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_labels(tmp_path / "absent.txt")


# ---------------------------------------------------------------------------
# Artifact resolution
# ---------------------------------------------------------------------------


class TestResolveModelPath:
    @patch("classitrack.ml.model_manager.hf_hub_download")
    def test_local_file_skips_download(self, mock_download: MagicMock, artifacts: Path) -> None:
        loader = OnnxModelLoader(_make_settings(artifacts, model_repo_id="acme/bread"))
        assert loader.resolve_model_path() == artifacts / "model.onnx"
        mock_download.assert_not_called()

    def test_missing_file_without_repo_raises(self, tmp_path: Path) -> None:
        loader = OnnxModelLoader(_make_settings(tmp_path))
        with pytest.raises(FileNotFoundError, match="model.onnx"):
            loader.resolve_model_path()

    @patch("classitrack.ml.model_manager.hf_hub_download")
    def test_missing_file_downloaded_from_repo(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "models" / "bread.onnx")
        loader = OnnxModelLoader(_make_settings(tmp_path, model_repo_id="acme/bread", model_filename="bread.onnx"))

        path = loader.resolve_model_path()

        mock_download.assert_called_once_with(
            repo_id="acme/bread",
            filename="bread.onnx",
            local_dir=str(tmp_path / "models"),
        )
        assert path == tmp_path / "models" / "bread.onnx"


# ---------------------------------------------------------------------------
# Session loading
# ---------------------------------------------------------------------------


class TestLoad:
    @patch("classitrack.ml.model_manager.InferenceSession")
    def test_reads_geometry_from_model(self, mock_session_cls: MagicMock, artifacts: Path) -> None:
        mock_session_cls.return_value = _fake_session([1, 192, 160, 3], [1, 3])
        loaded = OnnxModelLoader(_make_settings(artifacts)).load()

        assert loaded.input_name == "serving_input"
        assert (loaded.input_height, loaded.input_width) == (192, 160)
        assert loaded.num_classes == 3
        assert loaded.labels == ("0 Baguette", "1 Croissant", "2 Sourdough")
        mock_session_cls.assert_called_once()
        assert mock_session_cls.call_args.args[0] == str(artifacts / "model.onnx")

    @patch("classitrack.ml.model_manager.InferenceSession")
    def test_symbolic_dims_fall_back(self, mock_session_cls: MagicMock, artifacts: Path) -> None:
        mock_session_cls.return_value = _fake_session(["batch", "height", "width", 3], ["batch", "classes"])
        loaded = OnnxModelLoader(_make_settings(artifacts, default_input_size=128)).load()

        assert (loaded.input_height, loaded.input_width) == (128, 128)
        assert loaded.num_classes == 3

    @patch("classitrack.ml.model_manager.InferenceSession")
    def test_missing_labels_propagates(self, mock_session_cls: MagicMock, artifacts: Path) -> None:
        (artifacts / "labels.txt").unlink()
        with pytest.raises(FileNotFoundError):
            OnnxModelLoader(_make_settings(artifacts)).load()
        mock_session_cls.assert_not_called()


# ---------------------------------------------------------------------------
# Execution providers
# ---------------------------------------------------------------------------


class TestProviders:
    def test_cpu_uses_only_cpu_provider(self, tmp_path: Path) -> None:
        assert execution_providers(_make_settings(tmp_path, device="cpu")) == ["CPUExecutionProvider"]

    def test_cuda_carries_memory_limit(self, tmp_path: Path) -> None:
        providers = execution_providers(_make_settings(tmp_path, device="cuda", gpu_mem_limit=1024))
        name, options = providers[0]  # type: ignore[misc]
        assert name == "CUDAExecutionProvider"
        assert options["gpu_mem_limit"] == 1024
        assert providers[1:] == ["CPUExecutionProvider"]

    def test_openvino_falls_back_to_cpu(self, tmp_path: Path) -> None:
        providers = execution_providers(_make_settings(tmp_path, device="openvino"))
        name, options = providers[0]  # type: ignore[misc]
        assert name == "OpenVINOExecutionProvider"
        assert options == {"device_type": "CPU"}
        assert providers[1:] == ["CPUExecutionProvider"]

    def test_session_threading_options(self, tmp_path: Path) -> None:
        options = session_options(_make_settings(tmp_path, intra_op_threads=2, inter_op_threads=3))
        assert options.intra_op_num_threads == 2
        assert options.inter_op_num_threads == 3
        assert options.execution_mode == ExecutionMode.ORT_SEQUENTIAL

    @pytest.mark.parametrize(
        ("device", "expected"),
        [
            ("cpu", GraphOptimizationLevel.ORT_ENABLE_ALL),
            ("openvino", GraphOptimizationLevel.ORT_DISABLE_ALL),
        ],
    )
    def test_graph_optimization_per_device(self, tmp_path: Path, device: str, expected: GraphOptimizationLevel) -> None:
        assert session_options(_make_settings(tmp_path, device=device)).graph_optimization_level == expected

    def test_loader_passes_providers_to_session(self, tmp_path: Path) -> None:
        loader = OnnxModelLoader(_make_settings(tmp_path, device="cuda"))
        with patch("classitrack.ml.model_manager.InferenceSession") as session_cls:
            loader.build_session(tmp_path / "model.onnx")
        _, kwargs = session_cls.call_args
        assert [p if isinstance(p, str) else p[0] for p in kwargs["providers"]] == [
            "CUDAExecutionProvider",
            "CPUExecutionProvider",
        ]
