"""Model artifact loading: ONNX session, label list, and input geometry.

The classifier ships as a single ONNX file next to a newline-delimited
label file. When the model file is missing locally and a Hugging Face
repo is configured, it is downloaded once into ``models_dir``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from classitrack.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelLoader(Protocol):
    """Protocol for loading the classifier and its labels."""

    def load(self) -> ModelArtifacts:
        """Load the model artifact and label file.

        Raises:
            Exception: Any failure; the engine reports it as model unavailable.
        """
        ...


@dataclass(frozen=True)
class ModelArtifacts:
    """Everything the inference engine needs from a loaded model."""

    session: InferenceSession
    labels: tuple[str, ...]
    input_name: str
    input_height: int
    input_width: int
    num_classes: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def load_labels(path: Path) -> tuple[str, ...]:
    """Read a UTF-8 label file: one class per line, blank lines skipped."""
    text = path.read_text(encoding="utf-8")
    return tuple(line.strip() for line in text.splitlines() if line.strip())


def _static_dim(value: object, fallback: int) -> int:
    # Symbolic dimensions come back as strings or None.
    return value if isinstance(value, int) and value > 0 else fallback


Provider = str | tuple[str, dict[str, object]]


def execution_providers(settings: Settings) -> list[Provider]:
    """Provider chain for the configured device, always ending with the CPU fallback."""
    accelerated: dict[str, Provider] = {
        "cuda": (
            "CUDAExecutionProvider",
            {
                "device_id": 0,
                "gpu_mem_limit": settings.gpu_mem_limit,
                "arena_extend_strategy": "kSameAsRequested",
            },
        ),
        "openvino": ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
    }
    preferred = accelerated.get(settings.device)
    return [preferred, "CPUExecutionProvider"] if preferred is not None else ["CPUExecutionProvider"]


def session_options(settings: Settings) -> SessionOptions:
    """Session options for a single sequential classifier graph."""
    options = SessionOptions()
    options.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    options.intra_op_num_threads = settings.intra_op_threads
    options.inter_op_num_threads = settings.inter_op_threads
    options.enable_mem_pattern = True
    options.enable_mem_reuse = True
    # OpenVINO optimizes the graph itself.
    if settings.device == "openvino":
        options.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return options


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelLoader:
    """Resolves, downloads if needed, and opens the bundled ONNX classifier."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._model_path = Path(settings.model_path)
        self._labels_path = Path(settings.labels_path)
        self._models_dir = Path(settings.models_dir)

        self._providers = execution_providers(settings)
        self._session_options = session_options(settings)

    # -- Public API ---------------------------------------------------------

    def resolve_model_path(self) -> Path:
        """Return the local model file, downloading it from HuggingFace if configured."""
        if self._model_path.exists():
            return self._model_path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise FileNotFoundError(f"Model artifact not found: {self._model_path}")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=self._settings.model_filename,
                local_dir=str(self._models_dir),
            )
        )
        self._model_path = downloaded
        logger.info("Downloaded %s from %s to %s", self._settings.model_filename, repo_id, downloaded)
        return downloaded

    def build_session(self, model_path: Path) -> InferenceSession:
        """Create an InferenceSession with the configured providers and threading."""
        return InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

    def load(self) -> ModelArtifacts:
        """Open an InferenceSession and read the label file."""
        model_path = self.resolve_model_path()
        labels = load_labels(self._labels_path)
        session = self.build_session(model_path)

        model_input = session.get_inputs()[0]
        model_output = session.get_outputs()[0]
        default_size = self._settings.default_input_size
        # NHWC: [batch, height, width, channels]
        input_shape = list(model_input.shape)
        input_height = _static_dim(input_shape[1] if len(input_shape) > 1 else None, default_size)
        input_width = _static_dim(input_shape[2] if len(input_shape) > 2 else None, default_size)
        num_classes = _static_dim(model_output.shape[-1] if model_output.shape else None, len(labels))

        if num_classes != len(labels):
            logger.warning(
                "Model declares %d classes but %s lists %d labels",
                num_classes,
                self._labels_path,
                len(labels),
            )

        logger.info(
            "Loaded %s (input=%dx%d, classes=%d, providers=%s)",
            model_path,
            input_height,
            input_width,
            num_classes,
            self._providers,
        )
        return ModelArtifacts(
            session=session,
            labels=labels,
            input_name=model_input.name,
            input_height=input_height,
            input_width=input_width,
            num_classes=num_classes,
        )
