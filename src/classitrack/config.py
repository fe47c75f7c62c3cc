"""Environment-based configuration for ClassiTrack."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CLASSITRACK_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLASSITRACK_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model artifact and labels
    model_path: str = "assets/model.onnx"
    labels_path: str = "assets/labels.txt"
    # Optional Hugging Face source, used only when model_path is missing
    model_repo_id: str | None = None
    model_filename: str = "model.onnx"
    models_dir: str = "models"
    default_input_size: int = Field(default=224, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Detection ledger
    ledger_path: str = "data/detection_records.json"
    skip_corrupt_records: bool = True


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
