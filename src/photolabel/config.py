"""Environment-based configuration for PhotoLabel."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from photolabel.ml.dispatcher import ModelChoice


class Settings(BaseSettings):
    """Application settings loaded from PHOTOLABEL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PHOTOLABEL_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    default_model: ModelChoice = ModelChoice.MOBILENET_V2
    models_repo: str | None = None  # overrides each registry entry's repo
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    eviction_interval: float = Field(default=60.0, gt=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Post-processing
    classifier_top_k: int = Field(default=3, ge=1, le=1000)
    detector_min_score: float = Field(default=0.5, ge=0.0, le=1.0)
    detector_max_boxes: int = Field(default=20, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
