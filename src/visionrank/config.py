"""Environment-based configuration for VisionRank."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from VISIONRANK_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VISIONRANK_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model source: local path, http(s) URL, or hf://<owner>/<repo>/<file>
    model_location: str = "models/classifier.onnx"
    labels_location: str = "models/labels.txt"
    models_dir: str = "models"
    preload_model: bool = False

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Canonical model input
    input_width: int = Field(default=224, ge=1)
    input_height: int = Field(default=224, ge=1)

    # Ranking
    top_k: int = Field(default=5, ge=1, le=100)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)
    pipeline_timeout: float = Field(default=30.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Web search (disabled unless both key and engine id are set)
    search_api_key: str | None = None
    search_engine_id: str | None = None
    search_url: str = "https://www.googleapis.com/customsearch/v1"
    search_timeout: float = Field(default=10.0, gt=0)
    search_num_results: int = Field(default=5, ge=1, le=10)

    @property
    def search_enabled(self) -> bool:
        return bool(self.search_api_key and self.search_engine_id)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
