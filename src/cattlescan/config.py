"""Environment-based configuration for CattleScan."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CATTLESCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CATTLESCAN_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # ML device ("auto" tries every installed accelerator, then CPU)
    device: Literal["auto", "cpu", "cuda", "openvino"] = "auto"

    # Model selection
    classifier_model: str = "resnet_50"
    models_dir: str = "models"
    top_k: int = Field(default=5, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float | None = Field(default=None, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Record store
    database_path: str = "cattlescan.db"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
