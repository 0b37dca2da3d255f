"""Environment-based configuration for faceapix."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACEAPIX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEAPIX_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Network selection
    face_detector: Literal["ssd_mobilenetv1", "tiny_yolov2", "mtcnn"] = "ssd_mobilenetv1"
    quantized_weights: bool = False
    tiny_yolov2_input_size: int = Field(default=416, ge=32, multiple_of=32)
    tiny_yolov2_separable_conv: bool = False

    # Weight files
    models_dir: str = "models"
    weights_repo_id: str = "faceapix/face-api-weights"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
