"""Environment-based settings and detection configuration for LandmarkX."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from landmarkx.errors import ConfigurationError


class DetectionConfig(BaseModel):
    """Parameters a pipeline is bound to at load time."""

    model_config = ConfigDict(frozen=True, extra="forbid", allow_inf_nan=False)

    max_detections: int = Field(default=10, ge=0, strict=True)
    input_width: int = Field(default=128, ge=1, strict=True)
    input_height: int = Field(default=128, ge=1, strict=True)
    iou_threshold: float = Field(default=0.3, ge=0.0, le=1.0, strict=True)
    score_threshold: float = Field(default=0.75, ge=0.0, le=1.0, strict=True)


def resolve_detection_config(config: DetectionConfig | Mapping[str, object] | None = None) -> DetectionConfig:
    """Fill in defaults and validate a caller-supplied configuration.

    Raises:
        ConfigurationError: If any field is unknown, mistyped, non-finite, or out of range.
    """
    if config is None:
        return DetectionConfig()
    if isinstance(config, DetectionConfig):
        return config
    if not isinstance(config, Mapping):
        raise ConfigurationError(f"Expected a mapping or DetectionConfig, got {type(config).__name__}")
    try:
        return DetectionConfig.model_validate(dict(config))
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


class Settings(BaseSettings):
    """Application settings loaded from LANDMARKX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LANDMARKX_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Model selection. The file comes from model_path if set, otherwise from
    # model_repo_id on the HuggingFace Hub.
    detection_model: str = "blazeface_front"
    model_path: str | None = None
    model_repo_id: str | None = None
    model_filename: str | None = None
    model_revision: str | None = None
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Detection defaults for the HTTP service
    max_detections: int = Field(default=10, ge=0)
    input_width: int = Field(default=128, ge=1)
    input_height: int = Field(default=128, ge=1)
    iou_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    score_threshold: float = Field(default=0.75, ge=0.0, le=1.0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    def detection_config(self) -> DetectionConfig:
        """Return the detection parameters configured through the environment."""
        return resolve_detection_config(
            {
                "max_detections": self.max_detections,
                "input_width": self.input_width,
                "input_height": self.input_height,
                "iou_threshold": self.iou_threshold,
                "score_threshold": self.score_threshold,
            }
        )


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
