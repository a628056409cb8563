"""Tests for settings and detection configuration."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from landmarkx.config import DetectionConfig, Settings, get_settings, resolve_detection_config
from landmarkx.errors import ConfigurationError


class TestResolveDetectionConfig:
    def test_none_gives_defaults(self) -> None:
        config = resolve_detection_config(None)
        assert config.max_detections == 10
        assert config.input_width == 128
        assert config.input_height == 128
        assert config.iou_threshold == 0.3
        assert config.score_threshold == 0.75

    def test_existing_config_returned_as_is(self) -> None:
        config = DetectionConfig(max_detections=3)
        assert resolve_detection_config(config) is config

    def test_mapping_merged_with_defaults(self) -> None:
        config = resolve_detection_config({"max_detections": 1, "iou_threshold": 0.5})
        assert config.max_detections == 1
        assert config.iou_threshold == 0.5
        assert config.score_threshold == 0.75

    def test_threshold_bounds_are_inclusive(self) -> None:
        config = resolve_detection_config({"iou_threshold": 0.0, "score_threshold": 1.0})
        assert config.iou_threshold == 0.0
        assert config.score_threshold == 1.0

    def test_zero_max_detections_allowed(self) -> None:
        assert resolve_detection_config({"max_detections": 0}).max_detections == 0

    @pytest.mark.parametrize(
        "config",
        [
            {"max_detections": -1},
            {"input_width": 0},
            {"input_height": -5},
            {"iou_threshold": 1.01},
            {"score_threshold": -0.01},
            {"score_threshold": float("nan")},
            {"iou_threshold": float("-inf")},
            {"max_detections": "many"},
            {"max_detections": True},
            {"input_width": 128.0},
            {"input_height": "128"},
            {"iou_threshold": False},
            {"max_faces": 3},
        ],
    )
    def test_invalid_values_rejected(self, config: dict[str, object]) -> None:
        with pytest.raises(ConfigurationError):
            resolve_detection_config(config)

    def test_thresholds_accept_ints(self) -> None:
        config = resolve_detection_config({"iou_threshold": 0, "score_threshold": 1})
        assert config.iou_threshold == 0.0
        assert config.score_threshold == 1.0

    def test_non_mapping_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="list"):
            resolve_detection_config([("max_detections", 1)])  # type: ignore[arg-type]

    def test_configuration_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            resolve_detection_config({"iou_threshold": 2})

    def test_config_is_immutable(self) -> None:
        config = DetectionConfig()
        with pytest.raises(ValidationError):
            config.max_detections = 5  # type: ignore[misc]


class TestSettings:
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = get_settings()
        assert settings.detection_model == "blazeface_front"
        assert settings.max_concurrent == 2
        assert settings.detection_config() == DetectionConfig()

    def test_env_overrides_detection_config(self) -> None:
        env = {"LANDMARKX_SCORE_THRESHOLD": "0.5", "LANDMARKX_MAX_DETECTIONS": "3"}
        with patch.dict(os.environ, env, clear=True):
            settings = get_settings()
        config = settings.detection_config()
        assert config.score_threshold == 0.5
        assert config.max_detections == 3

    def test_invalid_env_value_rejected(self) -> None:
        with patch.dict(os.environ, {"LANDMARKX_IOU_THRESHOLD": "3"}, clear=True), pytest.raises(ValidationError):
            Settings()

    def test_model_source_from_env(self) -> None:
        env = {"LANDMARKX_MODEL_REPO_ID": "acme/face-models", "LANDMARKX_MODEL_FILENAME": "front.onnx"}
        with patch.dict(os.environ, env, clear=True):
            settings = get_settings()
        assert settings.model_repo_id == "acme/face-models"
        assert settings.model_filename == "front.onnx"
        assert settings.model_path is None
