"""Pydantic request/response schemas for the LandmarkX API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from landmarkx.ml.pipeline import Face


class DetectedFace(BaseModel):
    """A single detected face in image pixel coordinates."""

    top_left: tuple[float, float] = Field(description="Box corner (x, y) in pixels")
    bottom_right: tuple[float, float] = Field(description="Box corner (x, y) in pixels")
    landmarks: list[tuple[float, float]] = Field(description="Facial keypoints (x, y) in pixels")
    probability: float = Field(description="Detection confidence (0.0-1.0)")

    @classmethod
    def from_face(cls, face: Face) -> DetectedFace:
        return cls(
            top_left=face.top_left,
            bottom_right=face.bottom_right,
            landmarks=list(face.landmarks),
            probability=face.probability,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    finished_runs: int
    rejected_runs: int
    live_tensors: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
