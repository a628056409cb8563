"""API route definitions."""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, UploadFile, status

from landmarkx.api.schemas import (
    DetectedFace,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
)
from landmarkx.errors import InputShapeError
from landmarkx.ml.model_manager import MODEL_REGISTRY
from landmarkx.ml.preprocessing import decode_image
from landmarkx.ml.tensors import memory

if TYPE_CHECKING:
    from landmarkx.config import Settings
    from landmarkx.ml.inference import InferencePool
    from landmarkx.ml.pipeline import FaceLandmarkPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> FaceLandmarkPipeline:
    pipeline: FaceLandmarkPipeline | None = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Detection model is not loaded",
        )
    return pipeline


@router.post(
    "/detect-faces",
    response_model=list[DetectedFace],
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        HTTPStatus.REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        HTTPStatus.UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Detect faces and landmarks in an image",
)
async def detect_faces(request: Request, file: UploadFile) -> list[DetectedFace]:
    """Detect faces in an uploaded image and return boxes and landmarks in pixels."""
    settings = _get_settings(request)
    pipeline = _get_pipeline(request)

    image_bytes = await file.read()
    if len(image_bytes) > settings.max_file_size:
        raise HTTPException(
            status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    try:
        image = decode_image(image_bytes, max_pixels=settings.max_image_pixels)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        faces = await pipeline.estimate_face(image)
    except InputShapeError as exc:
        raise HTTPException(status_code=HTTPStatus.UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from exc

    logger.info("Detected %d face(s) in %s", len(faces), file.filename)
    return [DetectedFace.from_face(face) for face in faces]


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    loaded = getattr(request.app.state, "pipeline", None) is not None
    stats = pool.stats()
    return HealthResponse(
        status="ok",
        models_loaded=[settings.detection_model] if loaded else [],
        concurrent_requests=stats.active,
        queue_depth=stats.waiting,
        finished_runs=stats.finished,
        rejected_runs=stats.rejected,
        live_tensors=memory().num_tensors,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available detection models and which one is active."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                status="active" if spec.name == settings.detection_model else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
