"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI

from landmarkx.api.routes import router
from landmarkx.config import get_settings
from landmarkx.ml.inference import InferencePool
from landmarkx.ml.pipeline import load

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release the pool on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting LandmarkX (model=%s, max_concurrent=%s)",
        settings.detection_model,
        settings.max_concurrent,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool
    try:
        app.state.pipeline = await load(settings.detection_config(), settings=settings, pool=inference_pool)
        logger.info("LandmarkX ready")
        yield
    finally:
        logger.info("Shutting down LandmarkX")
        inference_pool.shutdown()
        logger.info("LandmarkX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="LandmarkX",
        description="Face detection with facial landmarks in image pixel coordinates",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.include_router(router)
    return application


app = create_app()
