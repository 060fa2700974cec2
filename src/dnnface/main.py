"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dnnface.api.routes import router
from dnnface.config import get_settings
from dnnface.ml.face_detector import FaceDetector
from dnnface.ml.inference import InferencePool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting dnnface (input=%dx%d, score_threshold=%s, nms_threshold=%s, top_k=%s, max_concurrent=%s)",
        settings.input_width,
        settings.input_height,
        settings.score_threshold,
        settings.nms_threshold,
        settings.top_k,
        settings.max_concurrent,
    )

    app.state.detector = FaceDetector.from_settings(settings)
    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    logger.info("dnnface ready")
    yield

    logger.info("Shutting down dnnface")
    inference_pool.shutdown()
    logger.info("dnnface shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="dnnface",
        description="Post-processing service for anchor-based face detector outputs",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("dnnface.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
