"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from photolabel.api.routes import router
from photolabel.config import get_settings
from photolabel.ml.dispatcher import PhotoSession, PredictionBoard, build_dispatcher
from photolabel.ml.inference import InferenceError, InferencePool
from photolabel.ml.model_manager import ModelManager, OnnxModelManager
from photolabel.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


async def _evict_idle_models(manager: ModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            evicted = manager.unload_idle_models()
        except Exception:
            logger.exception("Idle model eviction failed")
            continue
        if evicted:
            logger.info("Evicted %d idle model(s): %s", len(evicted), ", ".join(evicted))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting PhotoLabel (device=%s, max_concurrent=%s, default_model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.default_model,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.preprocessor = ImagePreprocessor(settings.max_image_pixels)
    app.state.dispatcher = build_dispatcher(settings, model_manager)
    app.state.board = PredictionBoard()
    app.state.session = PhotoSession(settings.default_model)

    eviction = asyncio.create_task(_evict_idle_models(model_manager, settings.eviction_interval))

    logger.info("PhotoLabel ready")
    yield

    logger.info("Shutting down PhotoLabel")
    eviction.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await eviction
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("PhotoLabel shutdown complete")


async def _inference_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Inference failed for %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="PhotoLabel",
        description="Photo classification and object detection with pretrained models",
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

    application.add_exception_handler(InferenceError, _inference_error_handler)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("photolabel.main:app", host=settings.host, port=settings.port)
