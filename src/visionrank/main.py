"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from visionrank.api.routes import pipeline_error_handler, router
from visionrank.config import get_settings
from visionrank.errors import PipelineError
from visionrank.ml.inference import InferencePool
from visionrank.ml.model_manager import ClassifierModelManager
from visionrank.search import SearchClient

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
        "Starting VisionRank (device=%s, max_concurrent=%s, model=%s, input=%dx%d, search=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_location,
        settings.input_width,
        settings.input_height,
        "on" if settings.search_enabled else "off",
    )

    model_manager = ClassifierModelManager(settings)
    app.state.model_manager = model_manager
    app.state.inference_pool = InferencePool(settings)
    app.state.search_client = SearchClient(settings)

    if settings.preload_model:
        await asyncio.to_thread(model_manager.get_model)

    logger.info("VisionRank ready")
    yield

    logger.info("Shutting down VisionRank")
    app.state.inference_pool.shutdown()
    await app.state.search_client.aclose()
    model_manager.shutdown()
    logger.info("VisionRank shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="VisionRank",
        description="Image classification API returning top-K labels with optional web search",
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

    application.add_exception_handler(PipelineError, pipeline_error_handler)
    application.include_router(router)
    return application


app = create_app()
