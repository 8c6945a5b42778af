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

from cattlescan.analysis.mapper import DomainMapper
from cattlescan.api.routes import router
from cattlescan.config import get_settings
from cattlescan.ml.classifier_handle import ClassifierHandle, ClassifierState
from cattlescan.ml.inference import InferenceEngine, InferencePool
from cattlescan.ml.model_manager import OnnxModelManager
from cattlescan.ml.preprocessing import PillowPreprocessor
from cattlescan.pipeline import AnalysisPipeline
from cattlescan.storage.record_store import SqliteRecordStore

logger = logging.getLogger(__name__)


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
        "Starting CattleScan (device=%s, max_concurrent=%s, classifier=%s, database=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
        settings.database_path,
    )

    model_manager = OnnxModelManager(settings)
    handle = ClassifierHandle(model_manager.load_classifier, model_manager.backends())
    inference_pool = InferencePool(settings)
    record_store = SqliteRecordStore(settings.database_path)

    app.state.model_manager = model_manager
    app.state.classifier_handle = handle
    app.state.inference_pool = inference_pool
    app.state.preprocessor = PillowPreprocessor(settings)
    app.state.record_store = record_store
    app.state.pipeline = AnalysisPipeline(
        InferenceEngine(handle, inference_pool),
        DomainMapper(),
        record_store,
    )

    # The classifier loads lazily on the first analysis.
    logger.info("CattleScan ready")
    yield

    logger.info("Shutting down CattleScan")
    inference_pool.shutdown()
    if handle.state is not ClassifierState.INITIALIZING:
        handle.close()
    record_store.close()
    logger.info("CattleScan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="CattleScan",
        description="Livestock photo analysis: species, breed and body measurement estimates",
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
    uvicorn.run("cattlescan.main:app", host=settings.host, port=settings.port)
