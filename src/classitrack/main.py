"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import Request

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from classitrack import __version__
from classitrack.api.routes import router
from classitrack.config import Settings, get_settings
from classitrack.errors import DuplicateRecordError, LedgerCorruptError, ModelUnavailableError, StorageUnavailableError
from classitrack.ledger.analytics import AnalyticsEngine
from classitrack.ledger.store import DetectionLedger
from classitrack.ml.engine import InferenceEngine
from classitrack.ml.inference import InferencePool
from classitrack.ml.model_manager import OnnxModelLoader
from classitrack.ml.service import ClassificationService

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the long-lived engine, ledger, and pool and attach them to ``app.state``."""
    engine = InferenceEngine(OnnxModelLoader(settings))
    ledger = DetectionLedger(settings.ledger_path, skip_corrupt=settings.skip_corrupt_records)

    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.classifier = ClassificationService(engine, max_image_pixels=settings.max_image_pixels)
    app.state.ledger = ledger
    app.state.analytics = AnalyticsEngine(ledger)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ClassiTrack (device=%s, model=%s, ledger=%s)",
        settings.device,
        settings.model_path,
        settings.ledger_path,
    )

    init_state(app, settings)
    app.state.ledger.load()

    logger.info("ClassiTrack ready")
    yield

    logger.info("Shutting down ClassiTrack")
    app.state.classifier.engine.dispose()
    app.state.inference_pool.shutdown()
    logger.info("ClassiTrack shutdown complete")


async def _storage_unavailable(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Ledger storage error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage unavailable, retry later"},
        headers={"Retry-After": "5"},
    )


async def _ledger_corrupt(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Ledger corrupt on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


async def _model_unavailable(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Model unavailable"})


async def _duplicate_record(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ClassiTrack",
        description="On-device image classification with a prediction accuracy ledger",
        version=__version__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(StorageUnavailableError, _storage_unavailable)
    application.add_exception_handler(LedgerCorruptError, _ledger_corrupt)
    application.add_exception_handler(ModelUnavailableError, _model_unavailable)
    application.add_exception_handler(DuplicateRecordError, _duplicate_record)

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("classitrack.main:app", host=settings.host, port=settings.port)
