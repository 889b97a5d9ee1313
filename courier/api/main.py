"""
Courier Main Application
========================

FastAPI app exposing one ``DeliveryManager``.

The manager is started during lifespan startup (restoring any persisted
queue) and stopped on shutdown (flushing the snapshot so live requests are
delivered after the next start).
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from courier.core.config import Settings, get_settings
from courier.core.exceptions import CourierException
from courier.infra.runtime.manager import DeliveryManager
from courier.infra.telemetry import get_logger, setup_logging

from .routes import router

logger = get_logger(__name__)

async def courier_exception_handler(request: Request, exc: CourierException) -> JSONResponse:
    """Render any Courier error as its structured dict."""
    logger.warning(
        "api_request_failed",
        path=request.url.path,
        error_code=exc.error_code,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

def create_app(
    manager: DeliveryManager | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Build the app. Without an explicit ``manager`` one is wired from settings
    at startup.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(
            level=settings.LOG_LEVEL,
            json_output=settings.LOG_JSON,
            log_dir=settings.LOG_DIR,
        )
        app.state.manager = manager or DeliveryManager.from_settings(settings)
        logger.info(
            "courier_starting",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
        )
        await app.state.manager.start()

        yield  # application runs here

        logger.info("courier_shutting_down")
        await app.state.manager.stop()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Reliable, ordered, bounded-concurrency delivery of settings requests",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.add_exception_handler(CourierException, courier_exception_handler)
    app.include_router(router)
    return app
