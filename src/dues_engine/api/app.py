"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from dues_engine.api.routes import billing_router, health_router, payments_router, webhooks_router
from dues_engine.config import configure_logging, get_settings
from dues_engine.database import init_db
from dues_engine.errors import (
    ConflictError,
    DuesEngineError,
    InvalidSignatureError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    configure_logging(get_settings().log_level)
    init_db()
    yield


def _error_status(exc: DuesEngineError) -> int:
    # Order matters: InvalidSignatureError is also a ValidationError
    if isinstance(exc, InvalidSignatureError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Dues Engine API",
        description="Membership dues billing and settlement",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Exception handlers
    @app.exception_handler(DuesEngineError)
    async def dues_engine_exception_handler(
        request: Request, exc: DuesEngineError
    ) -> JSONResponse:
        """Render domain errors as {detail, code}."""
        status_code = _error_status(exc)
        if status_code >= 500:
            logger.error("Request failed", extra={"path": request.url.path, "code": exc.code})
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "code": exc.code},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error", extra={"path": request.url.path})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(billing_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
