"""FastAPI application entry point.

Builds the app: middleware, exception handlers, the /api/v1 router, and
the health check. The lifespan resumes units a previous process left
unresolved and stops in-flight work on exit.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from omnigen.api.v1.router import router as v1_router
from omnigen.core.config import settings
from omnigen.core.database import dispose_engine
from omnigen.core.errors import APIError, ConfigurationError
from omnigen.core.logging_config import setup_logging
from omnigen.core.middleware import (
    REQUEST_ID_HEADER,
    RequestContextMiddleware,
    SecurityHeadersMiddleware,
)
from omnigen.core.rate_limiting import limiter, rate_limit_exceeded_handler
from omnigen.core.responses import ErrorDetail, ErrorResponse
from omnigen.services.container import get_services

logger = structlog.get_logger()


def _error(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(),
    )


def api_error_handler(_request: Request, exc: APIError) -> JSONResponse:
    """Render an APIError in the standard error envelope."""
    if isinstance(exc, ConfigurationError):
        logger.error("configuration_error", detail=exc.detail)
    return _error(
        exc.status_code,
        ErrorDetail(code=exc.code, message=exc.message, details=exc.details),
    )


def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Request body/query validation failures are 400 VALIDATION_ERROR."""
    return _error(
        400,
        ErrorDetail(
            code="VALIDATION_ERROR",
            message="Request validation failed",
            details=[
                {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                for e in exc.errors()
            ],
        ),
    )


def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 INTERNAL_ERROR; the traceback goes to the log only."""
    logger.exception("unhandled_exception", exc_info=exc, path=request.url.path)
    return _error(
        500,
        ErrorDetail(code="INTERNAL_ERROR", message="An unexpected error occurred"),
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    setup_logging()
    orchestrator = get_services().orchestrator
    recovered = await orchestrator.recover_interrupted()
    logger.info("startup_complete", recovered_units=recovered)
    try:
        yield
    finally:
        await orchestrator.shutdown()
        await dispose_engine()
        logger.info("shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Omnigen API",
        version="1.0.0",
        description="Multi-provider image, video, and chat generation with credit billing",
        lifespan=lifespan,
    )

    # Last added runs first: CORS answers preflights before anything else.
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", REQUEST_ID_HEADER],
        expose_headers=["X-Generation-Id", REQUEST_ID_HEADER],
    )

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    app.state.limiter = limiter

    app.include_router(v1_router, prefix="/api/v1")

    @app.get("/health")
    def health_check() -> dict:
        """Liveness check."""
        return {"status": "healthy"}

    return app


app = create_app()
