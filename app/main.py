"""
FastAPI application factory.
"""

import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.router import api_router
from app.config import settings
from app.errors import (
    AllocationError,
    BatchNotFoundError,
    InvalidTransitionError,
    PipelineError,
    StateStoreError,
    ValidationError,
)
from app.models.database import close_db
from app.observability.logging import setup_logging
from app.pipeline.orchestrator import InvoicePipeline, build_pipeline

logger = structlog.get_logger(__name__)

# Startup print - visible in container logs immediately
print(f"[STARTUP] Batch Invoicing v{settings.APP_VERSION}", flush=True)
print(f"[STARTUP] PORT={os.environ.get('PORT', 'NOT SET')}", flush=True)
print(f"[STARTUP] DATABASE_URL={'SET' if settings.DATABASE_URL else 'NOT SET'}", flush=True)
print(f"[STARTUP] Python {sys.version}", flush=True)

ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    BatchNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    StateStoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
    AllocationError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    body = {"error_code": exc.error_code, "detail": exc.message}
    if isinstance(exc, ValidationError):
        body["violations"] = exc.violations
    if status_code >= 500:
        logger.error("request_failed", path=request.url.path, error_code=exc.error_code, error=exc.message)
    return JSONResponse(status_code=status_code, content=body)


def create_app(pipeline: Optional[InvoicePipeline] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: startup and shutdown."""
        # Startup
        setup_logging()

        # Sentry init if configured
        if settings.SENTRY_DSN:
            import sentry_sdk
            from sentry_sdk.integrations.fastapi import FastApiIntegration
            sentry_sdk.init(
                dsn=settings.SENTRY_DSN,
                integrations=[FastApiIntegration()],
                traces_sample_rate=0.1,
            )

        owns_pipeline = pipeline is None
        app.state.pipeline = pipeline or build_pipeline()
        logger.info("app_started", version=settings.APP_VERSION, degraded=app.state.pipeline.store.degraded)

        yield

        # Shutdown
        if owns_pipeline:
            await app.state.pipeline.close()
            await close_db()

    app = FastAPI(
        title="Batch Invoicing Pipeline",
        description="Batch invoice generation from purchase-order PDFs: analysis, folio allocation and provider stamping.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics endpoint
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    app.add_exception_handler(PipelineError, pipeline_error_handler)

    if pipeline is not None:
        app.state.pipeline = pipeline

    # Include all API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()
