"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vidsqueeze.core.config import Settings, settings as default_settings
from vidsqueeze.core.logging import log_warning, setup_logging
from vidsqueeze.core.metrics import set_app_info
from vidsqueeze.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from vidsqueeze.core.rate_limit import SlidingWindowLimiter
from vidsqueeze.core.security import require_basic_auth
from vidsqueeze.core.tracing import setup_tracing, shutdown_tracing
from vidsqueeze.modules.transcoding import delivery_router, transcoding_router
from vidsqueeze.modules.transcoding.ffmpeg import FFmpegTranscoder
from vidsqueeze.modules.transcoding.service import TranscodingService

logger = logging.getLogger(__name__)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render every HTTP error as ``{"error": message}``."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request"},
    )


def create_app(
    settings: Optional[Settings] = None,
    transcoder: Optional[FFmpegTranscoder] = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Settings to use, the environment-loaded ones by default
        transcoder: ffmpeg wrapper override
    """
    settings = settings or default_settings
    environment = "development" if settings.DEBUG else "production"

    setup_logging(
        level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        include_stack_trace=True,
    )
    setup_tracing(
        service_name=settings.PROJECT_NAME,
        service_version=settings.VERSION,
        environment=environment,
        enable_console_export=settings.TRACING_CONSOLE_EXPORT,
    )
    set_app_info(version=settings.VERSION, environment=environment)

    if settings.credentials_are_default:
        log_warning(logger, "LOGIN and PASSWORD are not set, using default credentials")

    service = TranscodingService(settings, transcoder=transcoder)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.shutdown()
            shutdown_tracing()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Upload a video, pick a target size in MB, download a two-pass encode that fits it.",
        lifespan=lifespan,
        dependencies=[Depends(require_basic_auth)],
        docs_url="/api/docs" if settings.DEBUG else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if settings.DEBUG else None,
    )

    app.state.settings = settings
    app.state.transcoding_service = service
    app.state.transcode_limiter = SlidingWindowLimiter(
        settings.RATE_LIMIT_MAX_REQUESTS,
        settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    app.state.static_dir = settings.static_path()

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(TracingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(transcoding_router)
    if app.state.static_dir is None:
        log_warning(logger, "No static directory found, static hosting disabled")
    # Catch-all artifact route must stay last
    app.include_router(delivery_router)

    return app


app = create_app()
