"""
FastAPI application for the asset version control service.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from . import __version__
from .api.v1 import version_control as version_control_router
from .core.environment import VersionControlSettings, get_settings
from .core.exceptions import VersionControlError
from .core.logging_config import setup_structured_logging
from .core.telemetry import initialize_telemetry
from .middleware.correlation_middleware import CorrelationMiddleware
from .services.version_control_service import VersionControlService, build_service

logger = structlog.get_logger(__name__)


def create_app(
    service: Optional[VersionControlService] = None,
    settings: Optional[VersionControlSettings] = None,
) -> FastAPI:
    settings = settings or (service.settings if service is not None else get_settings())
    setup_structured_logging(
        service_name=settings.service_name,
        environment=settings.environment.value,
        log_level=settings.log_level,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_service = getattr(app.state, "vcs_service", None) is None
        if owns_service:
            app.state.vcs_service = build_service(settings)
        logger.info(
            "application_startup_complete",
            version=__version__,
            environment=settings.environment.value,
        )

        yield

        if owns_service:
            app.state.vcs_service.shutdown()
            app.state.vcs_service = None
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Asset Version Control API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.vcs_service = service
    app.add_middleware(CorrelationMiddleware)

    @app.exception_handler(VersionControlError)
    async def version_control_error_handler(request: Request, exc: VersionControlError):
        return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_dict()})

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "version": __version__}

    @app.get("/metrics", tags=["health"])
    async def metrics_endpoint():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(version_control_router.router)

    if settings.telemetry_enabled:
        engine = getattr(getattr(app.state.vcs_service, "store", None), "engine", None)
        initialize_telemetry(
            service_name=settings.service_name,
            otlp_endpoint=settings.otlp_endpoint,
            environment=settings.environment.value,
            app=app,
            engine=engine,
        )

    return app


app = create_app()
