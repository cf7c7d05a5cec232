"""FastAPI application for the Pulse REST API.

This module configures the FastAPI application with middleware, error handling,
health and metrics endpoints, and ties the scheduling service lifecycle to the
application lifespan.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Optional, Type

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import PulseConfig
from ..exceptions import (
    AccessDenied, AlreadyRunning, InvalidExpression, NotFound, OperationClosed,
    ProgressRegression, PulseError
)
from ..scheduling.models import utc_now
from ..scheduling.service import SchedulingService, ServiceStatus, create_service
from .routes import operations_router, resources_router, schedules_router
from .schemas import ErrorResponse, HealthResponse


logger = logging.getLogger(__name__)

APP_TITLE = "Pulse API"
APP_DESCRIPTION = """
Pulse schedules recurring connection tests and streams live progress of
running operations.

## Features

* **Schedules**: Cron-based schedules with presets and validation
* **Manual runs**: Test a resource immediately, at most one run at a time
* **Live progress**: Join an operation over WebSocket and receive snapshots
"""

ERROR_STATUS_CODES: Dict[Type[PulseError], int] = {
    InvalidExpression: 400,
    AccessDenied: 403,
    NotFound: 404,
    AlreadyRunning: 409,
    OperationClosed: 409,
    ProgressRegression: 409,
}


def _status_code_for(exc: PulseError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(
    service: Optional[SchedulingService] = None,
    config: Optional[PulseConfig] = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Scheduling service to serve (default: built from config)
        config: Service configuration (default: from environment)

    Returns:
        Configured FastAPI application instance
    """
    config = config or (service.config if service else PulseConfig.from_environment())
    service = service or create_service(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        app.state.started_at = utc_now()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title=APP_TITLE,
        description=APP_DESCRIPTION,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.started_at = utc_now()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def add_request_id_and_logging(request: Request, call_next):
        """Add request ID and logging middleware."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={"request_id": request_id, "method": request.method, "path": request.url.path}
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            duration = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - {response.status_code}",
                extra={
                    "request_id": request_id,
                    "status_code": response.status_code,
                    "duration_ms": round(duration * 1000, 2),
                }
            )
            return response

        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Request failed: {request.method} {request.url.path} - {str(e)}",
                extra={"request_id": request_id, "duration_ms": round(duration * 1000, 2)},
                exc_info=True
            )
            raise

    def _error(request: Request, status_code: int, error: str, message: str, details=None) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=error,
                message=message,
                details=details,
                request_id=getattr(request.state, "request_id", None),
            ).model_dump(mode='json')
        )

    @app.exception_handler(PulseError)
    async def pulse_exception_handler(request: Request, exc: PulseError):
        """Map service errors to status codes with a consistent body."""
        return _error(request, _status_code_for(exc), exc.error_code, exc.message, exc.details or None)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _error(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))

    @app.exception_handler(StarletteHTTPException)
    async def starlette_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors with detailed information."""
        errors = []
        for error in exc.errors():
            field_path = " -> ".join(str(loc) for loc in error["loc"][1:])
            errors.append({
                "field": field_path,
                "message": error["msg"],
                "type": error["type"],
            })

        return _error(
            request, 422, "validation_error", "Request validation failed",
            {"validation_errors": errors}
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"Unhandled exception in request {request_id}: {str(exc)}", exc_info=True)
        return _error(request, 500, "internal_server_error", "An unexpected error occurred")

    @app.get("/health", response_model=HealthResponse, tags=["System"], summary="Health check")
    async def health_check():
        """Health of the service and its components."""
        health = await service.get_health()

        store_ok = health.component_status.get('store', {}).get('status') == 'healthy'
        dispatcher_ok = health.component_status['dispatcher']['running'] or not config.start_dispatcher
        services = {
            "store": "healthy" if store_ok else "unhealthy",
            "dispatcher": "healthy" if dispatcher_ok else "degraded",
            "broadcast": "healthy",
        }

        if health.status == ServiceStatus.ERROR or not store_ok:
            overall = "unhealthy"
        elif all(status == "healthy" for status in services.values()):
            overall = "healthy"
        else:
            overall = "degraded"

        return HealthResponse(
            status=overall,
            version=__version__,
            services=services,
            uptime_seconds=max(0.0, (utc_now() - app.state.started_at).total_seconds()),
        )

    @app.get("/metrics", response_class=PlainTextResponse, tags=["System"], summary="Metrics")
    async def metrics():
        """Scheduling metrics in Prometheus text format."""
        collector = service.metrics_collector
        return collector.export_prometheus_format() if collector else ""

    app.include_router(schedules_router, prefix="/api")
    app.include_router(resources_router, prefix="/api")
    app.include_router(operations_router, prefix="/api")

    return app


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_app() -> FastAPI:
    """Application factory for `uvicorn --factory pulse.api.main:build_app`."""
    config = PulseConfig.from_environment()
    configure_logging(config.log_level)
    return create_app(config=config)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pulse.api.main:build_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
