"""AMI Replication API - Main FastAPI Application.

In-process front end for the replication workflow:
- Health check endpoints
- Replication dispatch (/api/v1/replications)
- Execution inspection and resume (/api/v1/executions)
- Prometheus metrics (/metrics)

Usage:
    uvicorn ami_replication.api.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse

from ami_replication import __version__
from ami_replication.api.models import ErrorResponse
from ami_replication.api.routes.health import router as health_router, set_server_start_time
from ami_replication.api.routes.replications import router as replications_router
from ami_replication.config.settings import get_settings
from ami_replication.core.container import get_container, shutdown_container
from ami_replication.core.exceptions import ReplicationError
from ami_replication.monitoring.metrics import get_metrics_app

logger = structlog.get_logger(__name__)

API_TITLE = "AMI Replication API"
API_DESCRIPTION = """
Copies an image's root snapshot into destination accounts and regions,
registers the copy there, and reports each result to the pipeline job that
requested it.
"""


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    - Startup: build the replication container, connect its execution store
      and resume unfinished executions
    - Shutdown: cancel in-flight executions
    """
    logger.info("application_starting")
    set_server_start_time()
    await get_container().start()
    logger.info("application_started")

    yield

    logger.info("application_stopping")
    await shutdown_container()
    logger.info("application_stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=__version__,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Health", "description": "Service health and status endpoints"},
            {"name": "Replications", "description": "Start and inspect replication executions"},
        ],
    )

    @app.exception_handler(ReplicationError)
    async def replication_exception_handler(request: Request, exc: ReplicationError) -> JSONResponse:
        logger.error(
            "replication_request_failed",
            path=request.url.path,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        response = ErrorResponse(
            error=type(exc).__name__,
            message=exc.message,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        response = ErrorResponse(
            error="internal_server_error",
            message="An unexpected error occurred",
            detail=str(exc) if get_settings().is_development else None,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(mode="json"),
        )

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        return {
            "name": API_TITLE,
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "api": "/api/v1",
        }

    app.include_router(health_router)

    api_v1_router = APIRouter(prefix="/api/v1")
    api_v1_router.include_router(replications_router)
    app.include_router(api_v1_router)

    app.mount("/metrics", get_metrics_app())

    return app


app = create_app()
