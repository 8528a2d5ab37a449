"""
FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from jobcore import __version__
from jobcore.api.routes import (
    auth_router,
    dead_letters_router,
    health_router,
    jobs_router,
)
from jobcore.config import get_settings
from jobcore.db import close_db, init_db
from jobcore.observability.logging import setup_logging
from jobcore.observability.metrics import get_metrics, setup_metrics
from jobcore.observability.tracing import instrument_fastapi, setup_tracing

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    setup_logging("api")
    setup_metrics()
    setup_tracing()
    await init_db()

    logger.info("Application started")

    yield

    await close_db()
    logger.info("Application shutdown")


async def record_request_metrics(request: Request, call_next):
    """Count requests and observe latency per route template."""
    started = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    get_metrics().record_api_request(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
        duration_seconds=time.perf_counter() - started,
    )
    return response


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="jobcore API",
        description="Multi-tenant task execution core: job queue, retries and dead letters",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(BaseHTTPMiddleware, dispatch=record_request_metrics)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(jobs_router)
    app.include_router(dead_letters_router)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "jobcore.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
