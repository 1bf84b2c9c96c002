"""FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from transit_snapshots.config import get_settings
from transit_snapshots.database import check_database_connection, close_database
from transit_snapshots.errors import ReadError
from transit_snapshots.logging import bind_context, clear_context, get_logger, setup_logging
from transit_snapshots.routers.departures import router as departures_router
from transit_snapshots.routers.ingest import router as ingest_router
from transit_snapshots.routers.realtime import router as realtime_router
from transit_snapshots.services.gtfs_rt.worker import get_worker, reset_worker

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    setup_logging()
    logger.info("Starting Transit Snapshots API")

    settings = get_settings()
    if settings.ingest_auto_start:
        worker = get_worker()
        await worker.start()

    yield

    worker = get_worker()
    if worker.is_running:
        await worker.stop()
    reset_worker()

    logger.info("Shutting down Transit Snapshots API")
    await close_database()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Versioned GTFS-Realtime snapshots per provider: listings, "
            "projections and station departure boards"
        ),
        lifespan=lifespan,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.environment == "development" else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID middleware
    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        bind_context(request_id=request_id, path=request.url.path)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        clear_context()
        return response

    # Static paths first so they are not captured by /{provider}/...
    @app.get("/", tags=["meta"])
    async def index() -> dict[str, Any]:
        """Service index: configured providers and endpoint templates."""
        settings = get_settings()
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "providers": {
                provider_id: {"name": provider.name, "feeds": sorted(provider.feed_urls())}
                for provider_id, provider in sorted(settings.providers.items())
            },
            "endpoints": [
                "/{provider}/snapshots",
                "/{provider}/trip-updates",
                "/{provider}/vehicle-positions",
                "/{provider}/alerts",
                "/{provider}/departures/{station}",
                "/{provider}/departures/{station}/{platform}",
            ],
        }

    @app.get("/health", tags=["meta"])
    async def health_check() -> dict[str, Any]:
        """Health check endpoint returning application status."""
        settings = get_settings()
        missing_env = settings.missing_required_env()
        db_healthy = await check_database_connection()

        worker = get_worker()
        worker_status = await worker.get_status()
        ingest_healthy = worker_status["running"] or not settings.ingest_auto_start

        status = (
            "unhealthy"
            if missing_env
            else "healthy"
            if (db_healthy and ingest_healthy)
            else "degraded"
        )

        issues: list[str] = []
        if missing_env:
            issues.append("Missing required environment variables: " + ", ".join(missing_env))
        if settings.ingest_auto_start and not worker_status["running"]:
            issues.append("Ingest worker is not running")

        return {
            "service": settings.app_name,
            "status": status,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "database": db_healthy,
                "ingest": {
                    "workerRunning": worker_status["running"],
                    "pollCount": worker_status["poll_count"],
                    "lastPollAt": worker_status["last_poll_at"],
                    "queueSize": worker_status["queue_size"],
                },
            },
            "issues": issues,
        }

    app.include_router(ingest_router)
    app.include_router(realtime_router)
    app.include_router(departures_router)

    @app.exception_handler(ReadError)
    async def read_error_handler(request: Request, exc: ReadError) -> JSONResponse:
        logger.info(
            "Read request failed",
            path=request.url.path,
            error=exc.code,
            message=str(exc),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", exc_info=exc, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app


app = create_app()
