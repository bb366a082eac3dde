"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, Sentry,
lifespan events for database and job queue initialization, the calendar
webhook receiver, and health checks.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.botsync.api.health import router as health_router
from src.botsync.api.webhooks import router as webhooks_router
from src.botsync.calendars.repository import CalendarRepository
from src.botsync.config import get_settings
from src.botsync.core.database import close_db, get_session, init_db
from src.botsync.core.logging import LoggingMiddleware, configure_structlog
from src.botsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.botsync.core.redis import close_redis, get_redis_pool
from src.botsync.jobs.queue import JobQueue

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the job queue; close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT.value,
            component="api",
        )

    app.state.settings = settings
    app.state.calendar_repository = CalendarRepository(session_factory=get_session)
    app.state.job_queue = JobQueue.from_settings(get_redis_pool(), settings)
    log.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    await close_db()
    await close_redis()
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Botsync API",
        version="0.1.0",
        description="Calendar-driven meeting bot scheduling",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health_router)
    app.include_router(webhooks_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
