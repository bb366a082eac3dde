"""Background worker process.

Wires the calendar services to the job queue, installs the repeating
periodic sync and connection check, and processes jobs until SIGINT or
SIGTERM.

Usage:
    python -m src.botsync.worker
"""

from __future__ import annotations

import asyncio
import signal

import structlog

from src.botsync.bots.scheduler import BotScheduler
from src.botsync.bots.shared import SharedBotDeduplicator
from src.botsync.calendars.connections import CalendarConnectionMonitor
from src.botsync.calendars.repository import CalendarRepository
from src.botsync.calendars.sync import CalendarSyncReconciler
from src.botsync.config import Settings, get_settings
from src.botsync.core.database import close_db, get_session
from src.botsync.core.logging import configure_structlog
from src.botsync.core.monitoring import init_sentry
from src.botsync.core.redis import close_redis, get_redis_pool
from src.botsync.jobs.handlers import JobHandlers
from src.botsync.jobs.queue import JobQueue
from src.botsync.jobs.schemas import (
    CHECK_CALENDAR_CONNECTIONS_JOB_ID,
    PERIODIC_CALENDAR_SYNC_JOB_ID,
    CheckCalendarConnectionsPayload,
    JobName,
    PeriodicCalendarSyncPayload,
)
from src.botsync.recall.client import RecallClient

logger = structlog.get_logger(__name__)


def build_worker(settings: Settings, queue: JobQueue, repository: CalendarRepository) -> JobHandlers:
    """Construct the domain services and register their handlers on ``queue``."""
    recall_client = RecallClient(
        api_key=settings.RECALL_API_KEY,
        api_host=settings.RECALL_API_HOST,
    )
    deduplicator = SharedBotDeduplicator(
        repository,
        recall_client,
        personal_domains=settings.get_personal_email_domains(),
    )
    scheduler = BotScheduler(
        repository,
        recall_client,
        deduplicator,
        public_url=settings.PUBLIC_URL,
    )
    reconciler = CalendarSyncReconciler(
        repository,
        recall_client,
        queue,
        lookback_hours=settings.SYNC_LOOKBACK_HOURS,
    )
    monitor = CalendarConnectionMonitor(repository, recall_client)

    handlers = JobHandlers(repository, recall_client, reconciler, scheduler, monitor)
    handlers.register_all(queue, settings)
    return handlers


async def schedule_repeating_jobs(queue: JobQueue, settings: Settings) -> None:
    await queue.schedule_repeating(
        JobName.PERIODIC_CALENDAR_SYNC,
        PeriodicCalendarSyncPayload(),
        every_ms=settings.PERIODIC_SYNC_INTERVAL_SECONDS * 1000,
        job_id=PERIODIC_CALENDAR_SYNC_JOB_ID,
    )
    await queue.schedule_repeating(
        JobName.CHECK_CALENDAR_CONNECTIONS,
        CheckCalendarConnectionsPayload(),
        every_ms=settings.CONNECTION_CHECK_INTERVAL_SECONDS * 1000,
        job_id=CHECK_CALENDAR_CONNECTIONS_JOB_ID,
    )


async def run_worker() -> None:
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT.value,
            component="worker",
        )

    queue = JobQueue.from_settings(get_redis_pool(), settings)
    repository = CalendarRepository(session_factory=get_session)
    build_worker(settings, queue, repository)
    await schedule_repeating_jobs(queue, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, queue.stop)

    logger.info("worker.started", environment=settings.ENVIRONMENT.value)
    try:
        await queue.run()
    finally:
        await close_db()
        await close_redis()
        logger.info("worker.stopped")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
