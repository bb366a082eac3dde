"""Job handlers: typed payloads in, domain services out.

One method per JobName. Handlers only translate a payload into a call on
the reconciler, scheduler, connection monitor or repository; exceptions
propagate so the queue retries or dead-letters the job.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

import structlog

from src.botsync.calendars.connections import StatusChange, build_disconnection_notifications
from src.botsync.calendars.schemas import CalendarStatus
from src.botsync.jobs.schemas import (
    CalendarSyncEventsPayload,
    CalendarUpdatePayload,
    CheckCalendarConnectionsPayload,
    DeleteBotPayload,
    JobName,
    PeriodicCalendarSyncPayload,
    SaveCalendarWebhookPayload,
    UpdateAutoRecordPayload,
    UpdateBotSchedulePayload,
)
from src.botsync.recall.errors import is_conflict, is_not_found

if TYPE_CHECKING:
    from src.botsync.bots.scheduler import BotScheduler
    from src.botsync.calendars.connections import CalendarConnectionMonitor
    from src.botsync.calendars.repository import CalendarRepository
    from src.botsync.calendars.sync import CalendarSyncReconciler
    from src.botsync.config import Settings
    from src.botsync.jobs.queue import JobQueue
    from src.botsync.recall.client import RecallClient

logger = structlog.get_logger(__name__)


class JobHandlers:
    """Binds every job kind to the service that performs it.

    Args:
        repository: Calendar repository.
        recall_client: Provisioning API client.
        reconciler: Calendar sync reconciler.
        scheduler: Bot scheduler.
        monitor: Calendar connection monitor.
    """

    def __init__(
        self,
        repository: CalendarRepository,
        recall_client: RecallClient,
        reconciler: CalendarSyncReconciler,
        scheduler: BotScheduler,
        monitor: CalendarConnectionMonitor,
    ) -> None:
        self._repository = repository
        self._recall = recall_client
        self._reconciler = reconciler
        self._scheduler = scheduler
        self._monitor = monitor

    async def periodic_calendar_sync(self, payload: PeriodicCalendarSyncPayload) -> None:
        await self._reconciler.sync_all()

    async def calendar_sync_events(self, payload: CalendarSyncEventsPayload) -> None:
        await self._reconciler.sync_calendar_by_id(payload.calendar_id, payload.since)

    async def calendar_update(self, payload: CalendarUpdatePayload) -> None:
        change = await self._monitor.refresh_calendar(payload.calendar_id)
        if change is not None:
            await self._refresh_reconnected([change])

    async def update_autorecord(self, payload: UpdateAutoRecordPayload) -> None:
        await self._reconciler.refresh_auto_record(
            payload.calendar_id, payload.remote_event_ids
        )

    async def update_bot_schedule(self, payload: UpdateBotSchedulePayload) -> None:
        await self._scheduler.reconcile_event(
            payload.remote_event_id,
            force_reschedule=payload.force_reschedule,
        )

    async def delete_bot(self, payload: DeleteBotPayload) -> None:
        """Remove the bot for an event that disappeared from the calendar.

        404 (event already gone) and 409 (removal in progress) count as done.
        """
        try:
            await self._recall.remove_bot(payload.remote_event_id)
        except Exception as exc:
            if not (is_not_found(exc) or is_conflict(exc)):
                raise
            logger.info(
                "delete_bot.absorbed",
                remote_event_id=payload.remote_event_id,
                error=str(exc),
            )

    async def check_calendar_connections(self, payload: CheckCalendarConnectionsPayload) -> None:
        result = await self._monitor.check_all()
        await self._refresh_reconnected(result.status_changes)
        for notification in build_disconnection_notifications(result.status_changes):
            logger.warning(
                "connection_check.user_notified",
                user_id=notification.user_id,
                calendar_id=notification.calendar_id,
                message=notification.message,
            )

    async def save_calendar_webhook(self, payload: SaveCalendarWebhookPayload) -> None:
        await self._repository.save_webhook(payload.calendar_id, payload.event, payload.payload)

    async def _refresh_reconnected(self, changes: Iterable[StatusChange]) -> None:
        """Queue auto-record re-evaluation for calendars that came back.

        Events skipped while the calendar was disconnected get their bots
        on the resulting scheduling runs.
        """
        for change in changes:
            if change.new_status != CalendarStatus.CONNECTED:
                continue
            await self._reconciler.request_auto_record_refresh(change.calendar.id)
            logger.info(
                "connection_check.autorecord_refresh_queued",
                calendar_id=str(change.calendar.id),
            )

    # ── Registration ─────────────────────────────────────────────────────

    def register_all(self, queue: JobQueue, settings: Settings) -> None:
        """Register a handler for every job kind, then verify none is missing.

        Raises:
            HandlerRegistrationError: If a job kind was left without a handler.
        """
        queue.register_handler(
            JobName.PERIODIC_CALENDAR_SYNC,
            settings.PERIODIC_SYNC_CONCURRENCY,
            self.periodic_calendar_sync,
        )
        queue.register_handler(
            JobName.CALENDAR_SYNC_EVENTS,
            settings.CALENDAR_SYNC_CONCURRENCY,
            self.calendar_sync_events,
        )
        queue.register_handler(JobName.CALENDAR_UPDATE, 2, self.calendar_update)
        queue.register_handler(JobName.UPDATE_AUTORECORD, 2, self.update_autorecord)
        queue.register_handler(
            JobName.UPDATE_BOT_SCHEDULE,
            settings.BOT_SCHEDULE_CONCURRENCY,
            self.update_bot_schedule,
        )
        queue.register_handler(
            JobName.DELETE_BOT,
            settings.BOT_DELETE_CONCURRENCY,
            self.delete_bot,
        )
        queue.register_handler(
            JobName.CHECK_CALENDAR_CONNECTIONS,
            settings.CONNECTION_CHECK_CONCURRENCY,
            self.check_calendar_connections,
        )
        queue.register_handler(JobName.SAVE_CALENDAR_WEBHOOK, 2, self.save_calendar_webhook)
        queue.ensure_handlers()
