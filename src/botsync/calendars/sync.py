"""Calendar sync reconciler.

Pulls changed events from the provider, mirrors them locally, re-evaluates
auto-record flags, and enqueues a scheduling job for every event whose bot
presence may need to change. Runs for a single calendar (webhook-driven
``recall.calendar.sync_events`` jobs) or for every calendar on a timer
(``periodic.calendar.sync``) to catch dropped webhooks.

The periodic cycle also sweeps local future events that want a bot but
whose snapshot has none, so an event that has not changed inside the
lookback window still converges.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog

from src.botsync.calendars.autorecord import apply_auto_record
from src.botsync.calendars.schemas import Calendar, CalendarEvent
from src.botsync.core.monitoring import calendar_sync_events_total
from src.botsync.jobs.enqueue import queue_bot_delete, queue_bot_schedule, queue_update_autorecord

if TYPE_CHECKING:
    from src.botsync.calendars.repository import CalendarRepository
    from src.botsync.jobs.queue import JobQueue
    from src.botsync.jobs.schemas import JobHandle
    from src.botsync.recall.client import RecallClient

logger = structlog.get_logger(__name__)


@dataclass
class CalendarSyncSummary:
    """Counts for one calendar's sync."""

    calendar_id: str
    since: str
    upserted: int = 0
    created: int = 0
    deleted: int = 0
    scheduled: int = 0
    swept: int = 0


@dataclass
class SyncCycleSummary:
    """Totals for a periodic cycle over all calendars."""

    calendars: int = 0
    upserted: int = 0
    deleted: int = 0
    scheduled: int = 0
    swept: int = 0
    failed_calendar_ids: list[str] = field(default_factory=list)


def needs_schedule_run(event: CalendarEvent) -> bool:
    """True when the scheduler has work to do for an event.

    Either a flag asks for a bot, or the snapshot still carries bots that
    may have to be removed.
    """
    return event.should_record or bool(event.bots)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CalendarSyncReconciler:
    """Mirrors provider events locally and feeds the scheduling queue.

    Args:
        repository: Calendar repository.
        recall_client: Provisioning API client.
        queue: Job queue for scheduling and delete-bot jobs.
        lookback_hours: Watermark window for periodic cycles.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        repository: CalendarRepository,
        recall_client: RecallClient,
        queue: JobQueue,
        lookback_hours: int = 24,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._recall = recall_client
        self._queue = queue
        self._lookback = timedelta(hours=lookback_hours)
        self._clock = clock or _utcnow

    def watermark(self, now: datetime | None = None) -> str:
        """ISO-8601 ``updated_at__gte`` value for a periodic pull."""
        return ((now or self._clock()) - self._lookback).isoformat()

    # ── Periodic cycle ───────────────────────────────────────────────────

    async def sync_all(self) -> SyncCycleSummary:
        """Sync every calendar registered with the provider.

        A failing calendar is logged and skipped; the rest still sync.
        """
        now = self._clock()
        since = self.watermark(now)
        calendars = await self._repository.list_calendars_with_remote_id()
        summary = SyncCycleSummary(calendars=len(calendars))

        logger.info(
            "calendar_sync.cycle_started",
            calendar_count=len(calendars),
            since=since,
        )

        for calendar in calendars:
            try:
                result = await self.sync_calendar(calendar, since, sweep=True)
            except Exception as exc:
                summary.failed_calendar_ids.append(str(calendar.id))
                logger.error(
                    "calendar_sync.calendar_failed",
                    calendar_id=str(calendar.id),
                    remote_calendar_id=calendar.remote_id,
                    error=str(exc),
                    exc_info=True,
                )
                continue
            summary.upserted += result.upserted
            summary.deleted += result.deleted
            summary.scheduled += result.scheduled
            summary.swept += result.swept

        logger.info(
            "calendar_sync.cycle_completed",
            calendars=summary.calendars,
            upserted=summary.upserted,
            deleted=summary.deleted,
            scheduled=summary.scheduled,
            swept=summary.swept,
            failed=len(summary.failed_calendar_ids),
        )
        return summary

    # ── Single calendar ──────────────────────────────────────────────────

    async def sync_calendar_by_id(
        self, calendar_id: uuid.UUID, since: str
    ) -> CalendarSyncSummary | None:
        """Sync one calendar by local id; None when it no longer exists."""
        calendar = await self._repository.get_calendar(calendar_id)
        if calendar is None or not calendar.remote_id:
            logger.warning(
                "calendar_sync.calendar_not_found",
                calendar_id=str(calendar_id),
            )
            return None
        return await self.sync_calendar(calendar, since)

    async def sync_calendar(
        self, calendar: Calendar, since: str, sweep: bool = False
    ) -> CalendarSyncSummary:
        """Pull events changed since ``since`` and reconcile them.

        Args:
            calendar: Calendar with a remote id.
            since: ISO-8601 watermark.
            sweep: Also enqueue local future events missing their bot.

        Returns:
            CalendarSyncSummary with the counts for this calendar.
        """
        summary = CalendarSyncSummary(calendar_id=str(calendar.id), since=since)
        remote_events = await self._recall.list_calendar_events(calendar.remote_id, since)

        upserted: list[CalendarEvent] = []
        for remote_event in remote_events:
            remote_event_id = remote_event.get("id")
            if not remote_event_id:
                continue
            if remote_event.get("is_deleted"):
                await self._repository.delete_event(calendar.id, remote_event_id)
                await queue_bot_delete(self._queue, remote_event_id)
                summary.deleted += 1
                continue
            try:
                event, created = await self._repository.upsert_event(calendar.id, remote_event)
            except ValueError as exc:
                logger.warning(
                    "calendar_sync.event_skipped",
                    calendar_id=str(calendar.id),
                    remote_event_id=remote_event_id,
                    error=str(exc),
                )
                continue
            upserted.append(event)
            summary.upserted += 1
            summary.created += int(created)

        now = self._clock()
        evaluated = await apply_auto_record(self._repository, calendar, upserted, now)
        scheduled_ids = await self.enqueue_schedule_runs(evaluated, calendar.id)
        summary.scheduled = len(scheduled_ids)

        if sweep:
            summary.swept = await self.sweep(calendar, now, skip=scheduled_ids)

        calendar_sync_events_total.labels(action="upserted").inc(summary.upserted)
        calendar_sync_events_total.labels(action="deleted").inc(summary.deleted)
        calendar_sync_events_total.labels(action="scheduled").inc(summary.scheduled + summary.swept)

        logger.info(
            "calendar_sync.calendar_synced",
            calendar_id=str(calendar.id),
            since=since,
            upserted=summary.upserted,
            created=summary.created,
            deleted=summary.deleted,
            scheduled=summary.scheduled,
            swept=summary.swept,
        )
        return summary

    async def enqueue_schedule_runs(
        self, events: Iterable[CalendarEvent], calendar_id: uuid.UUID
    ) -> set[str]:
        """Enqueue scheduling jobs for events that need one.

        Returns:
            Remote ids of the events a job was requested for.
        """
        requested: set[str] = set()
        for event in events:
            if not needs_schedule_run(event):
                continue
            await queue_bot_schedule(self._queue, event.remote_id, calendar_id)
            requested.add(event.remote_id)
        return requested

    async def sweep(
        self, calendar: Calendar, now: datetime, skip: Iterable[str] = ()
    ) -> int:
        """Enqueue scheduling for future events that want a bot but have none.

        Returns:
            Number of events enqueued.
        """
        skip = set(skip)
        count = 0
        for event in await self._repository.list_future_events([calendar.id], now):
            if event.remote_id in skip or event.bots:
                continue
            if not (event.should_record and event.meeting_url):
                continue
            await queue_bot_schedule(self._queue, event.remote_id, calendar.id)
            count += 1
        if count:
            logger.info(
                "calendar_sync.sweep_enqueued",
                calendar_id=str(calendar.id),
                count=count,
            )
        return count

    # ── Auto-record refresh ──────────────────────────────────────────────

    async def refresh_auto_record(
        self,
        calendar_id: uuid.UUID,
        remote_event_ids: list[str] | None = None,
    ) -> int:
        """Re-evaluate auto-record flags and enqueue scheduling runs.

        Args:
            calendar_id: Local calendar id.
            remote_event_ids: Events to evaluate; all future events when None.

        Returns:
            Number of scheduling jobs requested.
        """
        calendar = await self._repository.get_calendar(calendar_id)
        if calendar is None:
            logger.warning("autorecord.calendar_not_found", calendar_id=str(calendar_id))
            return 0

        now = self._clock()
        if remote_event_ids is None:
            events = await self._repository.list_future_events([calendar.id], now)
        else:
            events = await self._repository.list_events_by_remote_ids(calendar.id, remote_event_ids)

        evaluated = await apply_auto_record(self._repository, calendar, events, now)
        requested = await self.enqueue_schedule_runs(evaluated, calendar.id)
        return len(requested)

    async def request_auto_record_refresh(
        self,
        calendar_id: uuid.UUID,
        remote_event_ids: list[str] | None = None,
    ) -> JobHandle:
        """Queue ``refresh_auto_record`` as a ``calendarevents.update_autorecord`` job."""
        return await queue_update_autorecord(self._queue, calendar_id, remote_event_ids)
