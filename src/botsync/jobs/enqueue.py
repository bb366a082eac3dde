"""Typed enqueue helpers.

Each helper builds the payload and idempotency id for one job kind so
callers never assemble job ids by hand.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog

from src.botsync.jobs.queue import JobQueue
from src.botsync.jobs.schemas import (
    CalendarSyncEventsPayload,
    CalendarUpdatePayload,
    DeleteBotPayload,
    JobHandle,
    JobName,
    SaveCalendarWebhookPayload,
    UpdateAutoRecordPayload,
    UpdateBotSchedulePayload,
    bot_delete_job_id,
    bot_schedule_job_id,
    calendar_update_job_id,
    sync_events_job_id,
)

logger = structlog.get_logger(__name__)


async def queue_bot_schedule(
    queue: JobQueue,
    remote_event_id: str,
    calendar_id: uuid.UUID | None = None,
    force_reschedule: bool = False,
) -> JobHandle:
    """Enqueue a scheduling run for one event (one pending job per event).

    When forced, a waiting job for the event is replaced so the forced
    payload wins. An active run is left alone.
    """
    job_id = bot_schedule_job_id(remote_event_id)
    if force_reschedule:
        removed = await queue.remove_job(job_id)
        if removed:
            logger.info(
                "bot_schedule.pending_job_replaced",
                remote_event_id=remote_event_id,
            )
    return await queue.enqueue(
        JobName.UPDATE_BOT_SCHEDULE,
        UpdateBotSchedulePayload(
            remote_event_id=remote_event_id,
            calendar_id=calendar_id,
            force_reschedule=force_reschedule,
        ),
        job_id=job_id,
    )


async def queue_bot_delete(queue: JobQueue, remote_event_id: str) -> JobHandle:
    return await queue.enqueue(
        JobName.DELETE_BOT,
        DeleteBotPayload(remote_event_id=remote_event_id),
        job_id=bot_delete_job_id(remote_event_id),
    )


async def queue_calendar_sync_events(
    queue: JobQueue, calendar_id: uuid.UUID, since: str
) -> JobHandle:
    return await queue.enqueue(
        JobName.CALENDAR_SYNC_EVENTS,
        CalendarSyncEventsPayload(calendar_id=calendar_id, since=since),
        job_id=sync_events_job_id(calendar_id, since),
    )


async def queue_calendar_update(queue: JobQueue, calendar_id: uuid.UUID) -> JobHandle:
    return await queue.enqueue(
        JobName.CALENDAR_UPDATE,
        CalendarUpdatePayload(calendar_id=calendar_id),
        job_id=calendar_update_job_id(calendar_id),
    )


async def queue_update_autorecord(
    queue: JobQueue,
    calendar_id: uuid.UUID,
    remote_event_ids: list[str] | None = None,
) -> JobHandle:
    return await queue.enqueue(
        JobName.UPDATE_AUTORECORD,
        UpdateAutoRecordPayload(calendar_id=calendar_id, remote_event_ids=remote_event_ids),
    )


async def queue_webhook_save(
    queue: JobQueue, calendar_id: uuid.UUID, event: str, payload: dict[str, Any]
) -> JobHandle:
    return await queue.enqueue(
        JobName.SAVE_CALENDAR_WEBHOOK,
        SaveCalendarWebhookPayload(calendar_id=calendar_id, event=event, payload=payload),
    )
