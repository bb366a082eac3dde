"""Routing of provider calendar webhooks onto jobs.

Every accepted webhook is recorded (``calendarwebhooks.save``) and turned
into sync work:

- ``calendar.update``      -> refresh the calendar + sync the last 24h
- ``calendar.sync_events`` -> sync since ``data.last_updated_ts``
- anything else            -> sync the last 24h as a safety net
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

from src.botsync.jobs.enqueue import (
    queue_calendar_sync_events,
    queue_calendar_update,
    queue_webhook_save,
)

if TYPE_CHECKING:
    from src.botsync.calendars.repository import CalendarRepository
    from src.botsync.jobs.queue import JobQueue
    from src.botsync.jobs.schemas import JobHandle

logger = structlog.get_logger(__name__)

CALENDAR_UPDATE = "calendar.update"
CALENDAR_SYNC_EVENTS = "calendar.sync_events"


class CalendarWebhookData(BaseModel):
    calendar_id: str
    last_updated_ts: str | None = None

    model_config = {"extra": "allow"}


class CalendarWebhookBody(BaseModel):
    """Body of a provider calendar webhook."""

    event: str
    data: CalendarWebhookData

    model_config = {"extra": "allow"}


@dataclass
class WebhookRouteResult:
    """What a webhook turned into."""

    accepted: bool
    calendar_id: str | None = None
    jobs: list[JobHandle] = field(default_factory=list)
    reason: str | None = None


async def route_calendar_webhook(
    repository: CalendarRepository,
    queue: JobQueue,
    body: CalendarWebhookBody,
    raw_payload: dict[str, Any] | None = None,
    now: datetime | None = None,
    lookback_hours: int = 24,
) -> WebhookRouteResult:
    """Record a calendar webhook and enqueue the sync work it implies.

    Args:
        repository: Calendar repository (remote id lookup).
        queue: Job queue.
        body: Validated webhook body.
        raw_payload: Original JSON body to store; ``body`` dumped when omitted.
        now: Current time.
        lookback_hours: Window for safety-net syncs.

    Returns:
        WebhookRouteResult; unknown calendars are not accepted.
    """
    now = now or datetime.now(timezone.utc)
    remote_calendar_id = body.data.calendar_id
    calendar = await repository.get_calendar_by_remote_id(remote_calendar_id)
    if calendar is None:
        logger.warning(
            "calendar_webhook.unknown_calendar",
            remote_calendar_id=remote_calendar_id,
            webhook_event=body.event,
        )
        return WebhookRouteResult(accepted=False, reason="unknown_calendar")

    payload = raw_payload if raw_payload is not None else body.model_dump(mode="json")
    jobs = [await queue_webhook_save(queue, calendar.id, body.event, payload)]

    default_since = (now - timedelta(hours=lookback_hours)).isoformat()
    if body.event == CALENDAR_UPDATE:
        jobs.append(await queue_calendar_update(queue, calendar.id))
        jobs.append(await queue_calendar_sync_events(queue, calendar.id, default_since))
    elif body.event == CALENDAR_SYNC_EVENTS:
        since = body.data.last_updated_ts or default_since
        jobs.append(await queue_calendar_sync_events(queue, calendar.id, since))
    else:
        logger.info(
            "calendar_webhook.unrecognized_event",
            calendar_id=str(calendar.id),
            webhook_event=body.event,
        )
        jobs.append(await queue_calendar_sync_events(queue, calendar.id, default_since))

    logger.info(
        "calendar_webhook.routed",
        calendar_id=str(calendar.id),
        webhook_event=body.event,
        jobs=[h.name.value for h in jobs],
    )
    return WebhookRouteResult(accepted=True, calendar_id=str(calendar.id), jobs=jobs)
