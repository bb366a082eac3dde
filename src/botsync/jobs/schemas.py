"""Job schemas for the Redis-backed job queue.

Job kinds form a closed set (JobName). Each kind has a typed payload with
a ``kind`` discriminator, so a payload read back from Redis is validated
into exactly one model and handlers never see untyped dicts.

Jobs serialize to flat string hashes for Redis and deserialize back
losslessly (``to_hash`` / ``from_hash``).
"""

from __future__ import annotations

import json
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


# ── Errors ───────────────────────────────────────────────────────────────────


class JobError(Exception):
    """Base class for job queue errors."""


class JobPayloadError(JobError):
    """A job payload does not match its job kind.

    Retrying cannot fix it, so the job is dead-lettered immediately.
    """


class HandlerRegistrationError(JobError):
    """The worker is missing handlers for one or more job kinds."""


# ── Enums ────────────────────────────────────────────────────────────────────


class JobName(str, Enum):
    """Every job kind the worker processes."""

    PERIODIC_CALENDAR_SYNC = "periodic.calendar.sync"
    CALENDAR_SYNC_EVENTS = "recall.calendar.sync_events"
    CALENDAR_UPDATE = "recall.calendar.update"
    UPDATE_AUTORECORD = "calendarevents.update_autorecord"
    UPDATE_BOT_SCHEDULE = "calendarevent.update_bot_schedule"
    DELETE_BOT = "calendarevent.delete_bot"
    CHECK_CALENDAR_CONNECTIONS = "check.calendar.connections"
    SAVE_CALENDAR_WEBHOOK = "calendarwebhooks.save"


class JobState(str, Enum):
    """Queue state of a job.

    ``completed`` and ``failed`` are terminal and only ever reported to
    listeners; terminal jobs are removed from Redis.
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class JobLifecycleEvent(str, Enum):
    """Events delivered to queue listeners."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


# ── Payloads ─────────────────────────────────────────────────────────────────


class PeriodicCalendarSyncPayload(BaseModel):
    kind: Literal["periodic.calendar.sync"] = "periodic.calendar.sync"


class CalendarSyncEventsPayload(BaseModel):
    """Pull events changed since ``since`` for one calendar."""

    kind: Literal["recall.calendar.sync_events"] = "recall.calendar.sync_events"
    calendar_id: uuid.UUID
    since: str


class CalendarUpdatePayload(BaseModel):
    """Refresh one calendar's connection state from the provider."""

    kind: Literal["recall.calendar.update"] = "recall.calendar.update"
    calendar_id: uuid.UUID


class UpdateAutoRecordPayload(BaseModel):
    """Re-evaluate auto-record flags; all future events when ids is None."""

    kind: Literal["calendarevents.update_autorecord"] = "calendarevents.update_autorecord"
    calendar_id: uuid.UUID
    remote_event_ids: list[str] | None = None


class UpdateBotSchedulePayload(BaseModel):
    kind: Literal["calendarevent.update_bot_schedule"] = "calendarevent.update_bot_schedule"
    remote_event_id: str
    calendar_id: uuid.UUID | None = None
    force_reschedule: bool = False


class DeleteBotPayload(BaseModel):
    kind: Literal["calendarevent.delete_bot"] = "calendarevent.delete_bot"
    remote_event_id: str


class CheckCalendarConnectionsPayload(BaseModel):
    kind: Literal["check.calendar.connections"] = "check.calendar.connections"


class SaveCalendarWebhookPayload(BaseModel):
    kind: Literal["calendarwebhooks.save"] = "calendarwebhooks.save"
    calendar_id: uuid.UUID
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


JobPayload = Annotated[
    Union[
        PeriodicCalendarSyncPayload,
        CalendarSyncEventsPayload,
        CalendarUpdatePayload,
        UpdateAutoRecordPayload,
        UpdateBotSchedulePayload,
        DeleteBotPayload,
        CheckCalendarConnectionsPayload,
        SaveCalendarWebhookPayload,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(JobPayload)


def parse_payload(name: JobName | str, data: BaseModel | dict[str, Any] | None) -> Any:
    """Validate raw payload data into the typed payload for ``name``.

    The ``kind`` discriminator defaults to the job name, and a payload
    whose kind disagrees with the job name is rejected.

    Raises:
        JobPayloadError: If the data does not validate.
    """
    name = JobName(name)
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    data = {"kind": name.value, **(data or {})}
    if data["kind"] != name.value:
        msg = f"Payload kind {data['kind']!r} does not match job {name.value!r}"
        raise JobPayloadError(msg)
    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as exc:
        msg = f"Invalid payload for job {name.value!r}: {exc}"
        raise JobPayloadError(msg) from exc


# ── Job ids ──────────────────────────────────────────────────────────────────

PERIODIC_CALENDAR_SYNC_JOB_ID = "periodic-calendar-sync"
CHECK_CALENDAR_CONNECTIONS_JOB_ID = "check-calendar-connections"


def bot_schedule_job_id(remote_event_id: str) -> str:
    return f"bot-schedule-{remote_event_id}"


def bot_delete_job_id(remote_event_id: str) -> str:
    return f"bot-delete-{remote_event_id}"


def sync_events_job_id(calendar_id: uuid.UUID | str, since: str) -> str:
    return f"sync-events-{calendar_id}-{since}"


def calendar_update_job_id(calendar_id: uuid.UUID | str) -> str:
    return f"calendar-update-{calendar_id}"


# ── Job ──────────────────────────────────────────────────────────────────────


class Job(BaseModel):
    """A job as stored in Redis.

    Attributes:
        id: Idempotency token; a non-terminal job with the same id blocks
            new enqueues.
        name: Job kind.
        payload: JSON-compatible payload (validated at enqueue and again
            before the handler runs).
        state: Current queue state.
        attempts: Attempts started so far.
        max_attempts: Attempts allowed before dead-lettering.
        repeat_every_ms: Re-queue interval for repeating jobs.
        run_at_ms: Epoch milliseconds at which the job becomes due.
        last_error: Error message of the most recent failed attempt.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: JobName
    payload: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 3
    repeat_every_ms: int | None = None
    run_at_ms: int = 0
    last_error: str | None = None

    def to_hash(self) -> dict[str, str]:
        """Serialize to a flat dict of strings for HSET."""
        return {
            "name": self.name.value,
            "payload": json.dumps(self.payload),
            "state": self.state.value,
            "attempts": str(self.attempts),
            "max_attempts": str(self.max_attempts),
            "repeat_every_ms": str(self.repeat_every_ms or ""),
            "run_at_ms": str(self.run_at_ms),
            "last_error": self.last_error or "",
        }

    @classmethod
    def from_hash(cls, job_id: str, raw: dict[str, str]) -> Job:
        """Deserialize from an HGETALL result."""
        return cls(
            id=job_id,
            name=JobName(raw["name"]),
            payload=json.loads(raw["payload"]) if raw.get("payload") else {},
            state=JobState(raw.get("state") or JobState.WAITING.value),
            attempts=int(raw.get("attempts") or 0),
            max_attempts=int(raw.get("max_attempts") or 3),
            repeat_every_ms=int(raw["repeat_every_ms"]) if raw.get("repeat_every_ms") else None,
            run_at_ms=int(raw.get("run_at_ms") or 0),
            last_error=raw.get("last_error") or None,
        )


class JobHandle(BaseModel):
    """Result of an enqueue call.

    ``created`` is False when a non-terminal job with the same id already
    existed; ``state`` then reports that job's state.
    """

    job_id: str
    name: JobName
    created: bool
    state: JobState
