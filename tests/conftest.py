"""Test fixtures for the bot scheduling engine.

Provides:
- FakeRedis: in-memory stand-in for the redis.asyncio commands the job
  queue and dead letter queue use (hashes, sorted sets, streams, pipelines)
- InMemoryCalendarRepository: CalendarRepository without a database
- FakeRecallClient: provider double holding calendars and events in memory
- FakeClock: controllable time shared by the queue, reconciler and scheduler
- Factories for provider event payloads and HTTP errors
"""

from __future__ import annotations

import copy
import itertools
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from redis.exceptions import WatchError

from src.botsync.calendars.schemas import (
    Calendar,
    CalendarEvent,
    CalendarStatus,
    CalendarWebhook,
    OrganizationEvent,
    User,
    parse_timestamp,
    project_remote_event,
)
from src.botsync.jobs.queue import JobQueue


# ── Clock ───────────────────────────────────────────────────────────────────


class FakeClock:
    """Mutable UTC clock; ``now`` for services, ``ms`` for the job queue."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def ms(self) -> int:
        return int(self.current.timestamp() * 1000)

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


# ── Redis ───────────────────────────────────────────────────────────────────


def _score_bound(value: Any) -> float:
    if value == "-inf":
        return float("-inf")
    if value == "+inf":
        return float("inf")
    return float(value)


def _stream_id(value: str) -> tuple[int, int]:
    ms, _, seq = value.partition("-")
    return int(ms), int(seq or 0)


class FakeRedis:
    """Just enough of redis.asyncio.Redis (decode_responses=True) for the queue."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self._stream_seq = itertools.count(1)

    # Hashes

    async def hsetnx(self, key: str, field: str, value: Any) -> int:
        data = self.hashes.setdefault(key, {})
        if field in data:
            return 0
        data[field] = str(value)
        return 1

    async def hset(self, key: str, field: str | None = None, value: Any = None, mapping: dict | None = None) -> int:
        data = self.hashes.setdefault(key, {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        added = 0
        for k, v in items.items():
            if k not in data:
                added += 1
            data[k] = str(v)
        return added

    async def hget(self, key: str, field: str) -> str | None:
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        data = self.hashes.setdefault(key, {})
        data[field] = str(int(data.get(field) or 0) + amount)
        return int(data[field])

    # Keys

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for store in (self.hashes, self.zsets, self.streams):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(
            1 for key in keys if key in self.hashes or key in self.zsets or key in self.streams
        )

    # Sorted sets

    async def zadd(self, key: str, mapping: dict[str, float], xx: bool = False) -> int:
        zset = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if xx and member not in zset:
                continue
            if member not in zset:
                added += 1
            zset[member] = float(score)
        if not zset:
            del self.zsets[key]
        return added

    async def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        return removed

    async def zrangebyscore(
        self,
        key: str,
        min: Any,
        max: Any,
        start: int | None = None,
        num: int | None = None,
    ) -> list[str]:
        low, high = _score_bound(min), _score_bound(max)
        members = sorted(
            (score, member)
            for member, score in self.zsets.get(key, {}).items()
            if low <= score <= high
        )
        result = [member for _, member in members]
        if start is not None and num is not None:
            result = result[start : start + num]
        return result

    async def zscore(self, key: str, member: str) -> float | None:
        return self.zsets.get(key, {}).get(member)

    # Streams

    async def xadd(
        self,
        key: str,
        fields: dict[str, Any],
        maxlen: int | None = None,
        approximate: bool = True,
    ) -> str:
        message_id = f"{next(self._stream_seq)}-0"
        stream = self.streams.setdefault(key, [])
        stream.append((message_id, {k: str(v) for k, v in fields.items()}))
        if maxlen is not None and len(stream) > maxlen:
            del stream[: len(stream) - maxlen]
        return message_id

    async def xrange(
        self, key: str, min: str = "-", max: str = "+", count: int | None = None
    ) -> list[tuple[str, dict[str, str]]]:
        result = []
        for message_id, data in self.streams.get(key, []):
            if min != "-" and _stream_id(message_id) < _stream_id(min):
                continue
            if max != "+" and _stream_id(message_id) > _stream_id(max):
                continue
            result.append((message_id, dict(data)))
        if count is not None:
            result = result[:count]
        return result

    async def xdel(self, key: str, *ids: str) -> int:
        stream = self.streams.get(key, [])
        before = len(stream)
        self.streams[key] = [(mid, data) for mid, data in stream if mid not in ids]
        return before - len(self.streams[key])

    # Transactions

    def snapshot(self, key: str) -> Any:
        """Deep copy of whatever is stored under ``key`` (None when absent)."""
        return copy.deepcopy(self.hashes.get(key) or self.zsets.get(key) or self.streams.get(key))

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    # Connection

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class FakePipeline:
    """MULTI/EXEC pipeline over FakeRedis.

    Commands issued after ``watch()`` and before ``multi()`` run immediately,
    as in redis-py; everything else is buffered until ``execute()``, which
    raises WatchError when a watched key changed in between.
    """

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple, dict]] = []
        self._watched: dict[str, Any] = {}
        self._buffering = True

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.reset()

    async def watch(self, *keys: str) -> bool:
        self._watched = {key: self._redis.snapshot(key) for key in keys}
        self._buffering = False
        return True

    def multi(self) -> None:
        self._buffering = True

    async def reset(self) -> None:
        self._commands.clear()
        self._watched = {}
        self._buffering = True

    async def execute(self) -> list[Any]:
        commands, self._commands = self._commands, []
        watched, self._watched = self._watched, {}
        if any(self._redis.snapshot(key) != value for key, value in watched.items()):
            raise WatchError("Watched variable changed.")
        return [await getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in commands]

    def __getattr__(self, name: str) -> Any:
        command = getattr(self._redis, name)
        if not self._buffering:
            return command

        def buffer(*args: Any, **kwargs: Any) -> FakePipeline:
            self._commands.append((name, args, kwargs))
            return self

        return buffer


# ── Repository ──────────────────────────────────────────────────────────────


class InMemoryCalendarRepository:
    """Dict-backed CalendarRepository with the same method surface."""

    def __init__(self) -> None:
        self.users: dict[uuid.UUID, User] = {}
        self.calendars: dict[uuid.UUID, Calendar] = {}
        self.events: dict[uuid.UUID, CalendarEvent] = {}
        self.webhooks: list[CalendarWebhook] = []

    # Users

    async def create_user(self, email: str) -> User:
        user = User(email=email.lower())
        self.users[user.id] = user
        return user.model_copy(deep=True)

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def list_users_by_domain(
        self, domain: str, exclude_user_id: uuid.UUID | None = None
    ) -> list[User]:
        suffix = f"@{domain.lower()}"
        return [
            u.model_copy(deep=True)
            for u in self.users.values()
            if u.email.lower().endswith(suffix) and u.id != exclude_user_id
        ]

    # Calendars

    async def create_calendar(self, calendar: Calendar) -> Calendar:
        self.calendars[calendar.id] = calendar.model_copy(deep=True)
        return calendar.model_copy(deep=True)

    async def get_calendar(self, calendar_id: uuid.UUID) -> Calendar | None:
        calendar = self.calendars.get(calendar_id)
        return calendar.model_copy(deep=True) if calendar else None

    async def get_calendar_by_remote_id(self, remote_id: str) -> Calendar | None:
        for calendar in self.calendars.values():
            if calendar.remote_id == remote_id:
                return calendar.model_copy(deep=True)
        return None

    async def list_calendars_with_remote_id(self) -> list[Calendar]:
        return [c.model_copy(deep=True) for c in self.calendars.values() if c.remote_id]

    async def update_calendar_remote_state(
        self,
        calendar_id: uuid.UUID,
        status: CalendarStatus,
        remote_snapshot: dict[str, Any] | None = None,
    ) -> Calendar:
        calendar = self.calendars.get(calendar_id)
        if calendar is None:
            raise ValueError(f"Calendar not found: id={calendar_id}")
        calendar.status = status
        if remote_snapshot is not None:
            calendar.remote_snapshot = copy.deepcopy(remote_snapshot)
        return calendar.model_copy(deep=True)

    # Events

    async def get_event(self, event_id: uuid.UUID) -> CalendarEvent | None:
        event = self.events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def get_event_by_remote_id(self, remote_id: str) -> CalendarEvent | None:
        for event in self.events.values():
            if event.remote_id == remote_id:
                return event.model_copy(deep=True)
        return None

    async def list_events_by_remote_ids(
        self, calendar_id: uuid.UUID, remote_ids: Iterable[str]
    ) -> list[CalendarEvent]:
        ids = set(remote_ids)
        return [
            e.model_copy(deep=True)
            for e in self.events.values()
            if e.calendar_id == calendar_id and e.remote_id in ids
        ]

    async def list_future_events(
        self, calendar_ids: Iterable[uuid.UUID], now: datetime
    ) -> list[CalendarEvent]:
        ids = set(calendar_ids)
        events = [
            e for e in self.events.values() if e.calendar_id in ids and e.start_time > now
        ]
        return [e.model_copy(deep=True) for e in sorted(events, key=lambda e: e.start_time)]

    async def list_organization_events(
        self, user_ids: Iterable[uuid.UUID], now: datetime
    ) -> list[OrganizationEvent]:
        ids = set(user_ids)
        result = []
        for event in sorted(self.events.values(), key=lambda e: e.start_time):
            calendar = self.calendars.get(event.calendar_id)
            if calendar is None or calendar.user_id not in ids or event.start_time <= now:
                continue
            user = self.users[calendar.user_id]
            result.append(
                OrganizationEvent(
                    event=event.model_copy(deep=True),
                    user_id=user.id,
                    user_email=user.email,
                )
            )
        return result

    async def upsert_event(
        self, calendar_id: uuid.UUID, remote_snapshot: dict[str, Any]
    ) -> tuple[CalendarEvent, bool]:
        remote_id = remote_snapshot.get("id")
        if not remote_id:
            raise ValueError("Calendar event snapshot has no id")
        projected = project_remote_event(remote_snapshot)
        snapshot = copy.deepcopy(remote_snapshot)

        for event in self.events.values():
            if event.remote_id == remote_id:
                event.calendar_id = calendar_id
                event.remote_snapshot = snapshot
                for key, value in projected.items():
                    setattr(event, key, value)
                return event.model_copy(deep=True), False

        event = CalendarEvent(
            calendar_id=calendar_id,
            remote_id=remote_id,
            remote_snapshot=snapshot,
            **projected,
        )
        self.events[event.id] = event
        return event.model_copy(deep=True), True

    async def delete_event(self, calendar_id: uuid.UUID, remote_id: str) -> int:
        doomed = [
            e.id
            for e in self.events.values()
            if e.calendar_id == calendar_id and e.remote_id == remote_id
        ]
        for event_id in doomed:
            del self.events[event_id]
        return len(doomed)

    async def update_event_snapshot(
        self, event_id: uuid.UUID, remote_snapshot: dict[str, Any]
    ) -> CalendarEvent:
        event = self.events.get(event_id)
        if event is None:
            raise ValueError(f"Calendar event not found: id={event_id}")
        event.remote_snapshot = copy.deepcopy(remote_snapshot)
        for key, value in project_remote_event(remote_snapshot).items():
            setattr(event, key, value)
        return event.model_copy(deep=True)

    async def update_event_auto_record(
        self, event_id: uuid.UUID, should_record_automatic: bool
    ) -> CalendarEvent:
        event = self.events.get(event_id)
        if event is None:
            raise ValueError(f"Calendar event not found: id={event_id}")
        event.should_record_automatic = should_record_automatic
        return event.model_copy(deep=True)

    async def update_event_manual_record(
        self, event_id: uuid.UUID, should_record_manual: bool
    ) -> CalendarEvent:
        event = self.events.get(event_id)
        if event is None:
            raise ValueError(f"Calendar event not found: id={event_id}")
        event.should_record_manual = should_record_manual
        return event.model_copy(deep=True)

    async def save_webhook(
        self, calendar_id: uuid.UUID, event: str, payload: dict[str, Any]
    ) -> CalendarWebhook:
        webhook = CalendarWebhook(
            calendar_id=calendar_id,
            event=event,
            payload=copy.deepcopy(payload),
            received_at=datetime.now(timezone.utc),
        )
        self.webhooks.append(webhook)
        return webhook


# ── Provider ────────────────────────────────────────────────────────────────


def make_http_error(status: int, method: str = "POST") -> httpx.HTTPStatusError:
    request = httpx.Request(method, "https://us-west-2.recall.ai/api/v2/calendar-events/x/bot/")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class FakeRecallClient:
    """Provider double: calendars and events live in dicts, calls are recorded.

    Errors queued in ``add_bot_errors`` / ``remove_bot_errors`` are raised
    by the next matching call; ``calendar_errors`` maps a calendar id to
    the exception ``get_calendar`` raises for it.
    """

    def __init__(self) -> None:
        self.calendars: dict[str, dict[str, Any]] = {}
        self.events: dict[str, dict[str, Any]] = {}
        self.calendar_errors: dict[str, Exception] = {}
        self.event_lookup_errors: dict[str, Exception] = {}
        self.list_errors: dict[str, Exception] = {}
        self.add_bot_errors: list[Exception] = []
        self.remove_bot_errors: list[Exception] = []
        self.add_bot_calls: list[dict[str, Any]] = []
        self.remove_bot_calls: list[str] = []
        self.list_calls: list[tuple[str, str]] = []
        self._bot_ids = itertools.count(1)

    def put_event(self, payload: dict[str, Any]) -> None:
        self.events[payload["id"]] = copy.deepcopy(payload)

    async def get_calendar(self, calendar_id: str) -> dict:
        if calendar_id in self.calendar_errors:
            raise self.calendar_errors[calendar_id]
        return copy.deepcopy(self.calendars[calendar_id])

    async def list_calendar_events(self, calendar_id: str, since: str) -> list[dict]:
        self.list_calls.append((calendar_id, since))
        if calendar_id in self.list_errors:
            raise self.list_errors[calendar_id]
        watermark = parse_timestamp(since)
        result = []
        for payload in self.events.values():
            if payload.get("calendar_id") != calendar_id:
                continue
            updated_at = parse_timestamp(payload.get("updated_at"))
            if watermark and updated_at and updated_at < watermark:
                continue
            result.append(copy.deepcopy(payload))
        return result

    async def get_calendar_event(self, event_id: str) -> dict:
        if event_id in self.event_lookup_errors:
            raise self.event_lookup_errors[event_id]
        if event_id not in self.events:
            raise make_http_error(404, "GET")
        return copy.deepcopy(self.events[event_id])

    async def add_bot(self, event_id: str, deduplication_key: str, bot_config: dict) -> dict:
        self.add_bot_calls.append(
            {
                "event_id": event_id,
                "deduplication_key": deduplication_key,
                "bot_config": copy.deepcopy(bot_config),
            }
        )
        if self.add_bot_errors:
            raise self.add_bot_errors.pop(0)
        payload = self.events[event_id]
        payload["bots"] = [
            {
                "bot_id": f"bot-{next(self._bot_ids)}",
                "deduplication_key": deduplication_key,
                "start_time": bot_config.get("join_at"),
            }
        ]
        return copy.deepcopy(payload)

    async def remove_bot(self, event_id: str) -> dict | None:
        self.remove_bot_calls.append(event_id)
        if self.remove_bot_errors:
            raise self.remove_bot_errors.pop(0)
        payload = self.events.get(event_id)
        if payload is None:
            return None
        payload["bots"] = []
        return copy.deepcopy(payload)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def clock():
    """Clock frozen at 2026-03-02 15:00 UTC."""
    return FakeClock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def job_queue(fake_redis, clock):
    """JobQueue on the in-memory Redis, driven by the fake clock."""
    return JobQueue(fake_redis, prefix="test:jobs", clock=clock.ms, poll_interval=0.01)


@pytest.fixture
def repository():
    return InMemoryCalendarRepository()


@pytest.fixture
def recall():
    return FakeRecallClient()


@pytest.fixture
def http_error():
    """Factory: ``http_error(409)`` -> httpx.HTTPStatusError."""
    return make_http_error


@pytest.fixture
def make_remote_event(clock):
    """Factory for provider calendar-event payloads (Google shape by default)."""

    def _make(
        event_id: str,
        calendar_remote_id: str,
        start: datetime | None = None,
        duration_minutes: int = 30,
        meeting_url: str | None = "https://zoom.us/j/123",
        attendees: Iterable[tuple[str, str]] = (("guest@partner.io", "accepted"),),
        organizer: str | None = None,
        bots: list[dict[str, Any]] | None = None,
        updated_at: datetime | None = None,
        is_deleted: bool = False,
        platform: str = "google_calendar",
        title: str = "Sync",
    ) -> dict[str, Any]:
        start = start or clock.now() + timedelta(hours=1)
        raw: dict[str, Any] = {
            "summary": title,
            "attendees": [{"email": email, "responseStatus": status} for email, status in attendees],
        }
        if organizer:
            raw["organizer"] = {"email": organizer}
        return {
            "id": event_id,
            "calendar_id": calendar_remote_id,
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(minutes=duration_minutes)).isoformat(),
            "meeting_url": meeting_url,
            "platform": platform,
            "is_deleted": is_deleted,
            "updated_at": (updated_at or clock.now()).isoformat(),
            "bots": list(bots or []),
            "raw": raw,
        }

    return _make


@pytest.fixture
def seed_calendar(repository):
    """Factory: create a user (reused by email) and a connected calendar."""

    async def _seed(email: str, remote_id: str, **settings: Any) -> Calendar:
        user = next((u for u in repository.users.values() if u.email == email.lower()), None)
        if user is None:
            user = await repository.create_user(email)
        calendar = Calendar(
            user_id=user.id,
            remote_id=remote_id,
            status=settings.pop("status", CalendarStatus.CONNECTED),
            remote_snapshot=settings.pop("remote_snapshot", {"platform_email": email.lower()}),
            **settings,
        )
        return await repository.create_calendar(calendar)

    return _seed


@pytest.fixture
def seed_event(repository):
    """Factory: store a provider payload locally and set its recording flags."""

    async def _seed(
        calendar: Calendar,
        payload: dict[str, Any],
        manual: bool = False,
        automatic: bool = False,
    ) -> CalendarEvent:
        event, _ = await repository.upsert_event(calendar.id, payload)
        if manual:
            event = await repository.update_event_manual_record(event.id, True)
        if automatic:
            event = await repository.update_event_auto_record(event.id, True)
        return event

    return _seed
