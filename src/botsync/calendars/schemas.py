"""Pydantic v2 schemas for users, calendars, calendar events, and webhooks.

Calendar events mirror the provider's last-known state in ``remote_snapshot``.
The columns the scheduler needs (time window, meeting URL, platform, title)
are projected out of that snapshot by ``project_remote_event`` on every
upsert so queries never have to dig into the JSON blob.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class Platform(str, Enum):
    """Calendar platform the provider syncs from."""

    GOOGLE_CALENDAR = "google_calendar"
    MICROSOFT_OUTLOOK = "microsoft_outlook"


class CalendarStatus(str, Enum):
    """Connection status of a calendar at the provider.

    connecting -> connected <-> disconnected. A disconnected calendar needs
    an external OAuth reconnect before the provider syncs it again.
    """

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class TranscriptionMode(str, Enum):
    """How the bot transcribes: streamed during the call or after it ends."""

    REALTIME = "realtime"
    ASYNC = "async"


# ── Users & Calendars ────────────────────────────────────────────────────────


class User(BaseModel):
    """Owner of one or more calendars."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    email: str


class Calendar(BaseModel):
    """A user's connected calendar and its bot policy settings."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: uuid.UUID
    remote_id: str | None = None
    platform: Platform = Platform.GOOGLE_CALENDAR
    status: CalendarStatus = CalendarStatus.CONNECTING

    # Bot appearance
    bot_name: str | None = "Meeting Assistant"
    bot_avatar_url: str | None = None

    # Recording
    record_video: bool = True
    record_audio: bool = True

    # Transcription
    enable_transcription: bool = True
    transcription_language: str | None = "en"
    transcription_mode: TranscriptionMode = TranscriptionMode.REALTIME

    # Auto-record policy
    auto_record_external_events: bool = False
    auto_record_internal_events: bool = False
    auto_record_only_confirmed_events: bool = False

    # Join / leave timing
    join_before_start_minutes: int = 1
    leave_after_end_minutes: int = 0
    auto_leave_if_alone: bool = True
    auto_leave_alone_timeout_seconds: int = 60

    remote_snapshot: dict[str, Any] = Field(default_factory=dict)

    @property
    def email(self) -> str:
        """Mailbox address the provider reports for this calendar."""
        snapshot = self.remote_snapshot or {}
        return snapshot.get("platform_email") or snapshot.get("email") or ""


# ── Calendar Events ──────────────────────────────────────────────────────────


class CalendarEvent(BaseModel):
    """Local projection of a provider calendar event."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    calendar_id: uuid.UUID
    remote_id: str
    start_time: datetime
    end_time: datetime
    meeting_url: str | None = None
    platform: str | None = None
    title: str = ""
    should_record_automatic: bool = False
    should_record_manual: bool = False
    transcription_mode: TranscriptionMode | None = None
    remote_snapshot: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None

    @property
    def raw(self) -> dict[str, Any]:
        """Platform-native event payload (Google or Graph shape)."""
        return (self.remote_snapshot or {}).get("raw") or {}

    @property
    def bots(self) -> list[dict[str, Any]]:
        """Bots the provider reports as attached to this event."""
        bots = (self.remote_snapshot or {}).get("bots") or []
        return [b for b in bots if isinstance(b, dict)]

    @property
    def bot_ids(self) -> list[str]:
        return extract_bot_ids(self.remote_snapshot)

    @property
    def should_record(self) -> bool:
        return self.should_record_automatic or self.should_record_manual


class OrganizationEvent(BaseModel):
    """A calendar event together with the user who owns its calendar."""

    event: CalendarEvent
    user_id: uuid.UUID
    user_email: str


class CalendarWebhook(BaseModel):
    """Audit record of a calendar webhook received from the provider."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    calendar_id: uuid.UUID
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime


# ── Snapshot Helpers ─────────────────────────────────────────────────────────


def extract_bot_ids(snapshot: dict[str, Any] | None) -> list[str]:
    """Return bot ids from a provider event payload.

    Calendar v2 payloads list bots as ``{"bot_id": ...}``; older payloads
    use ``{"id": ...}``.
    """
    bots = (snapshot or {}).get("bots") or []
    ids: list[str] = []
    for bot in bots:
        if not isinstance(bot, dict):
            continue
        bot_id = bot.get("bot_id") or bot.get("id")
        if bot_id:
            ids.append(str(bot_id))
    return ids


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed).

    Values without an offset are taken as UTC, so results always compare
    against aware datetimes.
    """
    if isinstance(value, datetime):
        parsed = value
    elif not value or not isinstance(value, str):
        return None
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def project_remote_event(snapshot: dict[str, Any]) -> dict[str, Any]:
    """Project the scheduler-relevant columns out of a provider event payload.

    Returns:
        Dict with start_time, end_time, meeting_url, platform and title.

    Raises:
        ValueError: If the payload has no parseable start or end time.
    """
    start_time = parse_timestamp(snapshot.get("start_time"))
    end_time = parse_timestamp(snapshot.get("end_time"))
    if start_time is None or end_time is None:
        msg = f"Calendar event {snapshot.get('id')!r} is missing start_time/end_time"
        raise ValueError(msg)

    raw = snapshot.get("raw") or {}
    meeting_url = snapshot.get("meeting_url")
    if not meeting_url:
        online_meeting = raw.get("onlineMeeting") or {}
        meeting_url = online_meeting.get("joinUrl") or raw.get("hangoutLink")

    return {
        "start_time": start_time,
        "end_time": end_time,
        "meeting_url": meeting_url or None,
        "platform": snapshot.get("platform"),
        "title": raw.get("summary") or raw.get("subject") or snapshot.get("title") or "",
    }
