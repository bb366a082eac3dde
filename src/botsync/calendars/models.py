"""Calendar persistence models.

Four SQLAlchemy models:
- UserModel: Calendar owners (email drives organization detection)
- CalendarModel: Connected calendars with bot policy settings
- CalendarEventModel: Provider events with projected columns + raw snapshot
- CalendarWebhookModel: Audit trail of received calendar webhooks
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.botsync.core.database import Base


class UserModel(Base):
    """Owner of connected calendars."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class CalendarModel(Base):
    """A user's calendar connected to the provisioning provider.

    ``status`` mirrors the provider's connection status and is flipped to
    ``disconnected`` by the connection monitor on auth/not-found errors.
    """

    __tablename__ = "calendars"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    remote_id: Mapped[str | None] = mapped_column(String(200), nullable=True, unique=True)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default="connecting",
        server_default=text("'connecting'"),
    )

    bot_name: Mapped[str | None] = mapped_column(String(200), nullable=True, default="Meeting Assistant")
    bot_avatar_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    record_video: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    record_audio: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    enable_transcription: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    transcription_language: Mapped[str | None] = mapped_column(String(20), nullable=True, default="en")
    transcription_mode: Mapped[str] = mapped_column(
        String(20),
        default="realtime",
        server_default=text("'realtime'"),
    )

    auto_record_external_events: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    auto_record_internal_events: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    auto_record_only_confirmed_events: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )

    join_before_start_minutes: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    leave_after_end_minutes: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    auto_leave_if_alone: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    auto_leave_alone_timeout_seconds: Mapped[int] = mapped_column(Integer, default=60, server_default=text("60"))

    remote_snapshot: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class CalendarEventModel(Base):
    """Provider calendar event with scheduler-relevant projected columns."""

    __tablename__ = "calendar_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    calendar_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("calendars.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    remote_id: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    meeting_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    platform: Mapped[str | None] = mapped_column(String(50), nullable=True)
    title: Mapped[str] = mapped_column(String(1000), default="", server_default=text("''"))
    should_record_automatic: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    should_record_manual: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    transcription_mode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    remote_snapshot: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
        index=True,
    )


class CalendarWebhookModel(Base):
    """Raw calendar webhook as received from the provider."""

    __tablename__ = "calendar_webhooks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    calendar_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("calendars.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
