"""Calendar repository -- async CRUD for users, calendars, events, and webhooks.

Provides CalendarRepository with the session_factory callable pattern.
Handles conversion between SQLAlchemy models and the Pydantic schemas the
scheduler, reconciler, and connection monitor work with.

Event rows are always written from a provider snapshot: the projected
columns are recomputed by ``project_remote_event`` so they never drift from
``remote_snapshot``.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.botsync.calendars.models import (
    CalendarEventModel,
    CalendarModel,
    CalendarWebhookModel,
    UserModel,
)
from src.botsync.calendars.schemas import (
    Calendar,
    CalendarEvent,
    CalendarStatus,
    CalendarWebhook,
    OrganizationEvent,
    Platform,
    TranscriptionMode,
    User,
    project_remote_event,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_user(model: UserModel) -> User:
    return User(id=model.id, email=model.email)


def _model_to_calendar(model: CalendarModel) -> Calendar:
    """Convert CalendarModel to Calendar schema."""
    return Calendar(
        id=model.id,
        user_id=model.user_id,
        remote_id=model.remote_id,
        platform=Platform(model.platform),
        status=CalendarStatus(model.status),
        bot_name=model.bot_name,
        bot_avatar_url=model.bot_avatar_url,
        record_video=model.record_video,
        record_audio=model.record_audio,
        enable_transcription=model.enable_transcription,
        transcription_language=model.transcription_language,
        transcription_mode=TranscriptionMode(model.transcription_mode),
        auto_record_external_events=model.auto_record_external_events,
        auto_record_internal_events=model.auto_record_internal_events,
        auto_record_only_confirmed_events=model.auto_record_only_confirmed_events,
        join_before_start_minutes=model.join_before_start_minutes,
        leave_after_end_minutes=model.leave_after_end_minutes,
        auto_leave_if_alone=model.auto_leave_if_alone,
        auto_leave_alone_timeout_seconds=model.auto_leave_alone_timeout_seconds,
        remote_snapshot=model.remote_snapshot or {},
    )


def _model_to_event(model: CalendarEventModel) -> CalendarEvent:
    """Convert CalendarEventModel to CalendarEvent schema."""
    return CalendarEvent(
        id=model.id,
        calendar_id=model.calendar_id,
        remote_id=model.remote_id,
        start_time=model.start_time,
        end_time=model.end_time,
        meeting_url=model.meeting_url,
        platform=model.platform,
        title=model.title or "",
        should_record_automatic=model.should_record_automatic,
        should_record_manual=model.should_record_manual,
        transcription_mode=(
            TranscriptionMode(model.transcription_mode)
            if model.transcription_mode
            else None
        ),
        remote_snapshot=model.remote_snapshot or {},
        updated_at=model.updated_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class CalendarRepository:
    """Async CRUD operations for calendar entities.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Users ────────────────────────────────────────────────────────────

    async def create_user(self, email: str) -> User:
        async for session in self._session_factory():
            model = UserModel(email=email.lower())
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_user(model)

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        async for session in self._session_factory():
            model = await session.get(UserModel, user_id)
            if model is None:
                return None
            return _model_to_user(model)

    async def list_users_by_domain(
        self, domain: str, exclude_user_id: uuid.UUID | None = None
    ) -> list[User]:
        """List users whose email address is on ``domain``.

        Args:
            domain: Organization domain, e.g. "acme.com".
            exclude_user_id: Optional user to leave out (the requester).

        Returns:
            Matching users.
        """
        async for session in self._session_factory():
            stmt = select(UserModel).where(
                UserModel.email.ilike(f"%@{domain.lower()}")
            )
            if exclude_user_id is not None:
                stmt = stmt.where(UserModel.id != exclude_user_id)
            result = await session.execute(stmt)
            return [_model_to_user(m) for m in result.scalars().all()]

    # ── Calendars ────────────────────────────────────────────────────────

    async def create_calendar(self, calendar: Calendar) -> Calendar:
        """Persist a new calendar row from a Calendar schema."""
        async for session in self._session_factory():
            data = calendar.model_dump(mode="json")
            model = CalendarModel(
                id=calendar.id,
                user_id=calendar.user_id,
                **{
                    k: v
                    for k, v in data.items()
                    if k not in ("id", "user_id")
                },
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_calendar(model)

    async def get_calendar(self, calendar_id: uuid.UUID) -> Calendar | None:
        async for session in self._session_factory():
            model = await session.get(CalendarModel, calendar_id)
            if model is None:
                return None
            return _model_to_calendar(model)

    async def get_calendar_by_remote_id(self, remote_id: str) -> Calendar | None:
        """Get a calendar by the provider's calendar id."""
        async for session in self._session_factory():
            stmt = select(CalendarModel).where(CalendarModel.remote_id == remote_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_calendar(model)

    async def list_calendars_with_remote_id(self) -> list[Calendar]:
        """List every calendar that has been registered with the provider."""
        async for session in self._session_factory():
            stmt = (
                select(CalendarModel)
                .where(CalendarModel.remote_id.is_not(None))
                .order_by(CalendarModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_calendar(m) for m in result.scalars().all()]

    async def update_calendar_remote_state(
        self,
        calendar_id: uuid.UUID,
        status: CalendarStatus,
        remote_snapshot: dict[str, Any] | None = None,
    ) -> Calendar:
        """Store the provider's connection status (and optionally its payload).

        Raises:
            ValueError: If the calendar is not found.
        """
        async for session in self._session_factory():
            model = await session.get(CalendarModel, calendar_id)
            if model is None:
                raise ValueError(f"Calendar not found: id={calendar_id}")

            model.status = status.value
            if remote_snapshot is not None:
                model.remote_snapshot = remote_snapshot
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_calendar(model)

    # ── Calendar Events ──────────────────────────────────────────────────

    async def get_event(self, event_id: uuid.UUID) -> CalendarEvent | None:
        async for session in self._session_factory():
            model = await session.get(CalendarEventModel, event_id)
            if model is None:
                return None
            return _model_to_event(model)

    async def get_event_by_remote_id(self, remote_id: str) -> CalendarEvent | None:
        """Get a calendar event by the provider's event id."""
        async for session in self._session_factory():
            stmt = select(CalendarEventModel).where(
                CalendarEventModel.remote_id == remote_id
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_event(model)

    async def list_events_by_remote_ids(
        self, calendar_id: uuid.UUID, remote_ids: Iterable[str]
    ) -> list[CalendarEvent]:
        ids = list(remote_ids)
        if not ids:
            return []
        async for session in self._session_factory():
            stmt = select(CalendarEventModel).where(
                CalendarEventModel.calendar_id == calendar_id,
                CalendarEventModel.remote_id.in_(ids),
            )
            result = await session.execute(stmt)
            return [_model_to_event(m) for m in result.scalars().all()]

    async def list_future_events(
        self, calendar_ids: Iterable[uuid.UUID], now: datetime
    ) -> list[CalendarEvent]:
        """List events on the given calendars that start after ``now``.

        Returns:
            Events ordered by start_time.
        """
        ids = list(calendar_ids)
        if not ids:
            return []
        async for session in self._session_factory():
            stmt = (
                select(CalendarEventModel)
                .where(
                    CalendarEventModel.calendar_id.in_(ids),
                    CalendarEventModel.start_time > now,
                )
                .order_by(CalendarEventModel.start_time)
            )
            result = await session.execute(stmt)
            return [_model_to_event(m) for m in result.scalars().all()]

    async def list_organization_events(
        self, user_ids: Iterable[uuid.UUID], now: datetime
    ) -> list[OrganizationEvent]:
        """List future events owned by the given users, tagged with their owner.

        Args:
            user_ids: Users whose calendars are searched.
            now: Only events starting after this instant are returned.

        Returns:
            OrganizationEvent list ordered by start_time.
        """
        ids = list(user_ids)
        if not ids:
            return []
        async for session in self._session_factory():
            stmt = (
                select(CalendarEventModel, UserModel)
                .join(CalendarModel, CalendarModel.id == CalendarEventModel.calendar_id)
                .join(UserModel, UserModel.id == CalendarModel.user_id)
                .where(
                    UserModel.id.in_(ids),
                    CalendarEventModel.start_time > now,
                )
                .order_by(CalendarEventModel.start_time)
            )
            result = await session.execute(stmt)
            return [
                OrganizationEvent(
                    event=_model_to_event(event_model),
                    user_id=user_model.id,
                    user_email=user_model.email,
                )
                for event_model, user_model in result.all()
            ]

    async def upsert_event(
        self, calendar_id: uuid.UUID, remote_snapshot: dict[str, Any]
    ) -> tuple[CalendarEvent, bool]:
        """Insert or update an event keyed by its provider id.

        Recording flags are left untouched on update; they are owned by the
        auto-record evaluator and by users.

        Returns:
            Tuple of (event, created).

        Raises:
            ValueError: If the snapshot lacks an id or a parseable time window.
        """
        remote_id = remote_snapshot.get("id")
        if not remote_id:
            raise ValueError("Calendar event snapshot has no id")
        projected = project_remote_event(remote_snapshot)
        now = datetime.now(timezone.utc)

        async for session in self._session_factory():
            existing = await session.execute(
                select(CalendarEventModel.id).where(
                    CalendarEventModel.remote_id == remote_id
                )
            )
            created = existing.scalar_one_or_none() is None

            stmt = pg_insert(CalendarEventModel).values(
                id=uuid.uuid4(),
                calendar_id=calendar_id,
                remote_id=remote_id,
                remote_snapshot=remote_snapshot,
                updated_at=now,
                **projected,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[CalendarEventModel.remote_id],
                set_={
                    "calendar_id": calendar_id,
                    "remote_snapshot": remote_snapshot,
                    "updated_at": now,
                    **projected,
                },
            ).returning(CalendarEventModel)
            result = await session.execute(stmt)
            model = result.scalar_one()
            await session.commit()
            return _model_to_event(model), created

    async def delete_event(self, calendar_id: uuid.UUID, remote_id: str) -> int:
        """Delete an event by provider id.

        Returns:
            Number of rows deleted (0 when the event was never stored).
        """
        async for session in self._session_factory():
            stmt = delete(CalendarEventModel).where(
                CalendarEventModel.calendar_id == calendar_id,
                CalendarEventModel.remote_id == remote_id,
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def update_event_snapshot(
        self, event_id: uuid.UUID, remote_snapshot: dict[str, Any]
    ) -> CalendarEvent:
        """Replace an event's snapshot with the provider's latest payload.

        Raises:
            ValueError: If the event is not found.
        """
        projected = project_remote_event(remote_snapshot)
        async for session in self._session_factory():
            model = await session.get(CalendarEventModel, event_id)
            if model is None:
                raise ValueError(f"Calendar event not found: id={event_id}")

            model.remote_snapshot = remote_snapshot
            for key, value in projected.items():
                setattr(model, key, value)
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_event(model)

    async def update_event_auto_record(
        self, event_id: uuid.UUID, should_record_automatic: bool
    ) -> CalendarEvent:
        """Set the automatic recording flag.

        Raises:
            ValueError: If the event is not found.
        """
        async for session in self._session_factory():
            model = await session.get(CalendarEventModel, event_id)
            if model is None:
                raise ValueError(f"Calendar event not found: id={event_id}")

            model.should_record_automatic = should_record_automatic
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_event(model)

    async def update_event_manual_record(
        self, event_id: uuid.UUID, should_record_manual: bool
    ) -> CalendarEvent:
        """Set the user-controlled recording flag.

        Raises:
            ValueError: If the event is not found.
        """
        async for session in self._session_factory():
            model = await session.get(CalendarEventModel, event_id)
            if model is None:
                raise ValueError(f"Calendar event not found: id={event_id}")

            model.should_record_manual = should_record_manual
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_event(model)

    # ── Webhooks ─────────────────────────────────────────────────────────

    async def save_webhook(
        self, calendar_id: uuid.UUID, event: str, payload: dict[str, Any]
    ) -> CalendarWebhook:
        """Persist a received calendar webhook for audit."""
        async for session in self._session_factory():
            model = CalendarWebhookModel(
                calendar_id=calendar_id,
                event=event,
                payload=payload,
                received_at=datetime.now(timezone.utc),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return CalendarWebhook(
                id=model.id,
                calendar_id=model.calendar_id,
                event=model.event,
                payload=model.payload or {},
                received_at=model.received_at,
            )
