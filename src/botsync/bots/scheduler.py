"""Per-event bot scheduling state machine.

BotScheduler.reconcile_event drives one calendar event toward the bot
presence its recording flags ask for:

    no_bot_needed --(flag on)--> bot_requested --(add_bot)--> bot_present
    bot_present --(flags off / no URL)--> bot_removed

Every run is idempotent. The provider's deduplication key collapses
repeated add-bot calls, a 409 from the provider is absorbed as "someone
else already holds the bot", and events that already started are never
touched.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from src.botsync.bots.config import build_bot_config
from src.botsync.bots.shared import event_deduplication_key
from src.botsync.calendars.schemas import CalendarEvent, CalendarStatus
from src.botsync.core.monitoring import bot_schedule_outcomes_total
from src.botsync.recall.errors import is_conflict, is_not_found

if TYPE_CHECKING:
    from src.botsync.bots.shared import SharedBotDeduplicator
    from src.botsync.calendars.repository import CalendarRepository
    from src.botsync.recall.client import RecallClient

logger = structlog.get_logger(__name__)

MAX_JOIN_BEFORE_START_MINUTES = 15
MAX_LEAVE_AFTER_END_MINUTES = 30


class ScheduleOutcome(str, Enum):
    """Result of one reconcile_event run."""

    EVENT_NOT_FOUND = "event_not_found"
    BOT_REMOVED = "bot_removed"
    SKIPPED_PAST = "skipped_past"
    SKIPPED_DISCONNECTED = "skipped_disconnected"
    SKIPPED_BOT_PRESENT = "skipped_bot_present"
    SKIPPED_SHARED_BOT = "skipped_shared_bot"
    BOT_SCHEDULED = "bot_scheduled"
    CONFLICT_ABSORBED = "conflict_absorbed"


class BotState(str, Enum):
    """Bot presence of a calendar event as far as the local snapshot knows."""

    NO_BOT_NEEDED = "no_bot_needed"
    BOT_REQUESTED = "bot_requested"
    BOT_PRESENT = "bot_present"
    BOT_REMOVED = "bot_removed"


def infer_bot_state(event: CalendarEvent) -> BotState:
    """Current state of an event as read from its flags and snapshot.

    ``bot_removed`` is only reported by a removal run; once the snapshot
    is refreshed the event reads as ``no_bot_needed`` again.
    """
    if event.bots:
        return BotState.BOT_PRESENT
    if event.should_record and event.meeting_url:
        return BotState.BOT_REQUESTED
    return BotState.NO_BOT_NEEDED


def clamp(value: int | None, low: int, high: int) -> int:
    if value is None:
        return low
    return max(low, min(high, value))


def compute_join_at(start_time: datetime, join_before_start_minutes: int | None) -> datetime:
    """When the bot joins: start minus 0-15 minutes."""
    minutes = clamp(join_before_start_minutes, 0, MAX_JOIN_BEFORE_START_MINUTES)
    return start_time - timedelta(minutes=minutes)


def compute_leave_at(end_time: datetime, leave_after_end_minutes: int | None) -> datetime:
    """When the bot is expected to leave: end plus 0-30 minutes."""
    minutes = clamp(leave_after_end_minutes, 0, MAX_LEAVE_AFTER_END_MINUTES)
    return end_time + timedelta(minutes=minutes)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BotScheduler:
    """Adds or removes the provider bot for one calendar event.

    Args:
        repository: Calendar repository (events, calendars, users).
        recall_client: Provisioning API client.
        deduplicator: Shared-bot deduplicator for organization peers.
        public_url: Base URL for bot webhooks (may be empty).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        repository: CalendarRepository,
        recall_client: RecallClient,
        deduplicator: SharedBotDeduplicator,
        public_url: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._recall = recall_client
        self._deduplicator = deduplicator
        self._public_url = public_url or None
        self._clock = clock or _utcnow

    async def reconcile_event(
        self, remote_event_id: str, force_reschedule: bool = False
    ) -> ScheduleOutcome:
        """Bring the provider's bot state for one event in line with its flags.

        Args:
            remote_event_id: Provider calendar event id.
            force_reschedule: Send add-bot even when the snapshot already
                lists a bot (used after settings changes).

        Returns:
            The ScheduleOutcome of this run.

        Raises:
            httpx.HTTPError: Provider failures other than 409 conflicts.
        """
        outcome = await self._reconcile(remote_event_id, force_reschedule)
        bot_schedule_outcomes_total.labels(outcome=outcome.value).inc()
        return outcome

    async def _reconcile(
        self, remote_event_id: str, force_reschedule: bool
    ) -> ScheduleOutcome:
        event = await self._repository.get_event_by_remote_id(remote_event_id)
        if event is None:
            logger.warning(
                "bot_schedule.event_not_found",
                remote_event_id=remote_event_id,
            )
            return ScheduleOutcome.EVENT_NOT_FOUND

        if not event.should_record or not event.meeting_url:
            return await self._remove(event)

        now = self._clock()
        if event.start_time <= now:
            logger.info(
                "bot_schedule.skipped_past",
                remote_event_id=remote_event_id,
                start_time=event.start_time.isoformat(),
            )
            return ScheduleOutcome.SKIPPED_PAST

        calendar = await self._repository.get_calendar(event.calendar_id)
        if calendar is None:
            logger.warning(
                "bot_schedule.calendar_not_found",
                remote_event_id=remote_event_id,
                calendar_id=str(event.calendar_id),
            )
            return ScheduleOutcome.EVENT_NOT_FOUND

        if calendar.status == CalendarStatus.DISCONNECTED:
            logger.info(
                "bot_schedule.skipped_disconnected",
                remote_event_id=remote_event_id,
                calendar_id=str(calendar.id),
            )
            return ScheduleOutcome.SKIPPED_DISCONNECTED

        state = infer_bot_state(event)
        if state == BotState.BOT_PRESENT and not force_reschedule:
            logger.debug(
                "bot_schedule.bot_present",
                remote_event_id=remote_event_id,
                bot_ids=event.bot_ids,
            )
            return ScheduleOutcome.SKIPPED_BOT_PRESENT

        user = await self._repository.get_user(calendar.user_id)
        dedup_key = event_deduplication_key(event.remote_id)
        if user is not None:
            shared = await self._deduplicator.find_shared_bot(event, user, now)
            if shared is not None:
                logger.info(
                    "bot_schedule.skipped_shared_bot",
                    remote_event_id=remote_event_id,
                    shared_event_id=shared.shared_event_id,
                    shared_bot_id=shared.shared_bot_id,
                )
                return ScheduleOutcome.SKIPPED_SHARED_BOT
            dedup_key = await self._deduplicator.dedup_key_for(event, user)

        join_at = compute_join_at(event.start_time, calendar.join_before_start_minutes)
        leave_at = compute_leave_at(event.end_time, calendar.leave_after_end_minutes)
        bot_config = build_bot_config(calendar, event, self._public_url)
        bot_config["join_at"] = join_at.isoformat()
        bot_config["metadata"] = {
            "calendar_event_id": event.remote_id,
            "scheduled_leave_at": leave_at.isoformat(),
        }

        try:
            updated = await self._recall.add_bot(event.remote_id, dedup_key, bot_config)
        except Exception as exc:
            if is_conflict(exc):
                logger.info(
                    "bot_schedule.conflict_absorbed",
                    remote_event_id=remote_event_id,
                    deduplication_key=dedup_key,
                )
                return ScheduleOutcome.CONFLICT_ABSORBED
            logger.error(
                "bot_schedule.add_bot_failed",
                remote_event_id=remote_event_id,
                deduplication_key=dedup_key,
                error=str(exc),
            )
            raise

        if updated:
            event = await self._repository.update_event_snapshot(event.id, updated)
        if len(event.bot_ids) > 1:
            logger.warning(
                "bot_schedule.multiple_bots",
                remote_event_id=remote_event_id,
                bot_ids=event.bot_ids,
            )
        logger.info(
            "bot_schedule.scheduled",
            remote_event_id=remote_event_id,
            join_at=join_at.isoformat(),
            deduplication_key=dedup_key,
            forced=force_reschedule,
            previous_state=state.value,
        )
        return ScheduleOutcome.BOT_SCHEDULED

    async def _remove(self, event: CalendarEvent) -> ScheduleOutcome:
        try:
            updated = await self._recall.remove_bot(event.remote_id)
        except Exception as exc:
            if not (is_not_found(exc) or is_conflict(exc)):
                raise
            logger.info(
                "bot_schedule.remove_absorbed",
                remote_event_id=event.remote_id,
                error=str(exc),
            )
            updated = None

        if updated:
            await self._repository.update_event_snapshot(event.id, updated)
        logger.info(
            "bot_schedule.removed",
            remote_event_id=event.remote_id,
            had_bots=bool(event.bots),
            state=BotState.BOT_REMOVED.value,
        )
        return ScheduleOutcome.BOT_REMOVED
