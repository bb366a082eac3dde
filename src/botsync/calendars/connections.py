"""Calendar connection health monitor.

Periodically asks the provider for each calendar's state. 401/403/404 on
the calendar fetch mean the OAuth connection is gone and the calendar is
marked disconnected; any other error is recorded and the scan continues.
Disconnections and reconnections are reported as status changes.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from src.botsync.calendars.schemas import Calendar, CalendarStatus, Platform
from src.botsync.recall.errors import is_disconnection

if TYPE_CHECKING:
    from src.botsync.calendars.repository import CalendarRepository
    from src.botsync.recall.client import RecallClient

logger = structlog.get_logger(__name__)

_PLATFORM_LABELS = {
    Platform.GOOGLE_CALENDAR: "Google Calendar",
    Platform.MICROSOFT_OUTLOOK: "Microsoft Outlook",
}


@dataclass(frozen=True)
class StatusChange:
    """A calendar whose connection status flipped during a check."""

    calendar: Calendar
    previous_status: CalendarStatus
    new_status: CalendarStatus
    reason: str


@dataclass(frozen=True)
class ConnectionCheckError:
    calendar_id: str
    calendar_email: str
    error: str


@dataclass
class ConnectionCheckResult:
    checked_count: int = 0
    status_changes: list[StatusChange] = field(default_factory=list)
    errors: list[ConnectionCheckError] = field(default_factory=list)


@dataclass(frozen=True)
class DisconnectionNotification:
    user_id: str
    calendar_id: str
    message: str
    type: str = "error"


def map_remote_status(value: Any) -> CalendarStatus:
    """Map the provider's calendar status onto CalendarStatus.

    ``error`` and unknown values count as disconnected.
    """
    if value == CalendarStatus.CONNECTED.value:
        return CalendarStatus.CONNECTED
    if value == CalendarStatus.CONNECTING.value:
        return CalendarStatus.CONNECTING
    return CalendarStatus.DISCONNECTED


def _record_error(result: ConnectionCheckResult, calendar: Calendar, exc: Exception) -> None:
    result.errors.append(
        ConnectionCheckError(
            calendar_id=str(calendar.id),
            calendar_email=calendar.email or "unknown",
            error=str(exc),
        )
    )
    logger.error(
        "connection_check.calendar_failed",
        calendar_id=str(calendar.id),
        error=str(exc),
    )


class CalendarConnectionMonitor:
    """Checks every provider-registered calendar's connection.

    Args:
        repository: Calendar repository.
        recall_client: Provisioning API client.
    """

    def __init__(self, repository: CalendarRepository, recall_client: RecallClient) -> None:
        self._repository = repository
        self._recall = recall_client

    async def check_all(self) -> ConnectionCheckResult:
        """Check all calendars with a remote id.

        Returns:
            ConnectionCheckResult with status changes and per-calendar errors.
        """
        calendars = await self._repository.list_calendars_with_remote_id()
        result = ConnectionCheckResult(checked_count=len(calendars))

        for calendar in calendars:
            try:
                change = await self._check(calendar, result)
            except Exception as exc:
                # Storage errors skip this calendar until the next scan
                _record_error(result, calendar, exc)
                continue
            if change is not None:
                result.status_changes.append(change)

        logger.info(
            "connection_check.completed",
            checked=result.checked_count,
            status_changes=len(result.status_changes),
            errors=len(result.errors),
        )
        return result

    async def refresh_calendar(self, calendar_id: uuid.UUID) -> StatusChange | None:
        """Refresh one calendar (``recall.calendar.update`` jobs)."""
        calendar = await self._repository.get_calendar(calendar_id)
        if calendar is None or not calendar.remote_id:
            logger.warning("connection_check.calendar_not_found", calendar_id=str(calendar_id))
            return None
        return await self._check(calendar, ConnectionCheckResult(checked_count=1))

    async def _check(
        self, calendar: Calendar, result: ConnectionCheckResult
    ) -> StatusChange | None:
        previous = calendar.status
        try:
            remote = await self._recall.get_calendar(calendar.remote_id)
        except Exception as exc:
            if not is_disconnection(exc):
                _record_error(result, calendar, exc)
                return None

            await self._repository.update_calendar_remote_state(
                calendar.id,
                CalendarStatus.DISCONNECTED,
                {**calendar.remote_snapshot, "status": CalendarStatus.DISCONNECTED.value},
            )
            logger.warning(
                "connection_check.calendar_unreachable",
                calendar_id=str(calendar.id),
                error=str(exc),
            )
            if previous == CalendarStatus.DISCONNECTED:
                return None
            return StatusChange(
                calendar=calendar,
                previous_status=previous,
                new_status=CalendarStatus.DISCONNECTED,
                reason=f"API error: {exc}",
            )

        current = map_remote_status(remote.get("status"))
        await self._repository.update_calendar_remote_state(calendar.id, current, remote)

        if current == previous:
            return None
        if previous == CalendarStatus.CONNECTED and current == CalendarStatus.DISCONNECTED:
            logger.warning(
                "connection_check.disconnected",
                calendar_id=str(calendar.id),
                remote_status=remote.get("status"),
            )
            return StatusChange(calendar, previous, current, "Connection status changed at provider")
        if previous == CalendarStatus.DISCONNECTED and current == CalendarStatus.CONNECTED:
            logger.info("connection_check.reconnected", calendar_id=str(calendar.id))
            return StatusChange(calendar, previous, current, "Calendar reconnected")
        logger.info(
            "connection_check.status_updated",
            calendar_id=str(calendar.id),
            previous_status=previous.value,
            status=current.value,
        )
        return None


def build_disconnection_notifications(
    status_changes: Iterable[StatusChange],
) -> list[DisconnectionNotification]:
    """User-facing messages for calendars that became disconnected."""
    notifications = []
    for change in status_changes:
        if change.new_status != CalendarStatus.DISCONNECTED:
            continue
        calendar = change.calendar
        label = _PLATFORM_LABELS.get(calendar.platform, "calendar")
        email = calendar.email or "your calendar"
        notifications.append(
            DisconnectionNotification(
                user_id=str(calendar.user_id),
                calendar_id=str(calendar.id),
                message=(
                    f"Your {label} connection ({email}) has been disconnected. "
                    "Please reconnect your calendar to continue receiving meeting recordings."
                ),
            )
        )
    return notifications
