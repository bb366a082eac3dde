"""Auto-record policy evaluation.

Decides ``should_record_automatic`` for calendar events from the calendar's
auto-record toggles and the attendee list in the provider's raw event
payload. ``evaluate`` is pure; ``apply_auto_record`` persists the results.

Rules, in order:
1. Events that already ended keep their flags.
2. No invitees -> False (the meeting is not real yet).
3. No meeting URL -> False (nothing to join).
4. External means any attendee, organizer included, on a different email
   domain than the calendar owner.
5. Only-confirmed additionally requires the owner to have accepted.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from src.botsync.calendars.schemas import Calendar, CalendarEvent, Platform

if TYPE_CHECKING:
    from src.botsync.calendars.repository import CalendarRepository

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Attendee:
    """An invitee as read from the platform payload."""

    email: str
    accepted: bool


@dataclass(frozen=True)
class AutoRecordDecision:
    """Outcome of evaluating one event."""

    remote_event_id: str
    should_record_automatic: bool
    changed: bool
    reason: str


# ── Attendee Parsing ─────────────────────────────────────────────────────────


def _google_attendees(raw: dict[str, Any]) -> list[Attendee]:
    attendees = [
        Attendee(
            email=str(a["email"]).lower(),
            accepted=a.get("responseStatus") == "accepted",
        )
        for a in raw.get("attendees") or []
        if isinstance(a, dict) and a.get("email")
    ]
    organizer = (raw.get("organizer") or {}).get("email")
    if organizer:
        attendees.append(Attendee(email=str(organizer).lower(), accepted=True))
    return attendees


def _outlook_attendees(raw: dict[str, Any]) -> list[Attendee]:
    attendees = []
    for a in raw.get("attendees") or []:
        if not isinstance(a, dict):
            continue
        address = (a.get("emailAddress") or {}).get("address")
        if not address:
            continue
        response = (a.get("status") or {}).get("response")
        attendees.append(
            Attendee(
                email=str(address).lower(),
                accepted=response in ("accepted", "organizer"),
            )
        )
    organizer = ((raw.get("organizer") or {}).get("emailAddress") or {}).get("address")
    if organizer:
        attendees.append(Attendee(email=str(organizer).lower(), accepted=True))
    return attendees


def get_attendees(event: CalendarEvent) -> list[Attendee]:
    """Attendees of an event, organizer last; unsupported platforms have none."""
    if event.platform == Platform.GOOGLE_CALENDAR.value:
        return _google_attendees(event.raw)
    if event.platform == Platform.MICROSOFT_OUTLOOK.value:
        return _outlook_attendees(event.raw)
    return []


def has_invitees(event: CalendarEvent) -> bool:
    attendees = event.raw.get("attendees")
    return isinstance(attendees, list) and len(attendees) > 0


def _domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].lower() if "@" in email else ""


def is_external_event(attendees: list[Attendee], owner_email: str) -> bool:
    owner_domain = _domain(owner_email)
    return any(_domain(a.email) != owner_domain for a in attendees)


def is_confirmed_event(attendees: list[Attendee], owner_email: str) -> bool:
    owner = owner_email.lower()
    return any(a.email == owner and a.accepted for a in attendees)


# ── Evaluation ───────────────────────────────────────────────────────────────


def evaluate(
    calendar: Calendar,
    event: CalendarEvent,
    now: datetime,
    owner_email: str | None = None,
) -> AutoRecordDecision:
    """Evaluate the automatic recording flag for one event.

    Args:
        calendar: Calendar whose auto-record toggles apply.
        event: Event to evaluate.
        now: Current time; ended events are left alone.
        owner_email: Fallback owner address when the provider has not
            reported the calendar's mailbox yet.

    Returns:
        AutoRecordDecision with the new flag and whether it changed.
    """
    current = event.should_record_automatic

    def decide(value: bool, reason: str) -> AutoRecordDecision:
        return AutoRecordDecision(
            remote_event_id=event.remote_id,
            should_record_automatic=value,
            changed=value != current,
            reason=reason,
        )

    if event.end_time <= now:
        return AutoRecordDecision(
            remote_event_id=event.remote_id,
            should_record_automatic=current,
            changed=False,
            reason="ended",
        )
    if not has_invitees(event):
        return decide(False, "no_invitees")
    if not event.meeting_url:
        return decide(False, "no_meeting_url")

    calendar_email = (calendar.email or owner_email or "").lower()
    attendees = get_attendees(event)
    external = is_external_event(attendees, calendar_email)

    should_record = (calendar.auto_record_external_events and external) or (
        calendar.auto_record_internal_events and not external
    )
    if calendar.auto_record_only_confirmed_events:
        should_record = should_record and is_confirmed_event(attendees, calendar_email)

    return decide(should_record, "external" if external else "internal")


async def apply_auto_record(
    repository: CalendarRepository,
    calendar: Calendar,
    events: Iterable[CalendarEvent],
    now: datetime,
) -> list[CalendarEvent]:
    """Evaluate and persist automatic recording flags.

    Args:
        repository: Calendar repository used to persist changed flags.
        calendar: Calendar the events belong to.
        events: Events to evaluate.
        now: Current time.

    Returns:
        The events with their up-to-date flags.
    """
    events = list(events)
    if not events:
        return []

    owner_email = None
    if not calendar.email:
        owner = await repository.get_user(calendar.user_id)
        owner_email = owner.email if owner else None

    updated: list[CalendarEvent] = []
    changed_count = 0
    for event in events:
        decision = evaluate(calendar, event, now, owner_email=owner_email)
        if decision.changed:
            event = await repository.update_event_auto_record(
                event.id, decision.should_record_automatic
            )
            changed_count += 1
            logger.info(
                "autorecord.flag_updated",
                calendar_id=str(calendar.id),
                remote_event_id=event.remote_id,
                should_record_automatic=decision.should_record_automatic,
                reason=decision.reason,
            )
        updated.append(event)

    logger.debug(
        "autorecord.evaluated",
        calendar_id=str(calendar.id),
        event_count=len(events),
        changed_count=changed_count,
    )
    return updated
