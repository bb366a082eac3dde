"""Shared-bot deduplication across users of the same organization.

When several people at one company have the same meeting on their
calendars, only one bot should join. Organization membership is derived
from the email domain (personal mailbox providers never form an
organization). A peer's event counts as the same meeting when its
normalized meeting URL matches and its time window overlaps.

Lookups are two-tier: bots recorded in the peer event's local snapshot
first, then a live provider lookup for events whose snapshot may be stale.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit

import structlog

from src.botsync.calendars.schemas import CalendarEvent, User, extract_bot_ids
from src.botsync.config import DEFAULT_PERSONAL_EMAIL_DOMAINS

if TYPE_CHECKING:
    from src.botsync.calendars.repository import CalendarRepository
    from src.botsync.recall.client import RecallClient

logger = structlog.get_logger(__name__)

_NON_KEY_CHARS = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class SharedBotMatch:
    """A peer's event that already has a bot for the same meeting."""

    shared_event_id: str
    shared_bot_id: str | None
    shared_user_id: str
    shared_user_email: str


# ── Pure Helpers ─────────────────────────────────────────────────────────────


def normalize_meeting_url(url: str | None) -> str | None:
    """Lowercased meeting URL without query string or fragment.

    ``https://zoom.us/j/123?pwd=xyz`` and ``https://Zoom.us/j/123#x`` both
    normalize to ``https://zoom.us/j/123``.
    """
    if not url or not isinstance(url, str):
        return None
    cleaned = url.strip()
    if not cleaned:
        return None
    try:
        parts = urlsplit(cleaned)
    except ValueError:
        return cleaned.split("?")[0].split("#")[0].lower().strip() or None
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")).lower().strip() or None


def extract_organization_domain(
    email: str | None,
    personal_domains: Iterable[str] = DEFAULT_PERSONAL_EMAIL_DOMAINS,
) -> str | None:
    """Organization domain of an email address.

    Returns:
        The lowercased domain, or None for invalid or personal addresses.
    """
    if not email or not isinstance(email, str) or "@" not in email:
        return None
    domain = email.lower().rsplit("@", 1)[1].strip()
    if not domain or domain in frozenset(d.lower() for d in personal_domains):
        return None
    return domain


def shared_deduplication_key(
    meeting_url: str | None, domain: str | None, start_time: datetime
) -> str | None:
    """Shared add-bot key, ``shared-bot-{domain}-{url}-{start}``.

    Non-alphanumerics in the URL become ``-``. The start is UTC
    ``YYYYMMDDHHMM`` so occurrences of a recurring meeting that reuse one
    link get separate keys.
    """
    normalized = normalize_meeting_url(meeting_url)
    if not normalized or not domain:
        return None
    start = start_time.astimezone(timezone.utc)
    return f"shared-bot-{domain}-{_NON_KEY_CHARS.sub('-', normalized)}-{start:%Y%m%d%H%M}"


def event_deduplication_key(remote_event_id: str) -> str:
    return f"recall-event-{remote_event_id}"


def windows_overlap(a: CalendarEvent, b: CalendarEvent) -> bool:
    return a.start_time < b.end_time and b.start_time < a.end_time


# ── Deduplicator ─────────────────────────────────────────────────────────────


class SharedBotDeduplicator:
    """Finds bots already scheduled by organization peers.

    Args:
        repository: Calendar repository for peer users and events.
        recall_client: Provider client for live event lookups.
        personal_domains: Email domains that never form an organization.
    """

    def __init__(
        self,
        repository: CalendarRepository,
        recall_client: RecallClient,
        personal_domains: Iterable[str] = DEFAULT_PERSONAL_EMAIL_DOMAINS,
    ) -> None:
        self._repository = repository
        self._recall = recall_client
        self._personal_domains = frozenset(d.lower() for d in personal_domains)

    def organization_domain(self, user: User) -> str | None:
        return extract_organization_domain(user.email, self._personal_domains)

    async def find_shared_bot(
        self, event: CalendarEvent, user: User, now: datetime
    ) -> SharedBotMatch | None:
        """Look for a peer's overlapping event on the same meeting with a bot.

        Args:
            event: Event about to be scheduled.
            user: Owner of the event's calendar.
            now: Only peer events starting after this are considered.

        Returns:
            SharedBotMatch for the first peer event with a bot, else None.
        """
        normalized = normalize_meeting_url(event.meeting_url)
        domain = self.organization_domain(user)
        if not normalized or not domain:
            return None

        peers = await self._repository.list_users_by_domain(domain, exclude_user_id=user.id)
        if not peers:
            return None

        candidates = await self._repository.list_organization_events(
            [p.id for p in peers], now
        )
        for candidate in candidates:
            peer_event = candidate.event
            if peer_event.remote_id == event.remote_id:
                continue
            if normalize_meeting_url(peer_event.meeting_url) != normalized:
                continue
            if not windows_overlap(peer_event, event):
                continue

            if peer_event.bots:
                bot_ids = peer_event.bot_ids
            else:
                try:
                    live = await self._recall.get_calendar_event(peer_event.remote_id)
                except Exception as exc:
                    logger.warning(
                        "shared_bot.remote_lookup_failed",
                        remote_event_id=peer_event.remote_id,
                        error=str(exc),
                    )
                    continue
                if not (live or {}).get("bots"):
                    continue
                bot_ids = extract_bot_ids(live)

            match = SharedBotMatch(
                shared_event_id=peer_event.remote_id,
                shared_bot_id=bot_ids[0] if bot_ids else None,
                shared_user_id=str(candidate.user_id),
                shared_user_email=candidate.user_email,
            )
            logger.info(
                "shared_bot.found",
                remote_event_id=event.remote_id,
                shared_event_id=match.shared_event_id,
                shared_bot_id=match.shared_bot_id,
                shared_user_email=match.shared_user_email,
            )
            return match

        return None

    async def dedup_key_for(self, event: CalendarEvent, user: User) -> str:
        """Deduplication key for the add-bot request.

        The shared key is used only when the owner belongs to an organization
        with at least one other user; otherwise the per-event key.
        """
        domain = self.organization_domain(user)
        if domain:
            shared_key = shared_deduplication_key(event.meeting_url, domain, event.start_time)
            if shared_key:
                peers = await self._repository.list_users_by_domain(
                    domain, exclude_user_id=user.id
                )
                if peers:
                    return shared_key
        return event_deduplication_key(event.remote_id)
