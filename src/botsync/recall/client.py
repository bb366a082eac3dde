"""Async HTTP client wrapper for the Recall.ai calendar v2 and bot APIs.

Provides RecallClient with retry logic (tenacity, 3 attempts, exponential
backoff 1-10s) for transient failures only: network errors, timeouts, 429
and 5xx. Every other HTTP error surfaces immediately as
``httpx.HTTPStatusError`` so callers can classify it with the helpers in
``src.botsync.recall.errors`` (409 conflicts, 404s, disconnections).

The client is constructed once per process and injected into the
scheduler, reconciler, and connection monitor.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.botsync.recall.errors import is_transient

logger = structlog.get_logger(__name__)

_recall_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(is_transient),
    reraise=True,
)


class RecallClient:
    """Async client for the Recall.ai REST API.

    Args:
        api_key: Recall.ai API token.
        api_host: Base host, e.g. ``https://us-west-2.recall.ai``.
    """

    # Timeouts per operation type
    TIMEOUT_MUTATE = 30.0  # create/update/delete operations
    TIMEOUT_READ = 15.0    # get/list operations

    def __init__(self, api_key: str, api_host: str = "https://us-west-2.recall.ai") -> None:
        self._api_key = api_key
        self._base_url = api_host.rstrip("/")
        self._headers = {
            "Authorization": f"Token {api_key}",
            "Content-Type": "application/json",
        }

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=timeout,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        return response.json()

    # ── Calendars ────────────────────────────────────────────────────────

    @_recall_retry
    async def create_calendar(self, data: dict) -> dict:
        """Register a calendar with the provider.

        POST /api/v2/calendars/ with platform + OAuth credentials.

        Args:
            data: Calendar creation payload.

        Returns:
            Created calendar payload including its id and status.
        """
        async with self._client(self.TIMEOUT_MUTATE) as client:
            response = await client.post(
                f"{self._base_url}/api/v2/calendars/",
                json=data,
            )
            response.raise_for_status()
            result = response.json()
            logger.info(
                "recall.calendar_created",
                calendar_id=result.get("id"),
                status=result.get("status"),
            )
            return result

    @_recall_retry
    async def get_calendar(self, calendar_id: str) -> dict:
        """Get a calendar's connection state.

        GET /api/v2/calendars/{id}/

        Args:
            calendar_id: Provider calendar id.

        Returns:
            Calendar payload (``status``, ``platform_email``, ...).
        """
        async with self._client(self.TIMEOUT_READ) as client:
            response = await client.get(
                f"{self._base_url}/api/v2/calendars/{calendar_id}/",
            )
            response.raise_for_status()
            return response.json()

    @_recall_retry
    async def update_calendar(self, calendar_id: str, data: dict) -> dict:
        """PATCH /api/v2/calendars/{id}/ with partial calendar data."""
        async with self._client(self.TIMEOUT_MUTATE) as client:
            response = await client.patch(
                f"{self._base_url}/api/v2/calendars/{calendar_id}/",
                json=data,
            )
            response.raise_for_status()
            logger.info("recall.calendar_updated", calendar_id=calendar_id)
            return response.json()

    @_recall_retry
    async def delete_calendar(self, calendar_id: str) -> None:
        """DELETE /api/v2/calendars/{id}/"""
        async with self._client(self.TIMEOUT_MUTATE) as client:
            response = await client.delete(
                f"{self._base_url}/api/v2/calendars/{calendar_id}/",
            )
            response.raise_for_status()
            logger.info("recall.calendar_deleted", calendar_id=calendar_id)

    # ── Calendar Events ──────────────────────────────────────────────────

    @_recall_retry
    async def _get_page(self, url: str, params: dict | None = None) -> dict:
        async with self._client(self.TIMEOUT_READ) as client:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json()

    async def list_calendar_events(self, calendar_id: str, since: str) -> list[dict]:
        """List events of a calendar updated at or after ``since``.

        Follows the ``next`` cursor until exhausted. Each page is retried
        independently on transient failures.

        Args:
            calendar_id: Provider calendar id.
            since: ISO-8601 watermark for ``updated_at__gte``.

        Returns:
            All event payloads, including ones flagged ``is_deleted``.
        """
        url = f"{self._base_url}/api/v2/calendar-events/"
        params: dict | None = {"calendar_id": calendar_id, "updated_at__gte": since}
        events: list[dict] = []
        pages = 0

        while url:
            page = await self._get_page(url, params)
            pages += 1
            events.extend(page.get("results") or [])
            next_url = page.get("next")
            # Local provider stacks hand back http:// cursors behind TLS.
            if next_url and url.startswith("https:") and not next_url.startswith("https:"):
                next_url = next_url.replace("http:", "https:", 1)
            url = next_url
            params = None

        logger.debug(
            "recall.calendar_events_listed",
            calendar_id=calendar_id,
            since=since,
            pages=pages,
            event_count=len(events),
        )
        return events

    @_recall_retry
    async def get_calendar_event(self, event_id: str) -> dict:
        """GET /api/v2/calendar-events/{id}/ (live bot state for an event)."""
        async with self._client(self.TIMEOUT_READ) as client:
            response = await client.get(
                f"{self._base_url}/api/v2/calendar-events/{event_id}/",
            )
            response.raise_for_status()
            return response.json()

    # ── Bots ─────────────────────────────────────────────────────────────

    @_recall_retry
    async def add_bot(self, event_id: str, deduplication_key: str, bot_config: dict) -> dict:
        """Schedule a bot for a calendar event.

        POST /api/v2/calendar-events/{id}/bot/. The provider collapses
        requests sharing a ``deduplication_key`` into one bot; a conflicting
        request answers 409.

        Args:
            event_id: Provider calendar event id.
            deduplication_key: Key shared by every request for the same bot.
            bot_config: Bot configuration (see ``build_bot_config``).

        Returns:
            Updated calendar event payload with its ``bots`` list.
        """
        async with self._client(self.TIMEOUT_MUTATE) as client:
            response = await client.post(
                f"{self._base_url}/api/v2/calendar-events/{event_id}/bot/",
                json={
                    "deduplication_key": deduplication_key,
                    "bot_config": bot_config,
                },
            )
            response.raise_for_status()
            data = response.json()
            logger.info(
                "recall.bot_added",
                event_id=event_id,
                deduplication_key=deduplication_key,
                bot_count=len(data.get("bots") or []),
            )
            return data

    @_recall_retry
    async def remove_bot(self, event_id: str) -> dict | None:
        """Remove the bot(s) scheduled for a calendar event.

        DELETE /api/v2/calendar-events/{id}/bot/

        Returns:
            Updated calendar event payload, or None for an empty response.
        """
        async with self._client(self.TIMEOUT_MUTATE) as client:
            response = await client.delete(
                f"{self._base_url}/api/v2/calendar-events/{event_id}/bot/",
            )
            response.raise_for_status()
            logger.info("recall.bot_removed", event_id=event_id)
            return self._json(response)

    @_recall_retry
    async def get_bot(self, bot_id: str) -> dict:
        """GET /api/v1/bot/{id}/ (full bot state)."""
        async with self._client(self.TIMEOUT_READ) as client:
            response = await client.get(
                f"{self._base_url}/api/v1/bot/{bot_id}/",
            )
            response.raise_for_status()
            return response.json()
