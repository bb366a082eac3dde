"""Tests for calendar webhook routing and the webhook endpoint."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.botsync.api.webhooks import CALENDAR_WEBHOOK_PATH, router
from src.botsync.calendars.webhooks import CalendarWebhookBody, route_calendar_webhook
from src.botsync.config import Settings
from src.botsync.jobs.schemas import JobName


def _body(event: str, calendar_id: str = "cal-1", **data) -> CalendarWebhookBody:
    return CalendarWebhookBody.model_validate(
        {"event": event, "data": {"calendar_id": calendar_id, **data}}
    )


# ── Routing ─────────────────────────────────────────────────────────────────


class TestRouteCalendarWebhook:
    @pytest.mark.asyncio
    async def test_calendar_update(self, repository, job_queue, seed_calendar, clock):
        calendar = await seed_calendar("alice@acme.com", "cal-1")

        result = await route_calendar_webhook(
            repository, job_queue, _body("calendar.update"), now=clock.now()
        )

        assert result.accepted is True
        assert result.calendar_id == str(calendar.id)
        assert [h.name for h in result.jobs] == [
            JobName.SAVE_CALENDAR_WEBHOOK,
            JobName.CALENDAR_UPDATE,
            JobName.CALENDAR_SYNC_EVENTS,
        ]
        assert result.jobs[2].job_id == f"sync-events-{calendar.id}-2026-03-01T15:00:00+00:00"

    @pytest.mark.asyncio
    async def test_sync_events_uses_last_updated_ts(
        self, repository, job_queue, seed_calendar, clock
    ):
        calendar = await seed_calendar("alice@acme.com", "cal-1")
        body = _body("calendar.sync_events", last_updated_ts="2026-03-02T14:00:00Z")

        result = await route_calendar_webhook(repository, job_queue, body, now=clock.now())

        assert [h.name for h in result.jobs] == [
            JobName.SAVE_CALENDAR_WEBHOOK,
            JobName.CALENDAR_SYNC_EVENTS,
        ]
        job = await job_queue.get_job(result.jobs[1].job_id)
        assert job.payload["since"] == "2026-03-02T14:00:00Z"
        assert job.payload["calendar_id"] == str(calendar.id)

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_idempotent(self, repository, job_queue, seed_calendar, clock):
        await seed_calendar("alice@acme.com", "cal-1")
        body = _body("calendar.sync_events", last_updated_ts="2026-03-02T14:00:00Z")

        await route_calendar_webhook(repository, job_queue, body, now=clock.now())
        again = await route_calendar_webhook(repository, job_queue, body, now=clock.now())

        assert again.jobs[1].created is False

    @pytest.mark.asyncio
    async def test_unrecognized_event_falls_back_to_lookback(
        self, repository, job_queue, seed_calendar, clock
    ):
        calendar = await seed_calendar("alice@acme.com", "cal-1")

        result = await route_calendar_webhook(
            repository, job_queue, _body("calendar.something_new"), now=clock.now(), lookback_hours=2
        )

        assert result.accepted is True
        assert result.jobs[-1].job_id == f"sync-events-{calendar.id}-2026-03-02T13:00:00+00:00"

    @pytest.mark.asyncio
    async def test_raw_payload_is_stored(self, repository, job_queue, seed_calendar, clock):
        await seed_calendar("alice@acme.com", "cal-1")
        raw = {"event": "calendar.update", "data": {"calendar_id": "cal-1"}, "extra": 1}

        result = await route_calendar_webhook(
            repository, job_queue, CalendarWebhookBody.model_validate(raw), raw_payload=raw
        )

        job = await job_queue.get_job(result.jobs[0].job_id)
        assert job.payload["payload"] == raw
        assert job.payload["event"] == "calendar.update"

    @pytest.mark.asyncio
    async def test_unknown_calendar(self, repository, job_queue, fake_redis):
        result = await route_calendar_webhook(repository, job_queue, _body("calendar.update", "nope"))

        assert result.accepted is False
        assert result.reason == "unknown_calendar"
        assert result.jobs == []
        assert fake_redis.hashes == {}


# ── Endpoint ────────────────────────────────────────────────────────────────


@pytest.fixture
def webhook_app(repository, job_queue):
    app = FastAPI()
    app.include_router(router)
    app.state.settings = Settings(RECALL_WEBHOOK_TOKEN="")
    app.state.calendar_repository = repository
    app.state.job_queue = job_queue
    return app


@pytest_asyncio.fixture
async def client(webhook_app):
    transport = ASGITransport(app=webhook_app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_probe(self, client):
        response = await client.get(CALENDAR_WEBHOOK_PATH)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_accepted(self, client, seed_calendar, fake_redis):
        await seed_calendar("alice@acme.com", "cal-1")

        response = await client.post(
            CALENDAR_WEBHOOK_PATH,
            json={"event": "calendar.update", "data": {"calendar_id": "cal-1"}},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "accepted": True}
        assert fake_redis.zsets["test:jobs:waiting:recall.calendar.update"]

    @pytest.mark.asyncio
    async def test_unknown_calendar_still_200(self, client):
        response = await client.post(
            CALENDAR_WEBHOOK_PATH,
            json={"event": "calendar.update", "data": {"calendar_id": "missing"}},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "accepted": False}

    @pytest.mark.asyncio
    async def test_invalid_json_is_400(self, client):
        response = await client.post(
            CALENDAR_WEBHOOK_PATH,
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_calendar_id_is_400(self, client):
        response = await client.post(CALENDAR_WEBHOOK_PATH, json={"event": "calendar.update", "data": {}})

        assert response.status_code == 400
        assert response.json()["status"] == "error"

    @pytest.mark.asyncio
    async def test_token_mismatch_is_ignored(self, client, webhook_app, seed_calendar, fake_redis):
        webhook_app.state.settings = Settings(RECALL_WEBHOOK_TOKEN="secret")
        await seed_calendar("alice@acme.com", "cal-1")

        response = await client.post(
            CALENDAR_WEBHOOK_PATH,
            json={"event": "calendar.update", "data": {"calendar_id": "cal-1"}},
            headers={"X-Recall-Token": "wrong"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert fake_redis.hashes == {}

    @pytest.mark.asyncio
    async def test_matching_token_is_accepted(self, client, webhook_app, seed_calendar):
        webhook_app.state.settings = Settings(RECALL_WEBHOOK_TOKEN="secret")
        await seed_calendar("alice@acme.com", "cal-1")

        response = await client.post(
            CALENDAR_WEBHOOK_PATH,
            json={"event": "calendar.update", "data": {"calendar_id": "cal-1"}},
            headers={"X-Recall-Token": "secret"},
        )

        assert response.json() == {"status": "ok", "accepted": True}

    @pytest.mark.asyncio
    async def test_processing_error_still_200(self, client, webhook_app):
        broken = MagicMock()
        broken.get_calendar_by_remote_id = AsyncMock(side_effect=RuntimeError("db down"))
        webhook_app.state.calendar_repository = broken

        response = await client.post(
            CALENDAR_WEBHOOK_PATH,
            json={"event": "calendar.update", "data": {"calendar_id": "cal-1"}},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
