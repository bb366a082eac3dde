"""Tests for shared-bot deduplication across an organization.

Covers URL normalization, organization domains, dedup-key stability,
and find_shared_bot's local-then-live lookup with overlap checks.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.botsync.bots.shared import (
    SharedBotDeduplicator,
    event_deduplication_key,
    extract_organization_domain,
    normalize_meeting_url,
    shared_deduplication_key,
)


START = datetime(2026, 3, 2, 16, tzinfo=timezone.utc)


@pytest.fixture
def deduplicator(repository, recall):
    return SharedBotDeduplicator(repository, recall)


# ── Pure Helpers ────────────────────────────────────────────────────────────


class TestHelpers:
    def test_normalize_drops_query_and_fragment(self):
        assert normalize_meeting_url("https://zoom.us/j/123?pwd=xyz") == "https://zoom.us/j/123"
        assert normalize_meeting_url(" https://Zoom.us/j/123#frag ") == "https://zoom.us/j/123"

    def test_normalize_empty(self):
        assert normalize_meeting_url(None) is None
        assert normalize_meeting_url("   ") is None

    def test_organization_domain(self):
        assert extract_organization_domain("Alice@Acme.com") == "acme.com"
        assert extract_organization_domain("someone@gmail.com") is None
        assert extract_organization_domain("not-an-email") is None
        assert extract_organization_domain(None) is None

    def test_personal_domains_are_injectable(self):
        assert extract_organization_domain("a@gmail.com", personal_domains=[]) == "gmail.com"
        assert extract_organization_domain("a@acme.com", personal_domains=["acme.com"]) is None

    def test_shared_key_is_stable_across_query_strings(self):
        first = shared_deduplication_key("https://zoom.us/j/123?pwd=xyz", "acme.com", START)
        second = shared_deduplication_key("https://zoom.us/j/123?pwd=other", "acme.com", START)

        assert first == second == "shared-bot-acme.com-https---zoom-us-j-123-202603021600"

    def test_shared_key_separates_occurrences(self):
        next_week = shared_deduplication_key("https://zoom.us/j/123", "acme.com", START + timedelta(days=7))

        assert next_week == "shared-bot-acme.com-https---zoom-us-j-123-202603091600"
        assert next_week != shared_deduplication_key("https://zoom.us/j/123", "acme.com", START)

    def test_shared_key_start_in_utc(self):
        berlin = timezone(timedelta(hours=1))

        key = shared_deduplication_key("https://zoom.us/j/123", "acme.com", datetime(2026, 3, 2, 17, tzinfo=berlin))

        assert key == "shared-bot-acme.com-https---zoom-us-j-123-202603021600"

    def test_shared_key_needs_url_and_domain(self):
        assert shared_deduplication_key(None, "acme.com", START) is None
        assert shared_deduplication_key("https://zoom.us/j/1", None, START) is None

    def test_event_key(self):
        assert event_deduplication_key("E1") == "recall-event-E1"


# ── Deduplication Keys ──────────────────────────────────────────────────────


class TestDedupKeyFor:
    @pytest.mark.asyncio
    async def test_lone_user_gets_event_key(
        self, deduplicator, repository, seed_calendar, seed_event, make_remote_event
    ):
        calendar = await seed_calendar("alice@acme.com", "cal-a")
        event = await seed_event(calendar, make_remote_event("E1", "cal-a"))
        user = await repository.get_user(calendar.user_id)

        assert await deduplicator.dedup_key_for(event, user) == "recall-event-E1"

    @pytest.mark.asyncio
    async def test_organization_gets_shared_key(
        self, deduplicator, repository, seed_calendar, seed_event, make_remote_event
    ):
        calendar = await seed_calendar("alice@acme.com", "cal-a")
        await seed_calendar("bob@acme.com", "cal-b")
        event = await seed_event(
            calendar, make_remote_event("E1", "cal-a", meeting_url="https://zoom.us/j/123?pwd=xyz")
        )
        user = await repository.get_user(calendar.user_id)

        key = await deduplicator.dedup_key_for(event, user)

        assert key == "shared-bot-acme.com-https---zoom-us-j-123-202603021600"
        assert key == await deduplicator.dedup_key_for(event, user)

    @pytest.mark.asyncio
    async def test_personal_domain_gets_event_key(
        self, deduplicator, repository, seed_calendar, seed_event, make_remote_event
    ):
        calendar = await seed_calendar("alice@gmail.com", "cal-a")
        await seed_calendar("bob@gmail.com", "cal-b")
        event = await seed_event(calendar, make_remote_event("E1", "cal-a"))
        user = await repository.get_user(calendar.user_id)

        assert await deduplicator.dedup_key_for(event, user) == "recall-event-E1"


# ── find_shared_bot ─────────────────────────────────────────────────────────


class TestFindSharedBot:
    @pytest.mark.asyncio
    async def test_peer_bot_in_local_snapshot(
        self, deduplicator, repository, seed_calendar, seed_event, make_remote_event, clock
    ):
        alice_cal = await seed_calendar("alice@acme.com", "cal-a")
        bob_cal = await seed_calendar("bob@acme.com", "cal-b")
        start = clock.now() + timedelta(hours=1)
        await seed_event(
            bob_cal,
            make_remote_event(
                "B1",
                "cal-b",
                start=start,
                meeting_url="https://zoom.us/j/123?pwd=xyz",
                bots=[{"bot_id": "bot-bob"}],
            ),
            manual=True,
        )
        event = await seed_event(
            alice_cal,
            make_remote_event(
                "A1", "cal-a", start=start, meeting_url="https://zoom.us/j/123?pwd=other"
            ),
            manual=True,
        )
        alice = await repository.get_user(alice_cal.user_id)

        match = await deduplicator.find_shared_bot(event, alice, clock.now())

        assert match is not None
        assert match.shared_event_id == "B1"
        assert match.shared_bot_id == "bot-bob"
        assert match.shared_user_email == "bob@acme.com"

    @pytest.mark.asyncio
    async def test_live_lookup_when_snapshot_is_stale(
        self, deduplicator, repository, recall, seed_calendar, seed_event, make_remote_event, clock
    ):
        alice_cal = await seed_calendar("alice@acme.com", "cal-a")
        bob_cal = await seed_calendar("bob@acme.com", "cal-b")
        start = clock.now() + timedelta(hours=1)
        bob_payload = make_remote_event("B1", "cal-b", start=start)
        await seed_event(bob_cal, bob_payload)
        recall.put_event({**bob_payload, "bots": [{"bot_id": "bot-live"}]})
        event = await seed_event(alice_cal, make_remote_event("A1", "cal-a", start=start))
        alice = await repository.get_user(alice_cal.user_id)

        match = await deduplicator.find_shared_bot(event, alice, clock.now())

        assert match is not None
        assert match.shared_bot_id == "bot-live"

    @pytest.mark.asyncio
    async def test_live_lookup_error_moves_to_next_candidate(
        self,
        deduplicator,
        repository,
        recall,
        seed_calendar,
        seed_event,
        make_remote_event,
        http_error,
        clock,
    ):
        alice_cal = await seed_calendar("alice@acme.com", "cal-a")
        bob_cal = await seed_calendar("bob@acme.com", "cal-b")
        carol_cal = await seed_calendar("carol@acme.com", "cal-c")
        start = clock.now() + timedelta(hours=1)
        await seed_event(bob_cal, make_remote_event("B1", "cal-b", start=start))
        recall.event_lookup_errors["B1"] = http_error(500, "GET")
        await seed_event(
            carol_cal,
            make_remote_event("C1", "cal-c", start=start, bots=[{"bot_id": "bot-carol"}]),
        )
        event = await seed_event(alice_cal, make_remote_event("A1", "cal-a", start=start))
        alice = await repository.get_user(alice_cal.user_id)

        match = await deduplicator.find_shared_bot(event, alice, clock.now())

        assert match is not None
        assert match.shared_event_id == "C1"

    @pytest.mark.asyncio
    async def test_non_overlapping_occurrence_is_not_shared(
        self, deduplicator, repository, seed_calendar, seed_event, make_remote_event, clock
    ):
        alice_cal = await seed_calendar("alice@acme.com", "cal-a")
        bob_cal = await seed_calendar("bob@acme.com", "cal-b")
        await seed_event(
            bob_cal,
            make_remote_event(
                "B1",
                "cal-b",
                start=clock.now() + timedelta(days=7),
                bots=[{"bot_id": "bot-next-week"}],
            ),
        )
        event = await seed_event(
            alice_cal, make_remote_event("A1", "cal-a", start=clock.now() + timedelta(hours=1))
        )
        alice = await repository.get_user(alice_cal.user_id)

        assert await deduplicator.find_shared_bot(event, alice, clock.now()) is None

    @pytest.mark.asyncio
    async def test_other_organization_is_ignored(
        self, deduplicator, repository, seed_calendar, seed_event, make_remote_event, clock
    ):
        alice_cal = await seed_calendar("alice@acme.com", "cal-a")
        other_cal = await seed_calendar("zed@globex.com", "cal-z")
        start = clock.now() + timedelta(hours=1)
        await seed_event(
            other_cal,
            make_remote_event("Z1", "cal-z", start=start, bots=[{"bot_id": "bot-globex"}]),
        )
        event = await seed_event(alice_cal, make_remote_event("A1", "cal-a", start=start))
        alice = await repository.get_user(alice_cal.user_id)

        assert await deduplicator.find_shared_bot(event, alice, clock.now()) is None

    @pytest.mark.asyncio
    async def test_different_meeting_is_ignored(
        self, deduplicator, repository, seed_calendar, seed_event, make_remote_event, clock
    ):
        alice_cal = await seed_calendar("alice@acme.com", "cal-a")
        bob_cal = await seed_calendar("bob@acme.com", "cal-b")
        start = clock.now() + timedelta(hours=1)
        await seed_event(
            bob_cal,
            make_remote_event(
                "B1",
                "cal-b",
                start=start,
                meeting_url="https://zoom.us/j/999",
                bots=[{"bot_id": "bot-bob"}],
            ),
        )
        event = await seed_event(alice_cal, make_remote_event("A1", "cal-a", start=start))
        alice = await repository.get_user(alice_cal.user_id)

        assert await deduplicator.find_shared_bot(event, alice, clock.now()) is None
