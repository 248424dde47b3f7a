"""Tests for advisory live-tracking sessions."""

from __future__ import annotations

import uuid

import pytest

from modules.location.cache import session_key
from modules.location.sessions import SessionGate, SessionMode, clamp_interval
from tests.fakes import FakeEventsRepo


@pytest.fixture
def events():
    return FakeEventsRepo()


@pytest.fixture
def gate(cache, events):
    return SessionGate(cache, events)


class TestClampInterval:
    @pytest.mark.parametrize("given, expected", [(None, 30), (1, 5), (60, 60), (9999, 300)])
    def test_bounds(self, given, expected):
        assert clamp_interval(given) == expected


class TestSessionGate:
    @pytest.mark.asyncio
    async def test_start_and_status(self, gate, events, family_id):
        user_id = uuid.uuid4()
        state = await gate.start(user_id, family_id, SessionMode.LIVE, 10, ttl_s=120)

        assert state["active"] is True
        assert state["mode"] == "live"
        assert state["interval_s"] == 10
        assert 0 < state["expires_in_s"] <= 120
        assert await gate.is_live(user_id) is True
        assert (await gate.status(user_id))["session_id"] == state["session_id"]
        assert events.events[0].event_type == "session_start"

    @pytest.mark.asyncio
    async def test_session_key_expires_with_ttl(self, gate, cache, family_id):
        user_id = uuid.uuid4()
        await gate.start(user_id, family_id, "motion", None, ttl_s=90)
        assert 0 < await cache.ttl(session_key(user_id)) <= 90

    @pytest.mark.asyncio
    async def test_keepalive_extends(self, gate, cache, family_id):
        user_id = uuid.uuid4()
        await gate.start(user_id, family_id, ttl_s=60)

        state = await gate.keepalive(user_id, ttl_s=600)

        assert state["active"] is True
        assert await cache.ttl(session_key(user_id)) > 60

    @pytest.mark.asyncio
    async def test_keepalive_without_session(self, gate):
        assert await gate.keepalive(uuid.uuid4()) == {"active": False}

    @pytest.mark.asyncio
    async def test_stop(self, gate, events, family_id):
        user_id = uuid.uuid4()
        await gate.start(user_id, family_id)

        assert await gate.stop(user_id) is True
        assert await gate.stop(user_id) is False
        assert await gate.is_live(user_id) is False
        assert [e.event_type for e in events.events] == ["session_start", "session_stop"]

    @pytest.mark.asyncio
    async def test_keepalive_after_stop_does_not_revive(self, gate, family_id):
        user_id = uuid.uuid4()
        await gate.start(user_id, family_id)
        await gate.stop(user_id)

        assert (await gate.keepalive(user_id))["active"] is False
        assert await gate.is_live(user_id) is False

    @pytest.mark.asyncio
    async def test_invalid_mode(self, gate, family_id):
        with pytest.raises(ValueError):
            await gate.start(uuid.uuid4(), family_id, "stealth")
