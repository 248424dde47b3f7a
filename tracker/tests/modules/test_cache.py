"""Tests for the Redis-backed TrackingCache."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from modules.location.cache import TrackingCache, idempotency_key, rate_limit_key, session_key


class TestKeys:
    def test_keys_are_namespaced(self):
        assert rate_limit_key("u1") == "trk:rl:u1"
        assert session_key("u1") == "trk:session:u1"
        assert idempotency_key("u1", "evt-9") == "trk:idem:u1:evt-9"


class TestTrackingCache:
    @pytest.mark.asyncio
    async def test_set_get_roundtrip(self, cache):
        await cache.set("k", {"a": 1}, ttl=60)
        assert await cache.get("k") == {"a": 1}
        assert 0 < await cache.ttl("k") <= 60

    @pytest.mark.asyncio
    async def test_missing_key(self, cache):
        assert await cache.get("nope") is None
        assert await cache.ttl("nope") is None
        assert await cache.exists("nope") is False

    @pytest.mark.asyncio
    async def test_set_if_absent(self, cache):
        assert await cache.set_if_absent("once", {"n": 1}, ttl=5) is True
        assert await cache.set_if_absent("once", {"n": 2}, ttl=5) is False
        assert await cache.get("once") == {"n": 1}

    @pytest.mark.asyncio
    async def test_compare_and_set(self, cache):
        await cache.set("cas", {"v": 1})
        assert await cache.compare_and_set("cas", {"v": 1}, {"v": 2}) is True
        assert await cache.compare_and_set("cas", {"v": 1}, {"v": 3}) is False
        assert await cache.get("cas") == {"v": 2}

    @pytest.mark.asyncio
    async def test_compare_and_set_absent(self, cache):
        assert await cache.compare_and_set("fresh", None, {"v": 1}, ttl=30) is True
        assert await cache.compare_and_set("fresh", None, {"v": 2}, ttl=30) is False

    @pytest.mark.asyncio
    async def test_delete(self, cache):
        await cache.set("a", {"x": 1})
        await cache.set("b", {"x": 2})
        await cache.delete("a", "b")
        assert await cache.get("a") is None
        assert await cache.get("b") is None


class TestUnavailable:
    @pytest.mark.asyncio
    async def test_no_client(self):
        cache = TrackingCache(None)
        assert cache.available is False
        assert await cache.get("k") is None
        await cache.set("k", {"a": 1})
        assert await cache.set_if_absent("k", {}, ttl=5) is None
        assert await cache.compare_and_set("k", None, {}) is False

    @pytest.mark.asyncio
    async def test_redis_errors_degrade(self, mock_redis):
        mock_redis.get = AsyncMock(side_effect=ConnectionError("down"))
        mock_redis.set = AsyncMock(side_effect=ConnectionError("down"))
        cache = TrackingCache(mock_redis)

        assert await cache.get("k") is None
        await cache.set("k", {"a": 1})
        assert await cache.set_if_absent("k", {}, ttl=5) is None
