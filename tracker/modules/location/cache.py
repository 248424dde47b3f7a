"""Redis-backed key/value store shared by the ingestion components."""

from __future__ import annotations

import json

import structlog
from redis.exceptions import WatchError

logger = structlog.get_logger()

# Default TTLs in seconds
DEFAULT_TTLS: dict[str, int] = {
    "current": 3600,        # 1 hour
    "last_history": 86400,  # 24 hours
}


def _cache_key(kind: str, *parts: object) -> str:
    """Build a cache key."""
    return ":".join(["trk", kind, *(str(p) for p in parts)])


def rate_limit_key(user_id) -> str:
    return _cache_key("rl", user_id)


def dedupe_key(user_id) -> str:
    return _cache_key("dedupe", user_id)


def session_key(user_id) -> str:
    return _cache_key("session", user_id)


def current_key(user_id) -> str:
    return _cache_key("current", user_id)


def family_snapshot_key(family_id) -> str:
    return _cache_key("family", family_id, "current")


def settings_key(family_id) -> str:
    return _cache_key("settings", family_id)


def idempotency_key(user_id, client_event_id: str) -> str:
    return _cache_key("idem", user_id, client_event_id)


def last_history_key(user_id) -> str:
    return _cache_key("last_history", user_id)


class TrackingCache:
    """JSON key/value store with TTLs and graceful fallback when Redis is unavailable.

    Reads return None and writes become no-ops on Redis errors; callers
    decide whether a miss means "allow" or "unknown".
    """

    def __init__(self, redis_client=None):
        self._redis = redis_client

    @property
    def available(self) -> bool:
        return self._redis is not None

    async def get(self, key: str) -> dict | list | None:
        """Retrieve a cached value, or None if miss/unavailable."""
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as e:
            logger.warning("cache_get_error", key=key, error=str(e))
            return None

    async def set(self, key: str, value: dict | list, ttl: int | None = None) -> None:
        """Store a value, with a TTL when given. Silently fails if Redis is unavailable."""
        if self._redis is None:
            return
        try:
            await self._redis.set(key, json.dumps(value), ex=ttl)
        except Exception as e:
            logger.warning("cache_set_error", key=key, error=str(e))

    async def delete(self, *keys: str) -> None:
        if self._redis is None or not keys:
            return
        try:
            await self._redis.delete(*keys)
        except Exception as e:
            logger.warning("cache_delete_error", keys=list(keys), error=str(e))

    async def exists(self, key: str) -> bool:
        if self._redis is None:
            return False
        try:
            return bool(await self._redis.exists(key))
        except Exception as e:
            logger.warning("cache_exists_error", key=key, error=str(e))
            return False

    async def set_if_absent(self, key: str, value: dict | list, ttl: float) -> bool | None:
        """Atomically create ``key`` unless it exists (SET NX PX).

        Returns True when created, False when the key already existed and
        None when the cache could not answer.
        """
        if self._redis is None:
            return None
        try:
            created = await self._redis.set(
                key, json.dumps(value), nx=True, px=max(1, int(ttl * 1000))
            )
            return bool(created)
        except Exception as e:
            logger.warning("cache_set_nx_error", key=key, error=str(e))
            return None

    async def ttl(self, key: str) -> float | None:
        """Remaining lifetime in seconds, or None if the key is missing or has no expiry."""
        if self._redis is None:
            return None
        try:
            remaining_ms = await self._redis.pttl(key)
        except Exception as e:
            logger.warning("cache_ttl_error", key=key, error=str(e))
            return None
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000.0

    async def compare_and_set(
        self,
        key: str,
        expected: dict | list | None,
        value: dict | list,
        ttl: int | None = None,
    ) -> bool:
        """Replace ``key`` with ``value`` only if it still holds ``expected``.

        ``expected=None`` means "only if absent".  Uses WATCH/MULTI so a
        concurrent writer makes this call return False instead of being
        overwritten.
        """
        if self._redis is None:
            return False
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                current = json.loads(raw) if raw is not None else None
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, json.dumps(value), ex=ttl)
                await pipe.execute()
                return True
        except WatchError:
            logger.debug("cache_cas_conflict", key=key)
            return False
        except Exception as e:
            logger.warning("cache_cas_error", key=key, error=str(e))
            return False
