"""Per-user ingestion throttle backed by a cache key with a TTL."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from modules.location.cache import TrackingCache, rate_limit_key

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_s: int = 0


class RateLimiter:
    """Allows at most one fix per ``interval_s`` per user.

    The first fix in a window creates ``trk:rl:{user}`` with SET NX and a
    TTL of the interval; while the key lives, further fixes are refused
    with the key's remaining TTL as ``retry_after_s``.
    """

    def __init__(self, cache: TrackingCache):
        self.cache = cache

    async def allow(self, user_id, interval_s: int) -> RateDecision:
        if interval_s <= 0:
            return RateDecision(allowed=True)

        key = rate_limit_key(user_id)
        created = await self.cache.set_if_absent(
            key, {"accepted_at": datetime.now(timezone.utc).isoformat()}, ttl=interval_s
        )
        if created is None:
            # Cache unavailable: fail open
            return RateDecision(allowed=True)
        if created:
            return RateDecision(allowed=True)

        remaining = await self.cache.ttl(key)
        retry_after = max(1, math.ceil(remaining)) if remaining else 1
        logger.info("fix_rate_limited", user_id=str(user_id), retry_after=retry_after)
        return RateDecision(allowed=False, retry_after_s=retry_after)
