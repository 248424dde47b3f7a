"""Near-duplicate fix detection against the last accepted point per user."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog

from modules.location.cache import TrackingCache, dedupe_key
from modules.location.geo import haversine_m

logger = structlog.get_logger()


@dataclass(frozen=True)
class DedupeResult:
    duplicate: bool
    distance_m: float | None = None
    time_delta_s: float | None = None


class Dedupe:
    """A fix is a duplicate when it is within ``radius_m`` AND ``time_window_s`` of
    the last accepted point.  Disabled when both parameters are <= 0."""

    def __init__(self, cache: TrackingCache):
        self.cache = cache

    async def check(
        self,
        user_id,
        lat: float,
        lng: float,
        recorded_at: datetime,
        *,
        radius_m: float,
        time_window_s: float,
    ) -> DedupeResult:
        if radius_m <= 0 and time_window_s <= 0:
            return DedupeResult(duplicate=False)

        last = await self.cache.get(dedupe_key(user_id))
        if not last:
            return DedupeResult(duplicate=False)

        try:
            distance = haversine_m(lat, lng, float(last["lat"]), float(last["lng"]))
            last_at = datetime.fromisoformat(last["recorded_at"])
        except (KeyError, TypeError, ValueError):
            logger.warning("dedupe_cache_corrupt", user_id=str(user_id))
            return DedupeResult(duplicate=False)

        delta = abs((recorded_at - last_at).total_seconds())
        duplicate = distance <= radius_m and delta <= time_window_s
        if duplicate:
            logger.debug(
                "fix_deduplicated",
                user_id=str(user_id),
                distance_m=round(distance, 1),
                time_delta_s=round(delta, 1),
            )
        return DedupeResult(duplicate=duplicate, distance_m=distance, time_delta_s=delta)

    async def is_duplicate(
        self, user_id, lat: float, lng: float, recorded_at: datetime, *, radius_m: float, time_window_s: float
    ) -> bool:
        result = await self.check(
            user_id, lat, lng, recorded_at, radius_m=radius_m, time_window_s=time_window_s
        )
        return result.duplicate

    async def record(self, user_id, lat: float, lng: float, recorded_at: datetime, *, time_window_s: float) -> None:
        """Remember an accepted point; kept for twice the window (at least a minute)."""
        await self.cache.set(
            dedupe_key(user_id),
            {"lat": lat, "lng": lng, "recorded_at": recorded_at.isoformat()},
            ttl=max(60, int(time_window_s * 2)),
        )
