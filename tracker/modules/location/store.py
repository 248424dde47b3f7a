"""LocationStore: owns the current location row and the history ledger."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

import structlog

from modules.location.cache import (
    DEFAULT_TTLS,
    TrackingCache,
    current_key,
    family_snapshot_key,
    last_history_key,
)
from modules.location.validator import Fix

logger = structlog.get_logger()

DEFAULT_HISTORY_LIMIT = 100
MAX_HISTORY_LIMIT = 1000


@dataclass(frozen=True)
class CurrentSnapshot:
    """The promoted position of one user, as cached and as served."""

    user_id: str
    family_id: str
    lat: float
    lng: float
    accuracy_m: float | None
    speed_mps: float | None
    bearing_deg: float | None
    altitude_m: float | None
    battery_level: int | None
    motion_state: str
    quality_score: float
    fix_source: str | None
    device_id: str | None
    platform: str | None
    recorded_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> CurrentSnapshot:
        return cls(
            user_id=str(row.user_id),
            family_id=str(row.family_id),
            lat=row.latitude,
            lng=row.longitude,
            accuracy_m=row.accuracy_m,
            speed_mps=row.speed_mps,
            bearing_deg=row.bearing_deg,
            altitude_m=row.altitude_m,
            battery_level=row.battery_level,
            motion_state=row.motion_state,
            quality_score=row.quality_score or 0.0,
            fix_source=row.fix_source,
            device_id=row.device_id,
            platform=row.platform,
            recorded_at=_aware(row.recorded_at),
            updated_at=_aware(row.updated_at),
        )

    @classmethod
    def from_cache(cls, data: dict) -> CurrentSnapshot:
        data = dict(data)
        data["recorded_at"] = datetime.fromisoformat(data["recorded_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return cls(**data)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["recorded_at"] = self.recorded_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def classify_staleness(
    location_updated_at: datetime | None,
    device_last_seen: datetime | None,
    now: datetime,
    *,
    online_s: int,
    offline_s: int,
) -> str:
    """online / idle / offline from the freshest of the two signals; no_location without a fix."""
    if location_updated_at is None:
        return "no_location"
    freshest = max(t for t in (location_updated_at, device_last_seen) if t is not None)
    age = (now - freshest).total_seconds()
    if age <= online_s:
        return "online"
    if age <= offline_s:
        return "idle"
    return "offline"


class LocationStore:
    """Single writer of CurrentLocation and LocationHistory; read APIs for the app."""

    def __init__(
        self,
        locations,
        devices,
        members,
        cache: TrackingCache,
        *,
        online_threshold_s: int = 120,
        offline_threshold_s: int = 660,
        stale_threshold_s: int = 3600,
        snapshot_ttl_s: int = 30,
    ):
        self.locations = locations
        self.devices = devices
        self.members = members
        self.cache = cache
        self.online_threshold_s = online_threshold_s
        self.offline_threshold_s = offline_threshold_s
        self.stale_threshold_s = stale_threshold_s
        self.snapshot_ttl_s = snapshot_ttl_s

    # -- current -----------------------------------------------------------

    async def get_current(self, user_id, fresh: bool = False) -> CurrentSnapshot | None:
        """Current position, from cache unless ``fresh`` forces a database read."""
        if not fresh:
            cached = await self.cache.get(current_key(user_id))
            if cached:
                try:
                    return CurrentSnapshot.from_cache(cached)
                except (KeyError, TypeError, ValueError):
                    logger.warning("current_cache_corrupt", user_id=str(user_id))

        row = await self.locations.get_current(user_id)
        if row is None:
            return None
        snapshot = CurrentSnapshot.from_row(row)
        await self.cache.set(current_key(user_id), snapshot.to_dict(), ttl=DEFAULT_TTLS["current"])
        return snapshot

    async def save_current(
        self,
        *,
        user_id,
        family_id,
        fix: Fix,
        motion_state: str,
        quality_score: float,
        fix_source: str | None,
        expected_updated_at: datetime | None,
    ) -> bool:
        """Write the promoted fix. Returns False if the row changed since it was read."""
        now = datetime.now(timezone.utc)
        values = {
            "family_id": family_id,
            "latitude": fix.lat,
            "longitude": fix.lng,
            "accuracy_m": fix.accuracy_m,
            "speed_mps": fix.speed_mps,
            "bearing_deg": fix.bearing_deg,
            "altitude_m": fix.altitude_m,
            "battery_level": fix.battery_level,
            "motion_state": motion_state,
            "quality_score": quality_score,
            "fix_source": fix_source,
            "device_id": fix.device_id,
            "platform": fix.platform,
            "recorded_at": fix.recorded_at,
            "updated_at": now,
        }

        if expected_updated_at is None:
            written = await self.locations.insert_current({"user_id": user_id, **values})
        else:
            written = await self.locations.update_current_if(user_id, expected_updated_at, values)

        if not written:
            await self.cache.delete(current_key(user_id))
            return False

        snapshot = CurrentSnapshot(
            user_id=str(user_id),
            family_id=str(family_id),
            lat=fix.lat,
            lng=fix.lng,
            accuracy_m=fix.accuracy_m,
            speed_mps=fix.speed_mps,
            bearing_deg=fix.bearing_deg,
            altitude_m=fix.altitude_m,
            battery_level=fix.battery_level,
            motion_state=motion_state,
            quality_score=quality_score,
            fix_source=fix_source,
            device_id=fix.device_id,
            platform=fix.platform,
            recorded_at=fix.recorded_at,
            updated_at=now,
        )
        await self.cache.set(current_key(user_id), snapshot.to_dict(), ttl=DEFAULT_TTLS["current"])
        await self.cache.delete(family_snapshot_key(family_id))
        return True

    # -- history -----------------------------------------------------------

    async def append_history(self, *, user_id, family_id, fix: Fix, motion_state: str) -> bool:
        """Append one immutable point. False if its client_event_id is already stored."""
        stored = await self.locations.insert_history(
            {
                "family_id": family_id,
                "user_id": user_id,
                "device_id": fix.device_id,
                "latitude": fix.lat,
                "longitude": fix.lng,
                "accuracy_m": fix.accuracy_m,
                "speed_mps": fix.speed_mps,
                "bearing_deg": fix.bearing_deg,
                "altitude_m": fix.altitude_m,
                "battery_level": fix.battery_level,
                "motion_state": motion_state,
                "client_event_id": fix.client_event_id,
                "recorded_at": fix.recorded_at,
            }
        )
        if stored:
            previous = await self.last_history_at(user_id)
            if previous is None or fix.recorded_at > previous:
                await self.cache.set(
                    last_history_key(user_id),
                    {"recorded_at": fix.recorded_at.isoformat()},
                    ttl=DEFAULT_TTLS["last_history"],
                )
        return stored

    async def last_history_at(self, user_id) -> datetime | None:
        cached = await self.cache.get(last_history_key(user_id))
        if cached:
            try:
                return datetime.fromisoformat(cached["recorded_at"])
            except (KeyError, TypeError, ValueError):
                pass
        latest = _aware(await self.locations.latest_history_at(user_id))
        if latest is not None:
            await self.cache.set(
                last_history_key(user_id),
                {"recorded_at": latest.isoformat()},
                ttl=DEFAULT_TTLS["last_history"],
            )
        return latest

    async def client_event_seen(self, user_id, client_event_id: str) -> bool:
        return await self.locations.history_exists(user_id, client_event_id)

    # -- devices -----------------------------------------------------------

    async def touch_device(self, *, user_id, family_id, device_uuid: str, platform: str | None) -> None:
        await self.devices.touch(user_id, device_uuid, platform, datetime.now(timezone.utc))
        await self.cache.delete(family_snapshot_key(family_id))

    # -- reads -------------------------------------------------------------

    async def family_current(self, family_id, now: datetime | None = None) -> list[dict]:
        """Current position and status of every consenting member of the family."""
        now = now or datetime.now(timezone.utc)
        cached = await self.cache.get(family_snapshot_key(family_id))
        if cached is not None:
            members = cached
        else:
            members = await self._build_family_snapshot(family_id)
            await self.cache.set(family_snapshot_key(family_id), members, ttl=self.snapshot_ttl_s)

        return [self._with_status(member, now) for member in members]

    async def _build_family_snapshot(self, family_id) -> list[dict]:
        members = await self.members.sharing_members(family_id)
        last_seen = await self.devices.last_seen_by_user([m.id for m in members])

        snapshot = []
        for member in members:
            current = await self.get_current(member.id)
            seen = _aware(last_seen.get(member.id))
            snapshot.append(
                {
                    "user_id": str(member.id),
                    "display_name": member.display_name,
                    "last_seen": seen.isoformat() if seen else None,
                    "location": current.to_dict() if current else None,
                }
            )
        return snapshot

    def _with_status(self, member: dict, now: datetime) -> dict:
        location = member.get("location")
        last_seen = datetime.fromisoformat(member["last_seen"]) if member.get("last_seen") else None
        updated_at = recorded_at = None
        if location:
            updated_at = datetime.fromisoformat(location["updated_at"])
            recorded_at = datetime.fromisoformat(location["recorded_at"])

        status = classify_staleness(
            updated_at,
            last_seen,
            now,
            online_s=self.online_threshold_s,
            offline_s=self.offline_threshold_s,
        )
        stale = recorded_at is not None and (now - recorded_at).total_seconds() > self.stale_threshold_s
        return {**member, "status": status, "location_stale": stale}

    async def history(
        self,
        user_id,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
    ) -> dict:
        """One member's trail within [start, end], most recent first."""
        end = end or datetime.now(timezone.utc)
        start = start or end - timedelta(hours=24)
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        offset = max(0, offset)

        rows, total = await self.locations.history_page(user_id, start, end, limit, offset)
        points = [
            {
                "lat": row.latitude,
                "lng": row.longitude,
                "accuracy_m": row.accuracy_m,
                "speed_mps": row.speed_mps,
                "bearing_deg": row.bearing_deg,
                "altitude_m": row.altitude_m,
                "battery_level": row.battery_level,
                "motion_state": row.motion_state,
                "recorded_at": _aware(row.recorded_at).isoformat(),
            }
            for row in rows
        ]
        return {
            "user_id": str(user_id),
            "start": start.isoformat(),
            "end": end.isoformat(),
            "points": points,
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(points) < total,
        }
