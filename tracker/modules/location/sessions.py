"""SessionGate: advisory live-tracking sessions kept alive by keepalive calls."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timedelta, timezone

import structlog

from modules.location.cache import TrackingCache, session_key

logger = structlog.get_logger()

MIN_INTERVAL_S = 5
MAX_INTERVAL_S = 300
DEFAULT_INTERVAL_S = 30


class SessionMode(str, enum.Enum):
    LIVE = "live"
    MOTION = "motion"


def clamp_interval(interval_s: int | None) -> int:
    if interval_s is None:
        return DEFAULT_INTERVAL_S
    return max(MIN_INTERVAL_S, min(MAX_INTERVAL_S, int(interval_s)))


def _inactive() -> dict:
    return {"active": False}


def _state(session: dict, now: datetime) -> dict:
    expires_at = datetime.fromisoformat(session["expires_at"])
    return {
        "active": True,
        "session_id": session["session_id"],
        "mode": session["mode"],
        "interval_s": session["interval_s"],
        "started_at": session["started_at"],
        "expires_at": session["expires_at"],
        "expires_in_s": max(0, int((expires_at - now).total_seconds())),
    }


class SessionGate:
    """A session is one cache entry per user whose TTL is the session timeout.

    No cleanup job exists: once keepalives stop, the key expires and every
    reader sees the user as not live.
    """

    def __init__(self, cache: TrackingCache, events=None):
        self.cache = cache
        self.events = events

    async def start(
        self,
        user_id,
        family_id,
        mode: SessionMode | str = SessionMode.LIVE,
        interval_s: int | None = None,
        *,
        ttl_s: int = 300,
    ) -> dict:
        mode = SessionMode(mode)
        now = datetime.now(timezone.utc)
        session = {
            "session_id": uuid.uuid4().hex,
            "user_id": str(user_id),
            "family_id": str(family_id),
            "mode": mode.value,
            "interval_s": clamp_interval(interval_s),
            "started_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=ttl_s)).isoformat(),
        }
        await self.cache.set(session_key(user_id), session, ttl=ttl_s)

        if self.events is not None:
            await self.events.append(
                family_id=family_id,
                user_id=user_id,
                event_type="session_start",
                payload={
                    "session_id": session["session_id"],
                    "mode": mode.value,
                    "interval_s": session["interval_s"],
                },
            )
        logger.info(
            "session_started",
            user_id=str(user_id),
            mode=mode.value,
            interval_s=session["interval_s"],
        )
        return _state(session, now)

    async def keepalive(self, user_id, *, ttl_s: int = 300) -> dict:
        """Extend a live session. A session stopped concurrently is not revived."""
        key = session_key(user_id)
        session = await self.cache.get(key)
        if not session:
            return _inactive()

        now = datetime.now(timezone.utc)
        extended = {**session, "expires_at": (now + timedelta(seconds=ttl_s)).isoformat()}
        if not await self.cache.compare_and_set(key, session, extended, ttl=ttl_s):
            current = await self.cache.get(key)
            return _state(current, now) if current else _inactive()
        return _state(extended, now)

    async def stop(self, user_id) -> bool:
        key = session_key(user_id)
        session = await self.cache.get(key)
        if not session:
            return False
        await self.cache.delete(key)

        if self.events is not None:
            await self.events.append(
                family_id=uuid.UUID(session["family_id"]),
                user_id=user_id,
                event_type="session_stop",
                payload={"session_id": session["session_id"]},
            )
        logger.info("session_stopped", user_id=str(user_id))
        return True

    async def status(self, user_id) -> dict:
        session = await self.cache.get(session_key(user_id))
        if not session:
            return _inactive()
        return _state(session, datetime.now(timezone.utc))

    async def is_live(self, user_id) -> bool:
        return bool(await self.cache.get(session_key(user_id)))
