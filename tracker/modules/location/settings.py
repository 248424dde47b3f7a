"""Per-family tracking settings: typed model plus a cached repository."""

from __future__ import annotations

import uuid
from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from modules.location.cache import TrackingCache, settings_key
from shared.models.family_settings import FamilySettings

logger = structlog.get_logger()


class TrackingSettings(BaseModel):
    """Tunables a family admin may override. Defaults apply to every unset field."""

    accuracy_ceiling_m: float = Field(default=500.0, ge=1, le=10000)
    dedupe_radius_m: float = Field(default=10.0, ge=0, le=1000)
    dedupe_time_seconds: int = Field(default=60, ge=0, le=3600)
    speed_threshold_mps: float = Field(default=1.0, ge=0, le=100)
    distance_threshold_m: float = Field(default=50.0, ge=1, le=10000)
    idle_heartbeat_seconds: int = Field(default=300, ge=5, le=3600)
    # 0 disables rate limiting
    rate_limit_seconds: int = Field(default=5, ge=0, le=300)
    session_ttl_seconds: int = Field(default=300, ge=60, le=3600)
    promotion_tolerance: float = Field(default=5.0, ge=0, le=50)
    promotion_freshness_seconds: int = Field(default=600, ge=60, le=86400)
    max_plausible_speed_mps: float = Field(default=55.0, ge=1, le=400)
    history_retention_days: int = Field(default=30, ge=1, le=365)
    events_retention_days: int = Field(default=90, ge=1, le=365)
    # Master switch for every alert rule of the family
    alerts_enabled: bool = True
    # Alerts are suppressed between these local times; the window may span midnight
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    quiet_hours_timezone: str = "UTC"

    @field_validator("quiet_hours_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {value!r}") from e
        return value

    def in_quiet_hours(self, now: datetime) -> bool:
        """Whether ``now`` falls in the family's quiet hours window."""
        local = now.astimezone(ZoneInfo(self.quiet_hours_timezone)).time().replace(tzinfo=None)
        return in_quiet_hours(self.quiet_hours_start, self.quiet_hours_end, local)


def in_quiet_hours(start: time | None, end: time | None, at: time) -> bool:
    """Inclusive window test. Unset bounds mean no quiet hours; start after end spans midnight."""
    if start is None or end is None:
        return False
    if start > end:
        return at >= start or at <= end
    return start <= at <= end


def parse_overrides(overrides: dict | None, family_id=None) -> TrackingSettings:
    """Build settings from a stored override map, falling back to defaults if invalid."""
    try:
        return TrackingSettings.model_validate(overrides or {})
    except ValidationError as e:
        logger.warning(
            "settings_overrides_invalid",
            family_id=str(family_id) if family_id else None,
            errors=e.errors(include_url=False),
        )
        return TrackingSettings()


class SettingsRepo:
    """Loads family settings from the database, cached in Redis."""

    def __init__(self, session_factory: async_sessionmaker, cache: TrackingCache, cache_ttl: int = 300):
        self.session_factory = session_factory
        self.cache = cache
        self.cache_ttl = cache_ttl

    async def get(self, family_id: uuid.UUID) -> TrackingSettings:
        cached = await self.cache.get(settings_key(family_id))
        if cached is not None:
            return parse_overrides(cached, family_id)

        async with self.session_factory() as session:
            result = await session.execute(
                select(FamilySettings).where(FamilySettings.family_id == family_id)
            )
            row = result.scalar_one_or_none()

        settings = parse_overrides(row.overrides if row else None, family_id)
        await self.cache.set(settings_key(family_id), settings.model_dump(mode="json"), ttl=self.cache_ttl)
        return settings

    async def update(self, family_id: uuid.UUID, changes: dict) -> TrackingSettings:
        """Merge ``changes`` into the stored overrides. Raises ValidationError on bad values."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(FamilySettings).where(FamilySettings.family_id == family_id)
            )
            row = result.scalar_one_or_none()
            merged = {**(row.overrides if row else {}), **changes}
            settings = TrackingSettings.model_validate(merged)

            if row is None:
                session.add(FamilySettings(family_id=family_id, overrides=merged))
            else:
                row.overrides = merged
                row.updated_at = datetime.now(timezone.utc)
            await session.commit()

        await self.cache.delete(settings_key(family_id))
        logger.info("settings_updated", family_id=str(family_id), fields=sorted(changes))
        return settings
