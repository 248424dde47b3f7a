"""Pydantic models for location module request validation."""

from __future__ import annotations

from datetime import time
from typing import ClassVar

from pydantic import BaseModel, Field

from modules.location.sessions import SessionMode


class SessionStartRequest(BaseModel):
    mode: SessionMode = SessionMode.LIVE
    interval_s: int | None = Field(default=None, ge=1, le=3600)


class SettingsUpdateRequest(BaseModel):
    """Partial update; only the fields present are changed."""

    accuracy_ceiling_m: float | None = None
    dedupe_radius_m: float | None = None
    dedupe_time_seconds: int | None = None
    speed_threshold_mps: float | None = None
    distance_threshold_m: float | None = None
    idle_heartbeat_seconds: int | None = None
    rate_limit_seconds: int | None = None
    session_ttl_seconds: int | None = None
    promotion_tolerance: float | None = None
    promotion_freshness_seconds: int | None = None
    max_plausible_speed_mps: float | None = None
    history_retention_days: int | None = None
    events_retention_days: int | None = None
    alerts_enabled: bool | None = None
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    quiet_hours_timezone: str | None = None

    # An explicit null clears these; for every other field null means "unchanged"
    CLEARABLE: ClassVar[frozenset[str]] = frozenset({"quiet_hours_start", "quiet_hours_end"})

    def changes(self) -> dict:
        data = self.model_dump(mode="json", exclude_unset=True)
        return {k: v for k, v in data.items() if v is not None or k in self.CLEARABLE}
