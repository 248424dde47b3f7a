"""Moving/idle classification and history retention cadence."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime

from modules.location.geo import haversine_m
from modules.location.settings import TrackingSettings
from modules.location.validator import Fix


class MotionState(str, enum.Enum):
    MOVING = "moving"
    IDLE = "idle"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PreviousPoint:
    """The last known position a new fix is compared against."""

    lat: float
    lng: float
    recorded_at: datetime


@dataclass(frozen=True)
class MotionDecision:
    motion_state: MotionState
    store_history: bool
    reason: str
    distance_m: float | None = None
    elapsed_s: float | None = None


class MotionGate:
    """Classifies a fix and decides whether it belongs in the history ledger.

    moving: reported speed >= threshold, or displacement from the previous
    point > distance threshold.  unknown: no speed and nothing to compare.
    History is kept for every moving fix and otherwise at least once per
    idle heartbeat interval.
    """

    def __init__(self, settings: TrackingSettings):
        self.settings = settings

    def classify(self, fix: Fix, previous: PreviousPoint | None) -> tuple[MotionState, str, float | None, float | None]:
        distance = elapsed = None
        if previous is not None:
            distance = haversine_m(previous.lat, previous.lng, fix.lat, fix.lng)
            elapsed = (fix.recorded_at - previous.recorded_at).total_seconds()

        if fix.speed_mps is not None and fix.speed_mps >= self.settings.speed_threshold_mps:
            return MotionState.MOVING, "speed", distance, elapsed
        if distance is not None and distance > self.settings.distance_threshold_m:
            return MotionState.MOVING, "distance", distance, elapsed
        if fix.speed_mps is None and previous is None:
            return MotionState.UNKNOWN, "no_signal", distance, elapsed
        return MotionState.IDLE, "stationary", distance, elapsed

    def evaluate(
        self,
        fix: Fix,
        previous: PreviousPoint | None,
        last_history_at: datetime | None = None,
    ) -> MotionDecision:
        state, reason, distance, elapsed = self.classify(fix, previous)

        if state is MotionState.MOVING:
            store = True
        elif last_history_at is None:
            store, reason = True, "first_point"
        elif (fix.recorded_at - last_history_at).total_seconds() >= self.settings.idle_heartbeat_seconds:
            store, reason = True, "heartbeat"
        else:
            store = False

        return MotionDecision(
            motion_state=state,
            store_history=store,
            reason=reason,
            distance_m=round(distance, 1) if distance is not None else None,
            elapsed_s=elapsed,
        )
