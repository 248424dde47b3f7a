"""Fix quality scoring and promotion to the current location.

Score (0..100) = accuracy component + signal bonus - implausible speed
penalty.  A scored fix replaces the current location when the current one
is missing or stale, or when the new score reaches the current score
minus an age decay and a tolerance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from modules.location.geo import haversine_m
from modules.location.settings import TrackingSettings
from modules.location.validator import MAX_FUTURE_SKEW_S, Fix

logger = structlog.get_logger()

# (max accuracy in meters, score component), checked in order
ACCURACY_BANDS: list[tuple[float, float]] = [
    (10, 90),
    (25, 85),
    (50, 80),
    (100, 65),
    (200, 40),
]
COARSE_ACCURACY_SCORE = 20.0
UNKNOWN_ACCURACY_SCORE = 60.0

SPEED_BONUS = 4.0
BEARING_BONUS = 3.0
ALTITUDE_BONUS = 3.0
IMPLAUSIBLE_SPEED_PENALTY = 40.0

# Fixes coarser than this never become current (unless there is no current yet)
MAX_PROMOTABLE_ACCURACY_M = 200.0
# Teleport check only applies while the current fix is this fresh
JUMP_CHECK_WINDOW_S = 300.0
# Points the retained score loses per second of age
SCORE_DECAY_PER_S = 0.05


def compute_score(fix: Fix, max_plausible_speed_mps: float = 55.0) -> float:
    """Score a fix's trustworthiness on 0..100."""
    if fix.accuracy_m is None:
        score = UNKNOWN_ACCURACY_SCORE
    else:
        score = COARSE_ACCURACY_SCORE
        for limit, band_score in ACCURACY_BANDS:
            if fix.accuracy_m <= limit:
                score = band_score
                break

    if fix.speed_mps is not None:
        score += SPEED_BONUS
        if fix.speed_mps > max_plausible_speed_mps:
            score -= IMPLAUSIBLE_SPEED_PENALTY
    if fix.bearing_deg is not None:
        score += BEARING_BONUS
    if fix.altitude_m is not None:
        score += ALTITUDE_BONUS

    return max(0.0, min(100.0, score))


def determine_source(accuracy_m: float | None) -> str:
    """Best guess of the positioning source from the reported accuracy."""
    if accuracy_m is None:
        return "unknown"
    if accuracy_m <= 20:
        return "gps"
    if accuracy_m <= 50:
        return "fused"
    return "network"


@dataclass(frozen=True)
class PromotionDecision:
    promote: bool
    score: float
    reason: str
    threshold: float | None = None
    implied_speed_mps: float | None = None


def decide_promotion(
    fix: Fix,
    score: float,
    current,
    settings: TrackingSettings,
    now: datetime | None = None,
) -> PromotionDecision:
    """Pure promotion rule. ``current`` is a CurrentSnapshot or None.

    Staleness is the larger of the gap between the two fixes and the
    wall-clock age of the current row, so a row that stopped being
    refreshed is replaceable even when the incoming fix is not newer.
    A current row timestamped beyond the allowed clock skew is replaced
    outright.
    """
    if current is None:
        return PromotionDecision(True, score, "first_fix")

    if fix.accuracy_m is not None and fix.accuracy_m > MAX_PROMOTABLE_ACCURACY_M:
        return PromotionDecision(False, score, "accuracy_too_coarse")

    now = now or datetime.now(timezone.utc)
    if current.recorded_at > now + timedelta(seconds=MAX_FUTURE_SKEW_S):
        return PromotionDecision(True, score, "current_future_dated")

    age_s = (fix.recorded_at - current.recorded_at).total_seconds()
    row_age_s = (now - current.updated_at).total_seconds()
    if max(age_s, row_age_s) > settings.promotion_freshness_seconds:
        return PromotionDecision(True, score, "current_stale")

    if age_s < 0:
        return PromotionDecision(False, score, "out_of_order")

    implied = None
    if age_s < JUMP_CHECK_WINDOW_S:
        distance = haversine_m(current.lat, current.lng, fix.lat, fix.lng)
        implied = distance / max(age_s, 1.0)
        if implied > settings.max_plausible_speed_mps:
            return PromotionDecision(
                False, score, "implausible_jump", implied_speed_mps=round(implied, 1)
            )

    threshold = current.quality_score - SCORE_DECAY_PER_S * age_s - settings.promotion_tolerance
    if score >= threshold:
        return PromotionDecision(True, score, "score_ok", threshold=threshold, implied_speed_mps=implied)
    return PromotionDecision(False, score, "low_score", threshold=threshold, implied_speed_mps=implied)


def best_of_batch(scored: list[tuple[Fix, float]]) -> int | None:
    """Index of the highest-scoring fix; ties go to the most recent."""
    if not scored:
        return None
    return max(
        range(len(scored)),
        key=lambda i: (scored[i][1], scored[i][0].recorded_at),
    )


class FixQualityGate:
    """Scores fixes and promotes the trustworthy ones through the LocationStore."""

    # One re-read after a lost compare-and-swap
    MAX_ATTEMPTS = 2

    def __init__(self, store, settings: TrackingSettings):
        self.store = store
        self.settings = settings

    def compute_score(self, fix: Fix) -> float:
        return compute_score(fix, self.settings.max_plausible_speed_mps)

    async def should_promote(self, fix: Fix, user_id) -> PromotionDecision:
        current = await self.store.get_current(user_id)
        return decide_promotion(fix, self.compute_score(fix), current, self.settings)

    async def promote(self, fix: Fix, *, user_id, family_id, motion_state: str) -> PromotionDecision:
        """Evaluate and, if warranted, write ``fix`` as the current location.

        The write only lands if the row is unchanged since it was read;
        a concurrent promotion forces one re-evaluation against the fresh row.
        """
        score = self.compute_score(fix)
        decision = PromotionDecision(False, score, "write_conflict")

        for attempt in range(self.MAX_ATTEMPTS):
            current = await self.store.get_current(user_id, fresh=attempt > 0)
            decision = decide_promotion(fix, score, current, self.settings)
            if not decision.promote:
                logger.debug(
                    "fix_not_promoted",
                    user_id=str(user_id),
                    score=score,
                    reason=decision.reason,
                )
                return decision

            written = await self.store.save_current(
                user_id=user_id,
                family_id=family_id,
                fix=fix,
                motion_state=motion_state,
                quality_score=score,
                fix_source=determine_source(fix.accuracy_m),
                expected_updated_at=current.updated_at if current else None,
            )
            if written:
                logger.info(
                    "fix_promoted",
                    user_id=str(user_id),
                    score=score,
                    reason=decision.reason,
                )
                return decision

            logger.info("fix_promotion_conflict", user_id=str(user_id), attempt=attempt + 1)

        return PromotionDecision(False, score, "write_conflict")
