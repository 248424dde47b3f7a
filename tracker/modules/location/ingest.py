"""Ingestion pipeline for single fixes and batch uploads.

validate -> idempotency -> rate limit -> heartbeat -> accuracy ceiling ->
dedupe -> motion gate -> quality gate (current) -> history -> geofences ->
alerts.  Everything after the history write is best-effort: a failing
geofence or alert evaluation is logged and never fails the fix.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from modules.location.alerts import AlertsEngine
from modules.location.cache import TrackingCache, idempotency_key
from modules.location.dedupe import Dedupe
from modules.location.geofence import GeofenceEngine
from modules.location.motion import MotionDecision, MotionGate, PreviousPoint
from modules.location.quality import FixQualityGate, best_of_batch
from modules.location.rate_limiter import RateLimiter
from modules.location.sessions import SessionGate
from modules.location.settings import SettingsRepo, TrackingSettings
from modules.location.store import LocationStore
from modules.location.validator import MAX_ID_LENGTH, MAX_PLATFORM_LENGTH, Fix, validate_fix
from shared.auth import AuthenticatedMember
from shared.errors import (
    AccuracyTooLow,
    BatchTooLarge,
    InvalidFix,
    RateLimited,
    SharingDisabled,
)

logger = structlog.get_logger()

DEFAULT_DEVICE = "default"


@dataclass(frozen=True)
class Retained:
    motion: MotionDecision
    stored_history: bool


def _previous(snapshot) -> PreviousPoint | None:
    if snapshot is None:
        return None
    return PreviousPoint(lat=snapshot.lat, lng=snapshot.lng, recorded_at=snapshot.recorded_at)


class LocationIngestor:
    def __init__(
        self,
        *,
        store: LocationStore,
        settings_repo: SettingsRepo,
        cache: TrackingCache,
        geofences: GeofenceEngine,
        alerts: AlertsEngine,
        sessions: SessionGate,
        batch_max_items: int = 100,
        idempotency_ttl_s: int = 86400,
    ):
        self.store = store
        self.settings_repo = settings_repo
        self.cache = cache
        self.geofences = geofences
        self.alerts = alerts
        self.sessions = sessions
        self.rate_limiter = RateLimiter(cache)
        self.dedupe = Dedupe(cache)
        self.batch_max_items = batch_max_items
        self.idempotency_ttl_s = idempotency_ttl_s

    # ------------------------------------------------------------------
    # Single fix
    # ------------------------------------------------------------------

    async def ingest_fix(self, member: AuthenticatedMember, payload) -> dict:
        if not member.location_sharing:
            raise SharingDisabled("Location sharing is turned off for this member")

        fix = validate_fix(payload)
        settings = await self.settings_repo.get(member.family_id)

        if fix.client_event_id and await self._already_processed(member.user_id, fix.client_event_id):
            return {
                "status": "deduplicated",
                "already_exists": True,
                "motion_state": None,
                "stored_history": False,
                "promoted": False,
            }

        rate = await self.rate_limiter.allow(member.user_id, settings.rate_limit_seconds)
        if not rate.allowed:
            raise RateLimited("Too many location updates", retry_after=rate.retry_after_s)

        await self.store.touch_device(
            user_id=member.user_id,
            family_id=member.family_id,
            device_uuid=fix.device_id or DEFAULT_DEVICE,
            platform=fix.platform,
        )

        if fix.accuracy_m is not None and fix.accuracy_m > settings.accuracy_ceiling_m:
            raise AccuracyTooLow(
                "Location accuracy too low",
                details=[{
                    "field": "accuracy_m",
                    "message": f"{fix.accuracy_m} m exceeds the {settings.accuracy_ceiling_m:g} m ceiling",
                }],
            )

        dup = await self.dedupe.check(
            member.user_id,
            fix.lat,
            fix.lng,
            fix.recorded_at,
            radius_m=settings.dedupe_radius_m,
            time_window_s=settings.dedupe_time_seconds,
        )
        if dup.duplicate:
            await self._mark_processed(member.user_id, fix.client_event_id)
            return {
                "status": "deduplicated",
                "reason": "duplicate",
                "motion_state": None,
                "stored_history": False,
                "promoted": False,
                "distance_m": round(dup.distance_m, 1),
                "time_delta_s": round(dup.time_delta_s, 1),
            }

        current = await self.store.get_current(member.user_id)
        last_history_at = await self.store.last_history_at(member.user_id)
        motion = MotionGate(settings).evaluate(fix, _previous(current), last_history_at)

        gate = FixQualityGate(self.store, settings)
        promotion = await gate.promote(
            fix,
            user_id=member.user_id,
            family_id=member.family_id,
            motion_state=motion.motion_state.value,
        )

        retained = await self._retain(member, fix, settings, motion, force_history=False)
        downstream = await self._downstream(member, fix, settings)

        status = "stored" if promotion.promote or retained.stored_history else "skipped"
        logger.info(
            "fix_ingested",
            user_id=str(member.user_id),
            status=status,
            motion_state=motion.motion_state.value,
            promoted=promotion.promote,
            stored_history=retained.stored_history,
        )
        return {
            "status": status,
            "motion_state": motion.motion_state.value,
            "stored_history": retained.stored_history,
            "promoted": promotion.promote,
            "promotion_reason": promotion.reason,
            "score": promotion.score,
            "live_session": await self.sessions.is_live(member.user_id),
            **downstream,
        }

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def ingest_batch(self, member: AuthenticatedMember, payload) -> dict:
        if not member.location_sharing:
            raise SharingDisabled("Location sharing is turned off for this member")

        locations = payload.get("locations") if isinstance(payload, dict) else None
        if not isinstance(locations, list) or not locations:
            raise InvalidFix(
                "locations must be a non-empty array",
                details=[{"field": "locations", "message": "expected a non-empty array"}],
            )
        if len(locations) > self.batch_max_items:
            raise BatchTooLarge(
                f"A batch may hold at most {self.batch_max_items} locations",
                details=[{"field": "locations", "message": f"{len(locations)} items received"}],
            )

        device_uuid = payload.get("device_uuid") or payload.get("device_id")
        device_uuid = str(device_uuid).strip()[:MAX_ID_LENGTH] if device_uuid else None
        settings = await self.settings_repo.get(member.family_id)

        await self.store.touch_device(
            user_id=member.user_id,
            family_id=member.family_id,
            device_uuid=device_uuid or DEFAULT_DEVICE,
            platform=str(payload.get("platform") or "").strip().lower()[:MAX_PLATFORM_LENGTH] or None,
        )

        results: list[dict | None] = [None] * len(locations)
        valid: list[tuple[int, Fix]] = []
        for index, raw in enumerate(locations):
            if isinstance(raw, dict) and device_uuid and not (raw.get("device_id") or raw.get("device_uuid")):
                raw = {**raw, "device_id": device_uuid}
            try:
                valid.append((index, validate_fix(raw)))
            except InvalidFix as e:
                results[index] = {"index": index, "status": "error", "reason": e.code, "details": e.details}

        # Oldest first so motion and dedupe see the trail in order
        valid.sort(key=lambda item: item[1].recorded_at)

        gate = FixQualityGate(self.store, settings)
        motion_gate = MotionGate(settings)
        previous = _previous(await self.store.get_current(member.user_id))
        accepted: list[tuple[int, Fix, float, MotionDecision]] = []

        for index, fix in valid:
            base = {"index": index, "client_event_id": fix.client_event_id}
            try:
                outcome, motion = await self._batch_item(member, fix, settings, motion_gate, previous)
            except Exception:
                logger.exception("batch_item_failed", user_id=str(member.user_id), index=index)
                results[index] = {**base, "status": "error", "reason": "internal_error"}
                continue

            results[index] = {**base, **outcome}
            if motion is not None:
                accepted.append((index, fix, gate.compute_score(fix), motion))
                previous = PreviousPoint(lat=fix.lat, lng=fix.lng, recorded_at=fix.recorded_at)

        promoted = False
        downstream: dict = {"geofence_events": [], "alerts": []}
        if accepted:
            best = best_of_batch([(fix, score) for _, fix, score, _ in accepted])
            best_index, best_fix, _, best_motion = accepted[best]
            decision = await gate.promote(
                best_fix,
                user_id=member.user_id,
                family_id=member.family_id,
                motion_state=best_motion.motion_state.value,
            )
            promoted = decision.promote
            results[best_index]["promoted"] = promoted
            results[best_index]["promotion_reason"] = decision.reason

            # Zones and fix alerts only see the newest point of the batch
            downstream = await self._downstream(member, accepted[-1][1], settings)

        summary = {
            "received": len(locations),
            "stored": sum(1 for r in results if r and r["status"] == "stored"),
            "skipped": sum(1 for r in results if r and r["status"] == "skipped"),
            "errors": sum(1 for r in results if r and r["status"] == "error"),
            "promoted": promoted,
        }
        logger.info("batch_ingested", user_id=str(member.user_id), **summary)
        return {"results": results, "summary": summary, **downstream}

    async def _batch_item(
        self,
        member: AuthenticatedMember,
        fix: Fix,
        settings: TrackingSettings,
        motion_gate: MotionGate,
        previous: PreviousPoint | None,
    ) -> tuple[dict, MotionDecision | None]:
        """Result for one valid item, plus its motion decision when it was stored."""
        if fix.client_event_id and await self._already_processed(member.user_id, fix.client_event_id):
            return {"status": "skipped", "reason": "already_exists", "already_exists": True}, None

        if fix.accuracy_m is not None and fix.accuracy_m > settings.accuracy_ceiling_m:
            return {"status": "skipped", "reason": "accuracy_too_low"}, None

        dup = await self.dedupe.check(
            member.user_id,
            fix.lat,
            fix.lng,
            fix.recorded_at,
            radius_m=settings.dedupe_radius_m,
            time_window_s=settings.dedupe_time_seconds,
        )
        if dup.duplicate:
            await self._mark_processed(member.user_id, fix.client_event_id)
            return {"status": "skipped", "reason": "duplicate"}, None

        motion = motion_gate.evaluate(fix, previous, None)
        retained = await self._retain(member, fix, settings, motion, force_history=True)
        if not retained.stored_history:
            # The unique (user, client_event_id) constraint caught a concurrent retry
            return {"status": "skipped", "reason": "already_exists", "already_exists": True}, None

        return {
            "status": "stored",
            "motion_state": motion.motion_state.value,
            "stored_history": True,
            "promoted": False,
        }, motion

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _retain(
        self,
        member: AuthenticatedMember,
        fix: Fix,
        settings: TrackingSettings,
        motion: MotionDecision,
        *,
        force_history: bool,
    ) -> Retained:
        stored = False
        if motion.store_history or force_history:
            stored = await self.store.append_history(
                user_id=member.user_id,
                family_id=member.family_id,
                fix=fix,
                motion_state=motion.motion_state.value,
            )

        await self.dedupe.record(
            member.user_id, fix.lat, fix.lng, fix.recorded_at, time_window_s=settings.dedupe_time_seconds
        )
        await self._mark_processed(member.user_id, fix.client_event_id)
        return Retained(motion=motion, stored_history=stored)

    async def _downstream(self, member: AuthenticatedMember, fix: Fix, settings: TrackingSettings) -> dict:
        """Geofence transitions and alert rules; failures are logged, never raised."""
        transitions = []
        try:
            transitions = await self.geofences.evaluate(
                user_id=member.user_id, family_id=member.family_id, fix=fix
            )
        except Exception:
            logger.exception("geofence_evaluation_failed", user_id=str(member.user_id))

        fired = []
        for transition in transitions:
            fired.extend(
                await self.alerts.process(
                    member.user_id,
                    member.family_id,
                    transition.event,
                    display_name=member.display_name,
                    settings=settings,
                )
            )
        fired.extend(
            await self.alerts.process(
                member.user_id, member.family_id, fix, display_name=member.display_name, settings=settings
            )
        )
        return {
            "geofence_events": [t.to_dict() for t in transitions],
            "alerts": [a.to_dict() for a in fired],
        }

    async def _already_processed(self, user_id, client_event_id: str) -> bool:
        if await self.cache.exists(idempotency_key(user_id, client_event_id)):
            return True
        return await self.store.client_event_seen(user_id, client_event_id)

    async def _mark_processed(self, user_id, client_event_id: str | None) -> None:
        if not client_event_id:
            return
        await self.cache.set(
            idempotency_key(user_id, client_event_id),
            {"processed_at": datetime.now(timezone.utc).isoformat()},
            ttl=self.idempotency_ttl_s,
        )
