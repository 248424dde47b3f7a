"""AlertsEngine: data-driven rules evaluated against fixes and geofence events."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from modules.location.geofence import ENTER_EVENT, EXIT_EVENT
from modules.location.settings import TrackingSettings
from modules.location.validator import Fix
from shared.schemas.notifications import PushNotification

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Rule kinds
# ---------------------------------------------------------------------------


class _Rule(BaseModel):
    id: uuid.UUID | None = None
    last_fired_per_user: dict[str, str] = Field(default_factory=dict)


class BatteryLowRule(_Rule):
    rule_type: Literal["battery_low"] = "battery_low"
    threshold_pct: int = Field(default=15, ge=1, le=100)
    cooldown_seconds: int = 3600


class SpeedOverRule(_Rule):
    rule_type: Literal["speed_over"] = "speed_over"
    threshold_mps: float = Field(default=33.3, gt=0)
    cooldown_seconds: int = 900


class OutsideZoneTooLongRule(_Rule):
    rule_type: Literal["outside_too_long"] = "outside_too_long"
    geofence_id: uuid.UUID
    max_outside_seconds: int = Field(default=3600, ge=60)
    cooldown_seconds: int = 3600


class GeofenceEnterRule(_Rule):
    rule_type: Literal["geofence_enter"] = "geofence_enter"
    geofence_id: uuid.UUID | None = None  # None = any zone
    cooldown_seconds: int = 900


class GeofenceExitRule(_Rule):
    rule_type: Literal["geofence_exit"] = "geofence_exit"
    geofence_id: uuid.UUID | None = None
    cooldown_seconds: int = 900


class GenericRule(_Rule):
    """A rule type this service does not evaluate (kept for forward compatibility)."""

    rule_type: str
    params: dict = Field(default_factory=dict)
    cooldown_seconds: int = 900


KnownRule = Annotated[
    Union[BatteryLowRule, SpeedOverRule, OutsideZoneTooLongRule, GeofenceEnterRule, GeofenceExitRule],
    Field(discriminator="rule_type"),
]
_known_rule = TypeAdapter(KnownRule)
KNOWN_RULE_TYPES = {"battery_low", "speed_over", "outside_too_long", "geofence_enter", "geofence_exit"}

# Event written when each rule kind fires
FIRED_EVENT_TYPES: dict[str, str] = {
    "battery_low": "battery_low",
    "speed_over": "speed_over",
    "outside_too_long": "outside_too_long",
    "geofence_enter": "alert_triggered",
    "geofence_exit": "alert_triggered",
}


def parse_rule(row) -> _Rule | None:
    """Turn an AlertRule row into a typed rule; None if its params are invalid."""
    data = {
        **(row.params or {}),
        "rule_type": row.rule_type,
        "id": row.id,
        "last_fired_per_user": row.last_fired_per_user or {},
    }
    if row.cooldown_seconds is not None:
        data["cooldown_seconds"] = row.cooldown_seconds

    if row.rule_type not in KNOWN_RULE_TYPES:
        return GenericRule(
            id=row.id,
            rule_type=row.rule_type,
            params=row.params or {},
            last_fired_per_user=row.last_fired_per_user or {},
        )
    try:
        return _known_rule.validate_python(data)
    except ValidationError as e:
        logger.warning(
            "alert_rule_invalid",
            rule_id=str(row.id),
            rule_type=row.rule_type,
            errors=e.errors(include_url=False),
        )
        return None


def default_rules() -> list[_Rule]:
    """Rules every family gets until it configures its own."""
    return [BatteryLowRule(), GeofenceEnterRule(), GeofenceExitRule()]


@dataclass(frozen=True)
class FiredAlert:
    rule_type: str
    event_type: str
    rule_id: uuid.UUID | None
    payload: dict

    def to_dict(self) -> dict:
        return {
            "rule_type": self.rule_type,
            "event_type": self.event_type,
            "rule_id": str(self.rule_id) if self.rule_id else None,
            "payload": self.payload,
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AlertsEngine:
    """Evaluates a family's rules and fires debounced alerts.

    ``process`` never raises: every failure is logged and treated as
    "alert not sent".
    """

    def __init__(self, rules_repo, events, notifier):
        self.rules_repo = rules_repo
        self.events = events
        self.notifier = notifier

    async def load_rules(self, family_id) -> list[_Rule]:
        rows = await self.rules_repo.enabled_for_family(family_id)
        if not rows:
            return default_rules()
        return [rule for rule in (parse_rule(row) for row in rows) if rule is not None]

    async def process(
        self,
        user_id,
        family_id,
        subject,
        *,
        display_name: str | None = None,
        settings: TrackingSettings | None = None,
        now: datetime | None = None,
    ) -> list[FiredAlert]:
        """Evaluate every rule against a Fix or a geofence transition event.

        Nothing fires, and nothing is recorded, while the family has alerts
        switched off or is inside its quiet hours.
        """
        now = now or datetime.now(timezone.utc)
        if settings is not None:
            muted = None
            if not settings.alerts_enabled:
                muted = "alerts_disabled"
            elif settings.in_quiet_hours(now):
                muted = "quiet_hours"
            if muted:
                logger.debug("alerts_suppressed", family_id=str(family_id), user_id=str(user_id), reason=muted)
                return []

        try:
            rules = await self.load_rules(family_id)
        except Exception:
            logger.exception("alert_rules_load_failed", family_id=str(family_id))
            return []

        fired: list[FiredAlert] = []
        for rule in rules:
            try:
                match = await self._match(rule, user_id, subject, now)
                if match is None:
                    continue
                alert = await self._fire(
                    rule, user_id, family_id, subject, match, display_name=display_name, now=now
                )
                if alert is not None:
                    fired.append(alert)
            except Exception:
                logger.exception(
                    "alert_rule_failed",
                    rule_type=rule.rule_type,
                    rule_id=str(rule.id) if rule.id else None,
                    user_id=str(user_id),
                )
        return fired

    async def _match(self, rule: _Rule, user_id, subject, now: datetime) -> dict | None:
        """Measured values when ``rule`` applies to ``subject``, else None."""
        if isinstance(rule, GenericRule):
            logger.debug("alert_rule_unsupported", rule_type=rule.rule_type)
            return None

        if isinstance(subject, Fix):
            if isinstance(rule, BatteryLowRule):
                if subject.battery_level is not None and subject.battery_level <= rule.threshold_pct:
                    return {"battery_level": subject.battery_level, "threshold_pct": rule.threshold_pct}
            elif isinstance(rule, SpeedOverRule):
                if subject.speed_mps is not None and subject.speed_mps > rule.threshold_mps:
                    return {"speed_mps": subject.speed_mps, "threshold_mps": rule.threshold_mps}
            elif isinstance(rule, OutsideZoneTooLongRule):
                return await self._outside_too_long(rule, user_id, now)
            return None

        event_type = getattr(subject, "event_type", None)
        if isinstance(rule, GeofenceEnterRule) and event_type == ENTER_EVENT:
            expected = rule.geofence_id
        elif isinstance(rule, GeofenceExitRule) and event_type == EXIT_EVENT:
            expected = rule.geofence_id
        else:
            return None
        if expected is not None and subject.geofence_id != expected:
            return None
        return {
            "geofence_id": str(subject.geofence_id),
            "geofence_name": (subject.payload or {}).get("geofence_name"),
            "transition": event_type,
        }

    async def _outside_too_long(self, rule: OutsideZoneTooLongRule, user_id, now: datetime) -> dict | None:
        latest = await self.events.latest_matching(
            user_id=user_id,
            event_types=(ENTER_EVENT, EXIT_EVENT),
            geofence_id=rule.geofence_id,
        )
        # Never entered, or currently inside
        if latest is None or latest.event_type != EXIT_EVENT:
            return None
        outside_s = (now - _aware(latest.created_at)).total_seconds()
        if outside_s < rule.max_outside_seconds:
            return None
        return {
            "geofence_id": str(rule.geofence_id),
            "outside_seconds": int(outside_s),
            "max_outside_seconds": rule.max_outside_seconds,
        }

    async def _last_fired(self, rule: _Rule, user_id, event_type: str, target) -> datetime | None:
        candidates: list[datetime] = []
        stamp = rule.last_fired_per_user.get(_debounce_key(user_id, target))
        if stamp:
            try:
                candidates.append(_aware(datetime.fromisoformat(stamp)))
            except ValueError:
                pass

        latest = await self.events.latest_matching(
            user_id=user_id,
            event_types=(event_type,),
            rule_id=rule.id,
            rule_type=rule.rule_type,
            geofence_id=target,
        )
        if latest is not None:
            candidates.append(_aware(latest.created_at))
        return max(candidates) if candidates else None

    async def _fire(
        self,
        rule: _Rule,
        user_id,
        family_id,
        subject,
        match: dict,
        *,
        display_name: str | None,
        now: datetime,
    ) -> FiredAlert | None:
        event_type = FIRED_EVENT_TYPES[rule.rule_type]
        target = _target_geofence(rule, subject)

        last = await self._last_fired(rule, user_id, event_type, target)
        if last is not None and (now - last).total_seconds() < rule.cooldown_seconds:
            logger.debug(
                "alert_debounced",
                rule_type=rule.rule_type,
                user_id=str(user_id),
                last_fired=last.isoformat(),
            )
            return None

        lat = getattr(subject, "lat", None)
        if lat is None:
            lat = getattr(subject, "latitude", None)
        lng = getattr(subject, "lng", None)
        if lng is None:
            lng = getattr(subject, "longitude", None)

        payload = {"rule_type": rule.rule_type, **match}
        await self.events.append(
            family_id=family_id,
            user_id=user_id,
            event_type=event_type,
            lat=lat,
            lng=lng,
            payload=payload,
            geofence_id=target,
            rule_id=rule.id,
            rule_type=rule.rule_type,
        )
        if rule.id is not None:
            await self.rules_repo.mark_fired(rule.id, _debounce_key(user_id, target), now)
        rule.last_fired_per_user[_debounce_key(user_id, target)] = now.isoformat()

        title, body = _describe(rule.rule_type, match, display_name)
        try:
            await self.notifier.send(
                PushNotification(
                    family_id=str(family_id),
                    user_id=str(user_id),
                    kind=rule.rule_type,
                    title=title,
                    body=body,
                    data=payload,
                    rule_id=str(rule.id) if rule.id else None,
                )
            )
        except Exception:
            logger.exception("alert_notify_failed", rule_type=rule.rule_type, user_id=str(user_id))

        logger.info("alert_fired", rule_type=rule.rule_type, user_id=str(user_id), event_type=event_type)
        return FiredAlert(rule_type=rule.rule_type, event_type=event_type, rule_id=rule.id, payload=payload)


def _target_geofence(rule: _Rule, subject):
    """Geofence an alert is about, used to debounce per (rule, user, zone)."""
    if isinstance(rule, OutsideZoneTooLongRule):
        return rule.geofence_id
    if isinstance(rule, (GeofenceEnterRule, GeofenceExitRule)):
        return getattr(subject, "geofence_id", None)
    return None


def _debounce_key(user_id, target) -> str:
    return f"{user_id}:{target}" if target is not None else str(user_id)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _describe(rule_type: str, match: dict, display_name: str | None) -> tuple[str, str]:
    who = display_name or "A family member"
    if rule_type == "battery_low":
        return "Low battery", f"{who}'s phone battery is at {match['battery_level']}%"
    if rule_type == "speed_over":
        kmh = round(match["speed_mps"] * 3.6)
        return "Speed alert", f"{who} is travelling at {kmh} km/h"
    if rule_type == "outside_too_long":
        minutes = match["outside_seconds"] // 60
        return "Still away", f"{who} has been outside the zone for {minutes} minutes"
    place = match.get("geofence_name") or "a zone"
    if match.get("transition") == ENTER_EVENT:
        return "Arrived", f"{who} arrived at {place}"
    return "Left", f"{who} left {place}"
