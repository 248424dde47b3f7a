"""Fix normalization: the only place raw payload aliases are interpreted."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from shared.errors import InvalidFix

# Generic "speed" values above this are assumed to be km/h
SPEED_KMH_HEURISTIC = 50.0
MAX_SPEED_MPS = 100.0
MAX_ID_LENGTH = 64
MAX_PLATFORM_LENGTH = 20
# Epoch values above this are milliseconds
MS_EPOCH_THRESHOLD = 1e12
# Timestamps further than this ahead of the server clock are clamped to it
MAX_FUTURE_SKEW_S = 300

_TIMESTAMP_KEYS = ("recorded_at", "client_timestamp", "timestamp")


def _bounded(value, lo: float, hi: float, digits: int = 2) -> float | None:
    """Coerce an optional numeric field, returning None when unusable."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f) or f < lo or f > hi:
        return None
    return round(f, digits)


def parse_timestamp(value) -> datetime | None:
    """Parse seconds/millisecond epochs, ISO-8601 strings or datetimes to aware UTC."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        value = number

    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    if number > MS_EPOCH_THRESHOLD:
        number /= 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _normalize_speed(data: dict) -> float | None:
    """Resolve speed_mps / speed_kmh / speed into meters per second."""
    if data.get("speed_mps") not in (None, ""):
        speed = _bounded(data["speed_mps"], 0, math.inf)
    elif data.get("speed_kmh") not in (None, ""):
        kmh = _bounded(data["speed_kmh"], 0, math.inf)
        speed = kmh / 3.6 if kmh is not None else None
    elif data.get("speed") not in (None, ""):
        speed = _bounded(data["speed"], 0, math.inf)
        if speed is not None and speed > SPEED_KMH_HEURISTIC:
            speed /= 3.6
    else:
        return None

    if speed is None or speed > MAX_SPEED_MPS:
        return None
    return round(speed, 2)


def _truncated(value, limit: int) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text[:limit] or None


class Fix(BaseModel):
    """A normalized, bounds-checked location fix."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    lat: float = Field(
        ge=-90, le=90, allow_inf_nan=False,
        validation_alias=AliasChoices("lat", "latitude"),
    )
    lng: float = Field(
        ge=-180, le=180, allow_inf_nan=False,
        validation_alias=AliasChoices("lng", "lon", "longitude"),
    )
    accuracy_m: float | None = Field(
        default=None, validation_alias=AliasChoices("accuracy_m", "accuracy")
    )
    speed_mps: float | None = None
    bearing_deg: float | None = Field(
        default=None,
        validation_alias=AliasChoices("bearing_deg", "bearing", "heading_deg", "heading"),
    )
    altitude_m: float | None = Field(
        default=None, validation_alias=AliasChoices("altitude_m", "altitude")
    )
    battery_level: int | None = Field(
        default=None, validation_alias=AliasChoices("battery_level", "battery")
    )
    recorded_at: datetime
    platform: str | None = None
    device_id: str | None = Field(
        default=None, validation_alias=AliasChoices("device_id", "device_uuid")
    )
    client_event_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _resolve_aliases(cls, data, info: ValidationInfo):
        if not isinstance(data, dict):
            return data
        data = dict(data)

        data["speed_mps"] = _normalize_speed(data)

        recorded_at = None
        for key in _TIMESTAMP_KEYS:
            if data.get(key) not in (None, ""):
                recorded_at = parse_timestamp(data[key])
                break
        now = (info.context or {}).get("now") if info else None
        now = now or datetime.now(timezone.utc)
        if recorded_at is None:
            recorded_at = now
        elif recorded_at > now + timedelta(seconds=MAX_FUTURE_SKEW_S):
            # Device clock ahead of ours
            recorded_at = now
        data["recorded_at"] = recorded_at
        return data

    @field_validator("lat", "lng")
    @classmethod
    def _round_coordinate(cls, v: float) -> float:
        return round(v, 7)

    @field_validator("accuracy_m", mode="before")
    @classmethod
    def _accuracy(cls, v):
        return _bounded(v, 0, 10000)

    @field_validator("bearing_deg", mode="before")
    @classmethod
    def _bearing(cls, v):
        return _bounded(v, 0, 360)

    @field_validator("altitude_m", mode="before")
    @classmethod
    def _altitude(cls, v):
        return _bounded(v, -1000, 50000)

    @field_validator("battery_level", mode="before")
    @classmethod
    def _battery(cls, v):
        level = _bounded(v, 0, 100, digits=0)
        return int(level) if level is not None else None

    @field_validator("platform", mode="before")
    @classmethod
    def _platform(cls, v):
        text = _truncated(v, MAX_PLATFORM_LENGTH)
        return text.lower() if text else None

    @field_validator("device_id", "client_event_id", mode="before")
    @classmethod
    def _identifier(cls, v):
        return _truncated(v, MAX_ID_LENGTH)


def _field_errors(exc: ValidationError) -> list[dict]:
    errors = []
    for err in exc.errors(include_url=False):
        field = ".".join(str(p) for p in err["loc"]) or "payload"
        errors.append({"field": field, "message": err["msg"]})
    return errors


def validate_fix(raw, *, now: datetime | None = None) -> Fix:
    """Normalize a raw payload into a Fix.

    Raises InvalidFix with field-level ``details`` when coordinates are
    missing or out of range.  Unusable optional fields are dropped.
    """
    if not isinstance(raw, dict):
        raise InvalidFix(
            "Fix payload must be an object",
            details=[{"field": "payload", "message": "expected an object"}],
        )
    try:
        return Fix.model_validate(raw, context={"now": now})
    except ValidationError as e:
        raise InvalidFix("Invalid coordinates", details=_field_errors(e)) from e
