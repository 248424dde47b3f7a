"""GeofenceEngine: per (user, zone) inside/outside state machine.

Membership state is never stored as a flag; it is reconstructed from the
most recent enter/exit event for each (user, geofence) pair, once per
evaluation.  An event is only written when the tested membership differs
from that reconstructed state, so repeated or re-sent fixes cannot fire a
crossing twice.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

import structlog

from modules.location.geo import haversine_m, in_circle, in_polygon
from modules.location.validator import Fix

logger = structlog.get_logger()

ENTER_EVENT = "enter_geofence"
EXIT_EVENT = "exit_geofence"


class MembershipState(str, enum.Enum):
    OUTSIDE = "outside"
    INSIDE = "inside"

    @classmethod
    def from_event(cls, event) -> MembershipState:
        """State implied by the latest transition event; no event means outside."""
        if event is not None and event.event_type == ENTER_EVENT:
            return cls.INSIDE
        return cls.OUTSIDE


class GeometryError(ValueError):
    """A geofence row is missing the fields its shape needs."""


def contains(geofence, lat: float, lng: float) -> bool:
    """Membership test for a circle or polygon geofence."""
    if geofence.shape == "polygon":
        if not geofence.polygon_points:
            raise GeometryError(f"polygon geofence {geofence.id} has no points")
        try:
            return in_polygon(lat, lng, geofence.polygon_points)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise GeometryError(f"polygon geofence {geofence.id} has a malformed vertex: {e!r}") from e

    if geofence.center_lat is None or geofence.center_lng is None or not geofence.radius_m:
        raise GeometryError(f"circle geofence {geofence.id} has no center/radius")
    return in_circle(lat, lng, geofence.center_lat, geofence.center_lng, geofence.radius_m)


@dataclass(frozen=True)
class GeofenceTransition:
    geofence_id: object
    geofence_name: str
    event_type: str
    event: object
    distance_m: float | None = None

    def to_dict(self) -> dict:
        return {
            "geofence_id": str(self.geofence_id),
            "geofence_name": self.geofence_name,
            "type": self.event_type,
            "distance_m": self.distance_m,
        }


class GeofenceEngine:
    def __init__(self, geofences, events):
        self.geofences = geofences
        self.events = events

    async def states(self, user_id, geofence_ids: list) -> dict:
        latest = await self.events.latest_transitions(user_id, geofence_ids)
        return {gid: MembershipState.from_event(latest.get(gid)) for gid in geofence_ids}

    async def evaluate(self, *, user_id, family_id, fix: Fix) -> list[GeofenceTransition]:
        """Test ``fix`` against every active zone of the family and log crossings."""
        zones = await self.geofences.active_for_family(family_id)
        if not zones:
            return []

        states = await self.states(user_id, [z.id for z in zones])
        transitions: list[GeofenceTransition] = []

        for zone in zones:
            try:
                inside = contains(zone, fix.lat, fix.lng)
            except GeometryError as e:
                logger.warning("geofence_invalid_geometry", geofence_id=str(zone.id), error=str(e))
                continue

            previous = states.get(zone.id, MembershipState.OUTSIDE)
            current = MembershipState.INSIDE if inside else MembershipState.OUTSIDE
            if current is previous:
                continue

            event_type = ENTER_EVENT if current is MembershipState.INSIDE else EXIT_EVENT
            distance = None
            if zone.shape != "polygon":
                distance = round(haversine_m(fix.lat, fix.lng, zone.center_lat, zone.center_lng), 1)

            event = await self.events.append(
                family_id=family_id,
                user_id=user_id,
                event_type=event_type,
                lat=fix.lat,
                lng=fix.lng,
                geofence_id=zone.id,
                payload={
                    "geofence_name": zone.name,
                    "distance_m": distance,
                    "accuracy_m": fix.accuracy_m,
                    "recorded_at": fix.recorded_at.isoformat(),
                },
            )
            transitions.append(
                GeofenceTransition(
                    geofence_id=zone.id,
                    geofence_name=zone.name,
                    event_type=event_type,
                    event=event,
                    distance_m=distance,
                )
            )
            logger.info(
                "geofence_transition",
                user_id=str(user_id),
                geofence_id=str(zone.id),
                transition=event_type,
                distance_m=distance,
            )

        return transitions
