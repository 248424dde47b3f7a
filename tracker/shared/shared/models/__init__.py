"""SQLAlchemy models."""

from shared.models.alert_rule import AlertRule
from shared.models.base import Base
from shared.models.current_location import CurrentLocation
from shared.models.device import Device
from shared.models.family import Family, FamilyMember, MemberToken
from shared.models.family_settings import FamilySettings
from shared.models.geofence import Geofence
from shared.models.location_history import LocationHistory
from shared.models.tracking_event import TrackingEvent

__all__ = [
    "AlertRule",
    "Base",
    "CurrentLocation",
    "Device",
    "Family",
    "FamilyMember",
    "FamilySettings",
    "Geofence",
    "LocationHistory",
    "MemberToken",
    "TrackingEvent",
]
