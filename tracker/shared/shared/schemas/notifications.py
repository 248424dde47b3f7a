"""Notification schemas for push messages via Redis pub/sub."""

from __future__ import annotations

from pydantic import BaseModel, Field


class PushNotification(BaseModel):
    """A push message for every device in a family, picked up by the delivery service."""

    family_id: str
    user_id: str | None = None  # member the alert is about
    kind: str  # battery_low, enter_geofence, speed_over, ...
    title: str
    body: str
    data: dict = Field(default_factory=dict)
    rule_id: str | None = None  # alert rule that fired this
