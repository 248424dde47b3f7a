"""Pydantic schemas shared across services."""

from shared.schemas.common import ErrorResponse, HealthResponse, SuccessResponse
from shared.schemas.notifications import PushNotification

__all__ = [
    "ErrorResponse",
    "HealthResponse",
    "PushNotification",
    "SuccessResponse",
]
