"""Error taxonomy shared by the tracking API.

Each error carries a stable machine ``code`` and the HTTP status it maps
to.  The FastAPI app renders them as::

    {"success": false, "error": code, "message": ..., "details": ..., "retry_after": ...}
"""

from __future__ import annotations


class TrackingError(Exception):
    """Base class for errors surfaced to API clients."""

    code = "internal_error"
    status_code = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        details: list[dict] | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message or self.code)
        self.message = message or self.code.replace("_", " ")
        self.details = details
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        body: dict = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        return body


class InvalidFix(TrackingError):
    code = "invalid_coordinates"
    status_code = 422


class AccuracyTooLow(TrackingError):
    code = "accuracy_too_low"
    status_code = 422


class BatchTooLarge(TrackingError):
    code = "batch_too_large"
    status_code = 422


class InvalidParameter(TrackingError):
    code = "invalid_parameter"
    status_code = 422


class RateLimited(TrackingError):
    code = "rate_limited"
    status_code = 429


class Unauthorized(TrackingError):
    code = "unauthorized"
    status_code = 401


class SubscriptionLocked(TrackingError):
    code = "subscription_locked"
    status_code = 402


class SharingDisabled(TrackingError):
    code = "sharing_disabled"
    status_code = 403


class Forbidden(TrackingError):
    code = "forbidden"
    status_code = 403


class NotFound(TrackingError):
    code = "not_found"
    status_code = 404
