"""Common schemas used across services."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Standard health check response."""

    status: str = "ok"
    database: bool | None = None
    redis: bool | None = None


class SuccessResponse(BaseModel):
    """Envelope for every successful API response."""

    success: bool = True
    data: Any = None


class ErrorResponse(BaseModel):
    """Envelope for every failed API response."""

    success: bool = False
    error: str
    message: str
    details: list[dict] | None = None
    retry_after: int | None = None
