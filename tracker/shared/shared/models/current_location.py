"""Current location model: latest promoted position per user."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class CurrentLocation(Base):
    __tablename__ = "current_locations"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("family_members.id"), unique=True
    )
    family_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("families.id"), index=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy_m: Mapped[float | None] = mapped_column(Float, default=None)
    speed_mps: Mapped[float | None] = mapped_column(Float, default=None)
    bearing_deg: Mapped[float | None] = mapped_column(Float, default=None)
    altitude_m: Mapped[float | None] = mapped_column(Float, default=None)
    battery_level: Mapped[int | None] = mapped_column(Integer, default=None)
    motion_state: Mapped[str] = mapped_column(String, default="unknown")
    quality_score: Mapped[float] = mapped_column(Float, default=0.0)
    fix_source: Mapped[str | None] = mapped_column(String, default=None)  # gps, fused, network
    device_id: Mapped[str | None] = mapped_column(String(64), default=None)
    platform: Mapped[str | None] = mapped_column(String(20), default=None)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
