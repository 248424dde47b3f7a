"""Location history model: append-only trail of retained fixes."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class LocationHistory(Base):
    __tablename__ = "location_history"
    __table_args__ = (
        UniqueConstraint("user_id", "client_event_id", name="uq_history_client_event"),
        Index("ix_location_history_user_recorded", "user_id", "recorded_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    family_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("families.id"), index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("family_members.id"))
    device_id: Mapped[str | None] = mapped_column(String(64), default=None)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy_m: Mapped[float | None] = mapped_column(Float, default=None)
    speed_mps: Mapped[float | None] = mapped_column(Float, default=None)
    bearing_deg: Mapped[float | None] = mapped_column(Float, default=None)
    altitude_m: Mapped[float | None] = mapped_column(Float, default=None)
    battery_level: Mapped[int | None] = mapped_column(Integer, default=None)
    motion_state: Mapped[str] = mapped_column(String, default="unknown")
    client_event_id: Mapped[str | None] = mapped_column(String(64), default=None)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
