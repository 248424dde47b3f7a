"""Per-family tracking settings overrides."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class FamilySettings(Base):
    __tablename__ = "family_settings"

    family_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("families.id"), primary_key=True
    )
    overrides: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
