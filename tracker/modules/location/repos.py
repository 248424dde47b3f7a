"""SQLAlchemy repositories for the tracking tables."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.models.alert_rule import AlertRule
from shared.models.current_location import CurrentLocation
from shared.models.device import Device
from shared.models.family import Family, FamilyMember
from shared.models.geofence import Geofence
from shared.models.location_history import LocationHistory
from shared.models.tracking_event import TrackingEvent

logger = structlog.get_logger()

TRANSITION_EVENT_TYPES = ("enter_geofence", "exit_geofence")


class LocationRepo:
    """Current location rows and the history ledger."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_current(self, user_id: uuid.UUID) -> CurrentLocation | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CurrentLocation).where(CurrentLocation.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def insert_current(self, values: dict) -> bool:
        """Create the user's current row. False if another writer created it first."""
        async with self.session_factory() as session:
            session.add(CurrentLocation(**values))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def update_current_if(
        self, user_id: uuid.UUID, expected_updated_at: datetime, values: dict
    ) -> bool:
        """Compare-and-swap: update only if ``updated_at`` is still the value we read."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(CurrentLocation)
                .where(
                    CurrentLocation.user_id == user_id,
                    CurrentLocation.updated_at == expected_updated_at,
                )
                .values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    async def insert_history(self, values: dict) -> bool:
        """Append a history point. False when the client_event_id is already stored."""
        async with self.session_factory() as session:
            session.add(LocationHistory(**values))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def history_exists(self, user_id: uuid.UUID, client_event_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LocationHistory.id)
                .where(
                    LocationHistory.user_id == user_id,
                    LocationHistory.client_event_id == client_event_id,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def latest_history_at(self, user_id: uuid.UUID) -> datetime | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.max(LocationHistory.recorded_at)).where(
                    LocationHistory.user_id == user_id
                )
            )
            return result.scalar_one_or_none()

    async def history_page(
        self,
        user_id: uuid.UUID,
        start: datetime,
        end: datetime,
        limit: int,
        offset: int,
    ) -> tuple[list[LocationHistory], int]:
        conditions = (
            LocationHistory.user_id == user_id,
            LocationHistory.recorded_at >= start,
            LocationHistory.recorded_at <= end,
        )
        async with self.session_factory() as session:
            total = await session.execute(
                select(func.count()).select_from(LocationHistory).where(*conditions)
            )
            rows = await session.execute(
                select(LocationHistory)
                .where(*conditions)
                .order_by(LocationHistory.recorded_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(rows.scalars().all()), int(total.scalar_one() or 0)

    async def prune_history(self, family_id: uuid.UUID, before: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(LocationHistory).where(
                    LocationHistory.family_id == family_id,
                    LocationHistory.recorded_at < before,
                )
            )
            await session.commit()
            return result.rowcount or 0


class DeviceRepo:
    """Device heartbeat rows."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def touch(
        self,
        user_id: uuid.UUID,
        device_uuid: str,
        platform: str | None,
        seen_at: datetime,
    ) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Device).where(
                    Device.user_id == user_id, Device.device_uuid == device_uuid
                )
            )
            device = result.scalar_one_or_none()
            if device is None:
                session.add(
                    Device(
                        user_id=user_id,
                        device_uuid=device_uuid,
                        platform=platform,
                        last_seen=seen_at,
                    )
                )
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()

            values: dict = {"last_seen": seen_at}
            if platform:
                values["platform"] = platform
            await session.execute(
                update(Device)
                .where(Device.user_id == user_id, Device.device_uuid == device_uuid)
                .values(**values)
            )
            await session.commit()

    async def last_seen_by_user(self, user_ids: list[uuid.UUID]) -> dict[uuid.UUID, datetime]:
        if not user_ids:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(
                select(Device.user_id, func.max(Device.last_seen))
                .where(Device.user_id.in_(user_ids))
                .group_by(Device.user_id)
            )
            return {user_id: last_seen for user_id, last_seen in result.all()}


class MemberRepo:
    """Family membership and consent lookups."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def sharing_members(self, family_id: uuid.UUID) -> list[FamilyMember]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FamilyMember)
                .where(
                    FamilyMember.family_id == family_id,
                    FamilyMember.status == "active",
                    FamilyMember.location_sharing.is_(True),
                )
                .order_by(FamilyMember.display_name)
            )
            return list(result.scalars().all())

    async def get_sharing_member(
        self, family_id: uuid.UUID, user_id: uuid.UUID
    ) -> FamilyMember | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FamilyMember).where(
                    FamilyMember.id == user_id,
                    FamilyMember.family_id == family_id,
                    FamilyMember.status == "active",
                    FamilyMember.location_sharing.is_(True),
                )
            )
            return result.scalar_one_or_none()

    async def family_ids(self) -> list[uuid.UUID]:
        async with self.session_factory() as session:
            result = await session.execute(select(Family.id))
            return list(result.scalars().all())


class GeofenceRepo:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def active_for_family(self, family_id: uuid.UUID) -> list[Geofence]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Geofence).where(
                    Geofence.family_id == family_id, Geofence.active.is_(True)
                )
            )
            return list(result.scalars().all())


class EventsRepo:
    """Append-only event log."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def append(
        self,
        *,
        family_id: uuid.UUID,
        user_id: uuid.UUID | None,
        event_type: str,
        lat: float | None = None,
        lng: float | None = None,
        payload: dict | None = None,
        geofence_id: uuid.UUID | None = None,
        rule_id: uuid.UUID | None = None,
        rule_type: str | None = None,
    ) -> TrackingEvent:
        event = TrackingEvent(
            id=uuid.uuid4(),
            family_id=family_id,
            user_id=user_id,
            event_type=event_type,
            geofence_id=geofence_id,
            rule_id=rule_id,
            rule_type=rule_type,
            latitude=lat,
            longitude=lng,
            payload=payload or {},
            created_at=datetime.now(timezone.utc),
        )
        async with self.session_factory() as session:
            session.add(event)
            await session.commit()
        return event

    async def latest_transitions(
        self, user_id: uuid.UUID, geofence_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, TrackingEvent]:
        """Most recent enter/exit event per geofence for one user, in a single query."""
        if not geofence_ids:
            return {}
        filters = (
            TrackingEvent.user_id == user_id,
            TrackingEvent.geofence_id.in_(geofence_ids),
            TrackingEvent.event_type.in_(TRANSITION_EVENT_TYPES),
        )
        latest = (
            select(
                TrackingEvent.geofence_id,
                func.max(TrackingEvent.created_at).label("max_created"),
            )
            .where(*filters)
            .group_by(TrackingEvent.geofence_id)
            .subquery()
        )
        async with self.session_factory() as session:
            result = await session.execute(
                select(TrackingEvent)
                .join(
                    latest,
                    and_(
                        TrackingEvent.geofence_id == latest.c.geofence_id,
                        TrackingEvent.created_at == latest.c.max_created,
                    ),
                )
                .where(*filters)
            )
            return {event.geofence_id: event for event in result.scalars().all()}

    async def latest_matching(
        self,
        *,
        user_id: uuid.UUID,
        event_types: tuple[str, ...] | list[str],
        rule_id: uuid.UUID | None = None,
        rule_type: str | None = None,
        geofence_id: uuid.UUID | None = None,
    ) -> TrackingEvent | None:
        stmt = select(TrackingEvent).where(
            TrackingEvent.user_id == user_id,
            TrackingEvent.event_type.in_(event_types),
        )
        if rule_id is not None:
            stmt = stmt.where(TrackingEvent.rule_id == rule_id)
        if rule_type is not None:
            stmt = stmt.where(TrackingEvent.rule_type == rule_type)
        if geofence_id is not None:
            stmt = stmt.where(TrackingEvent.geofence_id == geofence_id)
        async with self.session_factory() as session:
            result = await session.execute(
                stmt.order_by(TrackingEvent.created_at.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def list_events(
        self,
        family_id: uuid.UUID,
        *,
        user_id: uuid.UUID | None = None,
        event_types: list[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TrackingEvent], int, dict[str, int]]:
        conditions = [TrackingEvent.family_id == family_id]
        if user_id is not None:
            conditions.append(TrackingEvent.user_id == user_id)
        if event_types:
            conditions.append(TrackingEvent.event_type.in_(event_types))
        if start is not None:
            conditions.append(TrackingEvent.created_at >= start)
        if end is not None:
            conditions.append(TrackingEvent.created_at <= end)

        async with self.session_factory() as session:
            counts_result = await session.execute(
                select(TrackingEvent.event_type, func.count())
                .where(*conditions)
                .group_by(TrackingEvent.event_type)
            )
            counts = {event_type: int(n) for event_type, n in counts_result.all()}
            rows = await session.execute(
                select(TrackingEvent)
                .where(*conditions)
                .order_by(TrackingEvent.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(rows.scalars().all()), sum(counts.values()), counts

    async def prune(self, family_id: uuid.UUID, before: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(TrackingEvent).where(
                    TrackingEvent.family_id == family_id,
                    TrackingEvent.created_at < before,
                )
            )
            await session.commit()
            return result.rowcount or 0


class AlertRulesRepo:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def enabled_for_family(self, family_id: uuid.UUID) -> list[AlertRule]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AlertRule).where(
                    AlertRule.family_id == family_id, AlertRule.enabled.is_(True)
                )
            )
            return list(result.scalars().all())

    async def mark_fired(self, rule_id: uuid.UUID, debounce_key: str, fired_at: datetime) -> None:
        """Record the firing time in the rule's per-user debounce map."""
        async with self.session_factory() as session:
            result = await session.execute(select(AlertRule).where(AlertRule.id == rule_id))
            rule = result.scalar_one_or_none()
            if rule is None:
                return
            fired = dict(rule.last_fired_per_user or {})
            fired[debounce_key] = fired_at.isoformat()
            rule.last_fired_per_user = fired
            await session.commit()
