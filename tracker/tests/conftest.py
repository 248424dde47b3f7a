"""Shared test fixtures for the tracker test suite.

Provides mock database sessions, a fakeredis-backed cache and factory
helpers so module tests can run without Docker infrastructure.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest

from modules.location.cache import TrackingCache
from modules.location.settings import TrackingSettings
from shared.auth import AuthenticatedMember
from shared.models.alert_rule import AlertRule
from shared.models.current_location import CurrentLocation
from shared.models.family import FamilyMember
from shared.models.geofence import Geofence


# ---------------------------------------------------------------------------
# Database mocks
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db_session():
    """Mock async SQLAlchemy session.

    Supports the common patterns used in repository code:
        session.execute(stmt) -> result
        session.add(obj)
        session.commit()
        session.rollback()
    """
    session = AsyncMock()
    session.add = MagicMock()
    # Default: execute returns a result with no rows
    default_result = MagicMock()
    default_result.scalar_one_or_none.return_value = None
    default_result.scalars.return_value.all.return_value = []
    default_result.first.return_value = None
    session.execute = AsyncMock(return_value=default_result)
    return session


@pytest.fixture
def mock_session_factory(mock_db_session):
    """Mock async session factory compatible with ``async with factory() as session:``."""

    @asynccontextmanager
    async def _session_ctx():
        yield mock_db_session

    factory = MagicMock(side_effect=lambda: _session_ctx())
    return factory


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_redis():
    """Mock async Redis client with common operations."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    redis.delete = AsyncMock()
    redis.publish = AsyncMock()
    return redis


@pytest.fixture
async def fake_redis():
    """In-process Redis with real TTL, NX and WATCH semantics."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(fake_redis):
    return TrackingCache(fake_redis)


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


@pytest.fixture
def family_id():
    return uuid.uuid4()


@pytest.fixture
def make_member(family_id):
    """Factory for AuthenticatedMember callers."""

    def _make(
        user_id: uuid.UUID | None = None,
        location_sharing: bool = True,
        role: str = "member",
        display_name: str = "Alex",
    ) -> AuthenticatedMember:
        return AuthenticatedMember(
            user_id=user_id or uuid.uuid4(),
            family_id=family_id,
            display_name=display_name,
            location_sharing=location_sharing,
            role=role,
        )

    return _make


@pytest.fixture
def member(make_member):
    return make_member()


@pytest.fixture
def make_family_member(family_id):
    """Factory for FamilyMember rows."""

    def _make(
        user_id: uuid.UUID | None = None,
        display_name: str = "Alex",
        location_sharing: bool = True,
        status: str = "active",
    ) -> FamilyMember:
        return FamilyMember(
            id=user_id or uuid.uuid4(),
            family_id=family_id,
            display_name=display_name,
            role="member",
            location_sharing=location_sharing,
            status=status,
            created_at=datetime.now(timezone.utc),
        )

    return _make


@pytest.fixture
def make_geofence(family_id):
    """Factory for circle geofences (pass ``polygon_points`` for a polygon)."""

    def _make(
        name: str = "Home",
        center_lat: float | None = 0.0,
        center_lng: float | None = 0.0,
        radius_m: float | None = 100.0,
        polygon_points: list | None = None,
        active: bool = True,
    ) -> Geofence:
        return Geofence(
            id=uuid.uuid4(),
            family_id=family_id,
            name=name,
            shape="polygon" if polygon_points else "circle",
            center_lat=None if polygon_points else center_lat,
            center_lng=None if polygon_points else center_lng,
            radius_m=None if polygon_points else radius_m,
            polygon_points=polygon_points,
            active=active,
            created_at=datetime.now(timezone.utc),
        )

    return _make


@pytest.fixture
def make_alert_rule(family_id):
    """Factory for AlertRule rows."""

    def _make(
        rule_type: str = "battery_low",
        params: dict | None = None,
        cooldown_seconds: int | None = None,
        enabled: bool = True,
    ) -> AlertRule:
        return AlertRule(
            id=uuid.uuid4(),
            family_id=family_id,
            rule_type=rule_type,
            params=params or {},
            enabled=enabled,
            cooldown_seconds=cooldown_seconds,
            last_fired_per_user={},
            created_at=datetime.now(timezone.utc),
        )

    return _make


@pytest.fixture
def make_current_location(family_id):
    """Factory for CurrentLocation rows."""

    def _make(
        user_id: uuid.UUID | None = None,
        latitude: float = -41.28,
        longitude: float = 174.77,
        quality_score: float = 90.0,
        recorded_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> CurrentLocation:
        now = datetime.now(timezone.utc)
        return CurrentLocation(
            id=uuid.uuid4(),
            user_id=user_id or uuid.uuid4(),
            family_id=family_id,
            latitude=latitude,
            longitude=longitude,
            accuracy_m=8.0,
            motion_state="idle",
            quality_score=quality_score,
            fix_source="gps",
            recorded_at=recorded_at or now,
            updated_at=updated_at or now,
        )

    return _make


@pytest.fixture
def unthrottled_settings():
    """Settings with rate limiting and dedupe off, for multi-fix scenarios."""
    return TrackingSettings(rate_limit_seconds=0, dedupe_radius_m=0, dedupe_time_seconds=0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_execute_side_effect(*results):
    """Create an execute side_effect that returns different results per call.

    Usage::

        session.execute = AsyncMock(
            side_effect=make_execute_side_effect(result1, result2)
        )

    Each result should be a MagicMock with the appropriate return values
    (e.g. scalar_one_or_none, scalars().all()).
    """
    call_idx = 0

    async def _side_effect(stmt, *args, **kwargs):
        nonlocal call_idx
        if call_idx < len(results):
            r = results[call_idx]
            call_idx += 1
            return r
        # Fallback: return empty result
        fallback = MagicMock()
        fallback.scalar_one_or_none.return_value = None
        fallback.scalars.return_value.all.return_value = []
        return fallback

    return _side_effect
