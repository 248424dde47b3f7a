"""Tests for the retention worker."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from modules.location.settings import TrackingSettings
from modules.location.worker import prune_all
from tests.fakes import FakeEventsRepo, FakeLocationRepo, FakeMemberRepo, FakeSettingsRepo

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestPruneAll:
    @pytest.mark.asyncio
    async def test_prunes_past_retention(self, family_id, make_family_member):
        member = make_family_member()
        locations = FakeLocationRepo()
        events = FakeEventsRepo()
        for days in (1, 10, 45):
            recorded = NOW - timedelta(days=days)
            await locations.insert_history({
                "family_id": family_id,
                "user_id": member.id,
                "client_event_id": f"d-{days}",
                "recorded_at": recorded,
            })
            event = await events.append(family_id=family_id, user_id=member.id, event_type="session_start")
            event.created_at = recorded

        totals = await prune_all(
            FakeMemberRepo([member]),
            locations,
            events,
            FakeSettingsRepo(TrackingSettings(history_retention_days=7, events_retention_days=30)),
            now=NOW,
        )

        assert totals == {"families": 1, "history": 2, "events": 1}
        assert [p.client_event_id for p in locations.history] == ["d-1"]
        assert len(events.events) == 2

    @pytest.mark.asyncio
    async def test_other_families_untouched(self, family_id, make_family_member):
        other_family = uuid.uuid4()
        locations = FakeLocationRepo()
        await locations.insert_history({
            "family_id": other_family,
            "user_id": uuid.uuid4(),
            "client_event_id": None,
            "recorded_at": NOW - timedelta(days=400),
        })

        totals = await prune_all(
            FakeMemberRepo([make_family_member()]),
            locations,
            FakeEventsRepo(),
            FakeSettingsRepo(),
            now=NOW,
        )

        assert totals["history"] == 0
        assert len(locations.history) == 1
