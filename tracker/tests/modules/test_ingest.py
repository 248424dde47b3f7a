"""End-to-end tests for single and batch ingestion.

The pipeline runs against fakeredis and in-memory repositories, so every
gate (idempotency, rate limit, dedupe, motion, promotion, geofences,
alerts) is exercised together.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from modules.location.geofence import ENTER_EVENT, EXIT_EVENT
from modules.location.settings import TrackingSettings
from shared.errors import AccuracyTooLow, BatchTooLarge, InvalidFix, RateLimited, SharingDisabled
from tests.fakes import build_pipeline

T0 = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(hours=1)


def payload(seconds: float, lat: float = 0.0, lng: float = 0.0, **extra) -> dict:
    return {
        "lat": lat,
        "lng": lng,
        "accuracy": extra.pop("accuracy", 8),
        "recorded_at": (T0 + timedelta(seconds=seconds)).isoformat(),
        **extra,
    }


# ---------------------------------------------------------------------------
# Single fix
# ---------------------------------------------------------------------------


class TestIngestFix:
    @pytest.mark.asyncio
    async def test_first_fix_promoted_and_stored(self, cache, member):
        p = build_pipeline(cache)

        result = await p.ingestor.ingest_fix(member, payload(0, device_id="phone-1", platform="iOS"))

        assert result["status"] == "stored"
        assert result["promoted"] is True
        assert result["promotion_reason"] == "first_fix"
        assert result["stored_history"] is True
        assert result["live_session"] is False
        assert len(p.locations.history) == 1
        assert p.locations.current[member.user_id].platform == "ios"
        assert (member.user_id, "phone-1") in p.devices.devices

    @pytest.mark.asyncio
    async def test_idempotent_retry(self, cache, member, unthrottled_settings):
        p = build_pipeline(cache, unthrottled_settings)
        body = payload(0, client_event_id="evt-1")

        first = await p.ingestor.ingest_fix(member, body)
        retry = await p.ingestor.ingest_fix(member, body)

        assert first["status"] == "stored"
        assert retry["status"] == "deduplicated"
        assert retry["already_exists"] is True
        assert len(p.locations.history) == 1

    @pytest.mark.asyncio
    async def test_idempotency_survives_cache_loss(self, cache, fake_redis, member, unthrottled_settings):
        p = build_pipeline(cache, unthrottled_settings)
        body = payload(0, client_event_id="evt-1")
        await p.ingestor.ingest_fix(member, body)
        await fake_redis.flushall()

        retry = await p.ingestor.ingest_fix(member, body)

        assert retry["already_exists"] is True
        assert len(p.locations.history) == 1

    @pytest.mark.asyncio
    async def test_idempotent_retry_not_rate_limited(self, cache, member):
        p = build_pipeline(cache, TrackingSettings(rate_limit_seconds=60))
        body = payload(0, client_event_id="evt-1")
        await p.ingestor.ingest_fix(member, body)

        retry = await p.ingestor.ingest_fix(member, body)

        assert retry["status"] == "deduplicated"

    @pytest.mark.asyncio
    async def test_near_duplicates_store_one_point(self, cache, member):
        p = build_pipeline(cache, TrackingSettings(rate_limit_seconds=0))

        first = await p.ingestor.ingest_fix(member, payload(0))
        second = await p.ingestor.ingest_fix(member, payload(10, lat=0.00002))

        assert first["status"] == "stored"
        assert second["status"] == "deduplicated"
        assert second["reason"] == "duplicate"
        assert len(p.locations.history) == 1

    @pytest.mark.asyncio
    async def test_rate_limited(self, cache, member):
        p = build_pipeline(cache, TrackingSettings(rate_limit_seconds=5))
        await p.ingestor.ingest_fix(member, payload(0))

        with pytest.raises(RateLimited) as exc:
            await p.ingestor.ingest_fix(member, payload(30, lat=0.01))

        assert exc.value.retry_after > 0
        assert exc.value.to_dict()["retry_after"] == exc.value.retry_after

    @pytest.mark.asyncio
    async def test_invalid_coordinates(self, cache, member):
        p = build_pipeline(cache)
        with pytest.raises(InvalidFix):
            await p.ingestor.ingest_fix(member, {"lat": 123, "lng": 0})
        assert p.locations.history == []

    @pytest.mark.asyncio
    async def test_accuracy_ceiling_still_heartbeats(self, cache, member):
        p = build_pipeline(cache, TrackingSettings(accuracy_ceiling_m=100))

        with pytest.raises(AccuracyTooLow):
            await p.ingestor.ingest_fix(member, payload(0, accuracy=250, device_id="phone-1"))

        assert p.locations.history == []
        assert member.user_id not in p.locations.current
        assert (member.user_id, "phone-1") in p.devices.devices

    @pytest.mark.asyncio
    async def test_sharing_disabled(self, cache, make_member):
        p = build_pipeline(cache)
        with pytest.raises(SharingDisabled):
            await p.ingestor.ingest_fix(make_member(location_sharing=False), payload(0))
        assert p.devices.devices == {}

    @pytest.mark.asyncio
    async def test_idle_fix_within_heartbeat_not_stored(self, cache, member, unthrottled_settings):
        p = build_pipeline(cache, unthrottled_settings)
        await p.ingestor.ingest_fix(member, payload(0, speed_mps=0))

        idle = await p.ingestor.ingest_fix(member, payload(60, lat=0.00001, speed_mps=0))

        assert idle["motion_state"] == "idle"
        assert idle["stored_history"] is False
        assert len(p.locations.history) == 1

    @pytest.mark.asyncio
    async def test_live_session_flag(self, cache, member):
        p = build_pipeline(cache)
        await p.sessions.start(member.user_id, member.family_id)

        result = await p.ingestor.ingest_fix(member, payload(0))

        assert result["live_session"] is True

    @pytest.mark.asyncio
    async def test_geofence_enter_and_exit_with_alerts(self, cache, member, unthrottled_settings, make_geofence):
        zone = make_geofence(name="Home", radius_m=100)
        p = build_pipeline(cache, unthrottled_settings, zones=[zone])

        results = []
        for i in range(5):
            results.append(await p.ingestor.ingest_fix(member, payload(i * 60, lat=0.0001 * i)))
        results.append(await p.ingestor.ingest_fix(member, payload(400, lat=0.002)))

        assert [e.event_type for e in p.events.of_type(ENTER_EVENT, EXIT_EVENT)] == [ENTER_EVENT, EXIT_EVENT]
        assert results[0]["geofence_events"][0]["type"] == ENTER_EVENT
        assert results[-1]["geofence_events"][0]["type"] == EXIT_EVENT
        assert [a["rule_type"] for a in results[0]["alerts"]] == ["geofence_enter"]
        assert [a["rule_type"] for a in results[-1]["alerts"]] == ["geofence_exit"]
        assert [n.title for n in p.notifier.sent] == ["Arrived", "Left"]

    @pytest.mark.asyncio
    async def test_one_fix_entering_two_zones_alerts_for_each(self, cache, member, unthrottled_settings, make_geofence):
        home = make_geofence(name="Home", radius_m=200)
        garden = make_geofence(name="Garden", radius_m=50)
        p = build_pipeline(cache, unthrottled_settings, zones=[home, garden])

        result = await p.ingestor.ingest_fix(member, payload(0))

        assert sorted(e["geofence_name"] for e in result["geofence_events"]) == ["Garden", "Home"]
        assert [a["rule_type"] for a in result["alerts"]] == ["geofence_enter", "geofence_enter"]
        assert len(p.notifier.sent) == 2

    @pytest.mark.asyncio
    async def test_clock_skewed_fix_does_not_pin_current(self, cache, member, unthrottled_settings):
        p = build_pipeline(cache, unthrottled_settings)
        ahead = datetime.now(timezone.utc) + timedelta(days=365)
        await p.ingestor.ingest_fix(member, {"lat": 1.0, "lng": 1.0, "accuracy": 8, "recorded_at": ahead.isoformat()})

        later = datetime.now(timezone.utc) + timedelta(seconds=30)
        result = await p.ingestor.ingest_fix(
            member, {"lat": 1.001, "lng": 1.0, "accuracy": 8, "recorded_at": later.isoformat()}
        )

        assert result["promoted"] is True
        assert p.locations.current[member.user_id].latitude == 1.001
        assert p.locations.current[member.user_id].recorded_at < ahead

    @pytest.mark.asyncio
    async def test_future_dated_row_is_replaced(self, cache, member, unthrottled_settings):
        p = build_pipeline(cache, unthrottled_settings)
        now = datetime.now(timezone.utc)
        await p.locations.insert_current({
            "user_id": member.user_id,
            "family_id": member.family_id,
            "latitude": 1.0,
            "longitude": 1.0,
            "accuracy_m": 5.0,
            "speed_mps": None,
            "bearing_deg": None,
            "altitude_m": None,
            "battery_level": None,
            "motion_state": "idle",
            "quality_score": 100.0,
            "fix_source": "gps",
            "device_id": None,
            "platform": None,
            "recorded_at": now + timedelta(days=365),
            "updated_at": now,
        })

        result = await p.ingestor.ingest_fix(member, {"lat": 1.001, "lng": 1.0, "accuracy": 8})

        assert result["promoted"] is True
        assert result["promotion_reason"] == "current_future_dated"
        assert p.locations.current[member.user_id].latitude == 1.001

    @pytest.mark.asyncio
    async def test_alerts_switched_off_still_records_crossing(self, cache, member, make_geofence):
        settings = TrackingSettings(rate_limit_seconds=0, alerts_enabled=False)
        p = build_pipeline(cache, settings, zones=[make_geofence(name="Home", radius_m=200)])

        result = await p.ingestor.ingest_fix(member, payload(0, battery=5))

        assert [e["geofence_name"] for e in result["geofence_events"]] == ["Home"]
        assert result["alerts"] == []
        assert p.notifier.sent == []

    @pytest.mark.asyncio
    async def test_geofence_failure_does_not_fail_fix(self, cache, member, make_geofence):
        p = build_pipeline(cache, zones=[make_geofence()])

        async def _broken(*args, **kwargs):
            raise RuntimeError("db down")

        p.ingestor.geofences.evaluate = _broken
        result = await p.ingestor.ingest_fix(member, payload(0))

        assert result["status"] == "stored"
        assert result["geofence_events"] == []


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


class TestIngestBatch:
    @pytest.mark.asyncio
    async def test_batch_promotes_at_most_once(self, cache, member):
        p = build_pipeline(cache)
        accuracies = [30, 12, 8, 45, 60, 20, 9, 15, 80, 25]
        locations = [
            payload(i * 60, lat=0.001 * i, accuracy=acc, client_event_id=f"b-{i}")
            for i, acc in enumerate(accuracies)
        ]

        result = await p.ingestor.ingest_batch(member, {"device_uuid": "phone-1", "locations": locations})

        promoted = [r for r in result["results"] if r.get("promoted")]
        assert len(promoted) <= 1
        assert result["summary"] == {"received": 10, "stored": 10, "skipped": 0, "errors": 0, "promoted": True}
        assert len(p.locations.history) == 10
        # Best score (8 m, 90) wins; 9 m ties at 90 and is newer
        assert promoted[0]["index"] == 6

    @pytest.mark.asyncio
    async def test_per_item_results_keep_input_order(self, cache, member):
        p = build_pipeline(cache)
        locations = [
            payload(120, lat=0.002, client_event_id="late"),
            {"lat": 200, "lng": 0},
            payload(0, client_event_id="early"),
            payload(60, lat=0.001, accuracy=900),
        ]

        result = await p.ingestor.ingest_batch(member, {"locations": locations})

        statuses = [(r["index"], r["status"]) for r in result["results"]]
        assert statuses == [(0, "stored"), (1, "error"), (2, "stored"), (3, "skipped")]
        assert result["results"][1]["reason"] == "invalid_coordinates"
        assert result["results"][3]["reason"] == "accuracy_too_low"
        assert result["summary"]["errors"] == 1

    @pytest.mark.asyncio
    async def test_replayed_batch_is_idempotent(self, cache, member):
        p = build_pipeline(cache)
        body = {"locations": [payload(i * 60, lat=0.001 * i, client_event_id=f"r-{i}") for i in range(3)]}

        await p.ingestor.ingest_batch(member, body)
        replay = await p.ingestor.ingest_batch(member, body)

        assert {r["reason"] for r in replay["results"]} == {"already_exists"}
        assert replay["summary"]["stored"] == 0
        assert len(p.locations.history) == 3

    @pytest.mark.asyncio
    async def test_batch_too_large(self, cache, member):
        p = build_pipeline(cache, batch_max_items=3)
        with pytest.raises(BatchTooLarge):
            await p.ingestor.ingest_batch(member, {"locations": [payload(i) for i in range(4)]})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"locations": []}, {"locations": "nope"}, []])
    async def test_batch_requires_locations(self, cache, member, body):
        p = build_pipeline(cache)
        with pytest.raises(InvalidFix):
            await p.ingestor.ingest_batch(member, body)

    @pytest.mark.asyncio
    async def test_batch_not_rate_limited(self, cache, member):
        p = build_pipeline(cache, TrackingSettings(rate_limit_seconds=60))
        await p.ingestor.ingest_fix(member, payload(0))

        result = await p.ingestor.ingest_batch(
            member, {"locations": [payload(60, lat=0.001), payload(120, lat=0.002)]}
        )

        assert result["summary"]["stored"] == 2

    @pytest.mark.asyncio
    async def test_batch_geofence_uses_last_fix(self, cache, member, make_geofence):
        zone = make_geofence(radius_m=100)
        p = build_pipeline(cache, zones=[zone])

        # Passes through the zone mid-batch but ends outside it
        result = await p.ingestor.ingest_batch(
            member,
            {"locations": [payload(0, lat=0.01), payload(60, lat=0.0), payload(120, lat=-0.01)]},
        )

        assert result["geofence_events"] == []
        assert p.events.of_type(ENTER_EVENT, EXIT_EVENT) == []

    @pytest.mark.asyncio
    async def test_batch_dedupes_within_batch(self, cache, member):
        p = build_pipeline(cache)
        result = await p.ingestor.ingest_batch(
            member, {"locations": [payload(0), payload(5, lat=0.00001)]}
        )
        assert [r["status"] for r in result["results"]] == ["stored", "skipped"]
        assert result["results"][1]["reason"] == "duplicate"
