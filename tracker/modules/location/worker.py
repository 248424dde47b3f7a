"""Background retention worker: prunes old history points and events."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import structlog

from modules.location.repos import EventsRepo, LocationRepo, MemberRepo
from modules.location.settings import SettingsRepo

logger = structlog.get_logger()


async def retention_loop(
    members: MemberRepo,
    locations: LocationRepo,
    events: EventsRepo,
    settings_repo: SettingsRepo,
    interval_s: int = 3600,
) -> None:
    """Run the retention pass forever, ``interval_s`` apart.

    A failing pass is logged and retried on the next tick.
    """
    logger.info("retention_worker_started", interval_s=interval_s)

    while True:
        try:
            await prune_all(members, locations, events, settings_repo)
        except Exception:
            logger.exception("retention_pass_error")

        await asyncio.sleep(interval_s)


async def prune_all(
    members: MemberRepo,
    locations: LocationRepo,
    events: EventsRepo,
    settings_repo: SettingsRepo,
    now: datetime | None = None,
) -> dict[str, int]:
    """Single pass: apply every family's retention windows."""
    now = now or datetime.now(timezone.utc)
    totals = {"families": 0, "history": 0, "events": 0}

    for family_id in await members.family_ids():
        settings = await settings_repo.get(family_id)
        history_cutoff = now - timedelta(days=settings.history_retention_days)
        events_cutoff = now - timedelta(days=settings.events_retention_days)

        pruned_history = await locations.prune_history(family_id, history_cutoff)
        pruned_events = await events.prune(family_id, events_cutoff)

        totals["families"] += 1
        totals["history"] += pruned_history
        totals["events"] += pruned_events
        if pruned_history or pruned_events:
            logger.info(
                "retention_pruned",
                family_id=str(family_id),
                history=pruned_history,
                events=pruned_events,
            )

    return totals
