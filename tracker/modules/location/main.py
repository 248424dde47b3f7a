"""Location Module: FastAPI service for fix ingestion, family positions and sessions."""

from __future__ import annotations

import asyncio
import uuid

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from modules.location.alerts import AlertsEngine
from modules.location.cache import TrackingCache
from modules.location.geofence import GeofenceEngine
from modules.location.ingest import LocationIngestor
from modules.location.models import SessionStartRequest, SettingsUpdateRequest
from modules.location.notifier import Notifier
from modules.location.repos import (
    AlertRulesRepo,
    DeviceRepo,
    EventsRepo,
    GeofenceRepo,
    LocationRepo,
    MemberRepo,
)
from modules.location.sessions import SessionGate
from modules.location.settings import SettingsRepo
from modules.location.store import LocationStore
from modules.location.validator import parse_timestamp
from modules.location.worker import retention_loop
from shared.auth import AuthenticatedMember, require_member
from shared.config import get_settings
from shared.database import dispose_engine, get_session_factory, ping_database
from shared.errors import Forbidden, InvalidFix, InvalidParameter, NotFound, TrackingError
from shared.redis import close_redis, get_redis, ping_redis
from shared.schemas.common import ErrorResponse, HealthResponse, SuccessResponse

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()
app = FastAPI(title="Location Module", version="1.0.0")
router = APIRouter(
    prefix="/api/location",
    tags=["location"],
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
)

settings = get_settings()
ingestor: LocationIngestor | None = None
store: LocationStore | None = None
sessions: SessionGate | None = None
settings_repo: SettingsRepo | None = None
events_repo: EventsRepo | None = None
members_repo: MemberRepo | None = None


@app.on_event("startup")
async def startup():
    global ingestor, store, sessions, settings_repo, events_repo, members_repo
    session_factory = get_session_factory()
    redis_client = await get_redis()
    cache = TrackingCache(redis_client)

    locations = LocationRepo(session_factory)
    members_repo = MemberRepo(session_factory)
    events_repo = EventsRepo(session_factory)
    settings_repo = SettingsRepo(session_factory, cache, settings.settings_cache_ttl_seconds)
    store = LocationStore(
        locations,
        DeviceRepo(session_factory),
        members_repo,
        cache,
        online_threshold_s=settings.online_threshold_seconds,
        offline_threshold_s=settings.offline_threshold_seconds,
        stale_threshold_s=settings.stale_threshold_seconds,
        snapshot_ttl_s=settings.snapshot_cache_ttl_seconds,
    )
    sessions = SessionGate(cache, events_repo)
    ingestor = LocationIngestor(
        store=store,
        settings_repo=settings_repo,
        cache=cache,
        geofences=GeofenceEngine(GeofenceRepo(session_factory), events_repo),
        alerts=AlertsEngine(
            AlertRulesRepo(session_factory),
            events_repo,
            Notifier(redis_client, settings.notification_channel),
        ),
        sessions=sessions,
        batch_max_items=settings.batch_max_items,
        idempotency_ttl_s=settings.idempotency_ttl_seconds,
    )
    logger.info("location_module_ready")

    # Start background retention worker
    asyncio.create_task(
        retention_loop(
            members_repo,
            locations,
            events_repo,
            settings_repo,
            interval_s=settings.retention_check_interval_seconds,
        )
    )


@app.on_event("shutdown")
async def shutdown():
    await close_redis()
    await dispose_engine()


# --- Error rendering ---


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError):
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err["loc"] if p not in ("body", "query")), "message": err["msg"]}
        for err in exc.errors()
    ]
    error = InvalidParameter("Invalid request parameters", details=details)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def _ok(data) -> dict:
    return SuccessResponse(data=data).model_dump()


def _ready():
    if ingestor is None:
        raise TrackingError("Module not ready")


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        raise InvalidFix(
            "Invalid JSON body",
            details=[{"field": "payload", "message": "body is not valid JSON"}],
        )


def _parse_time(value: str | None, field: str):
    if value is None:
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        raise InvalidParameter(
            f"Invalid {field}", details=[{"field": field, "message": "expected ISO-8601 or epoch"}]
        )
    return parsed


def _parse_uuid(value: str, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise InvalidParameter(f"Invalid {field}", details=[{"field": field, "message": "expected a UUID"}])


def _event_dict(event) -> dict:
    return {
        "id": str(event.id),
        "type": event.event_type,
        "user_id": str(event.user_id) if event.user_id else None,
        "geofence_id": str(event.geofence_id) if event.geofence_id else None,
        "rule_id": str(event.rule_id) if event.rule_id else None,
        "lat": event.latitude,
        "lng": event.longitude,
        "payload": event.payload or {},
        "created_at": event.created_at.isoformat(),
    }


# --- Ingestion ---


@router.post("/fix")
async def post_fix(request: Request, member: AuthenticatedMember = Depends(require_member)) -> dict:
    """Ingest one location fix."""
    _ready()
    payload = await _json_body(request)
    return _ok(await ingestor.ingest_fix(member, payload))


@router.post("/batch")
async def post_batch(request: Request, member: AuthenticatedMember = Depends(require_member)) -> dict:
    """Ingest a buffered batch of fixes (per-item results)."""
    _ready()
    payload = await _json_body(request)
    return _ok(await ingestor.ingest_batch(member, payload))


# --- Reads ---


@router.get("/current")
async def get_current(member: AuthenticatedMember = Depends(require_member)) -> dict:
    """Current position and status of every sharing family member."""
    _ready()
    members = await store.family_current(member.family_id)
    return _ok({"members": members})


@router.get("/history")
async def get_history(
    user_id: str | None = Query(None),
    start: str | None = Query(None),
    end: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    member: AuthenticatedMember = Depends(require_member),
) -> dict:
    """One member's trail, most recent first."""
    _ready()
    target = member.user_id
    if user_id is not None:
        target = _parse_uuid(user_id, "user_id")
    if target != member.user_id:
        if await members_repo.get_sharing_member(member.family_id, target) is None:
            raise NotFound("Member not found")

    page = await store.history(
        target,
        start=_parse_time(start, "start"),
        end=_parse_time(end, "end"),
        limit=limit,
        offset=offset,
    )
    return _ok(page)


@router.get("/events")
async def list_events(
    user_id: str | None = Query(None),
    event_types: str | None = Query(None, description="Comma-separated event types"),
    start: str | None = Query(None),
    end: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    member: AuthenticatedMember = Depends(require_member),
) -> dict:
    """Family activity feed."""
    _ready()
    types = [t.strip() for t in event_types.split(",") if t.strip()] if event_types else None
    rows, total, counts = await events_repo.list_events(
        member.family_id,
        user_id=_parse_uuid(user_id, "user_id") if user_id else None,
        event_types=types,
        start=_parse_time(start, "start"),
        end=_parse_time(end, "end"),
        limit=limit,
        offset=offset,
    )
    return _ok({
        "events": [_event_dict(e) for e in rows],
        "total": total,
        "counts": counts,
        "limit": limit,
        "offset": offset,
    })


# --- Live sessions ---


@router.post("/session/start")
async def session_start(
    body: SessionStartRequest | None = None,
    member: AuthenticatedMember = Depends(require_member),
) -> dict:
    _ready()
    body = body or SessionStartRequest()
    family_settings = await settings_repo.get(member.family_id)
    state = await sessions.start(
        member.user_id,
        member.family_id,
        body.mode,
        body.interval_s,
        ttl_s=family_settings.session_ttl_seconds,
    )
    return _ok(state)


@router.post("/session/keepalive")
async def session_keepalive(member: AuthenticatedMember = Depends(require_member)) -> dict:
    _ready()
    family_settings = await settings_repo.get(member.family_id)
    state = await sessions.keepalive(member.user_id, ttl_s=family_settings.session_ttl_seconds)
    return _ok(state)


@router.post("/session/stop")
async def session_stop(member: AuthenticatedMember = Depends(require_member)) -> dict:
    _ready()
    return _ok({"stopped": await sessions.stop(member.user_id)})


@router.get("/session")
async def session_status(member: AuthenticatedMember = Depends(require_member)) -> dict:
    _ready()
    return _ok(await sessions.status(member.user_id))


# --- Settings ---


@router.get("/settings")
async def get_tracking_settings(member: AuthenticatedMember = Depends(require_member)) -> dict:
    """Effective tracking settings, so apps can align their sampling."""
    _ready()
    family_settings = await settings_repo.get(member.family_id)
    return _ok(family_settings.model_dump(mode="json"))


@router.patch("/settings")
async def update_tracking_settings(
    body: SettingsUpdateRequest,
    member: AuthenticatedMember = Depends(require_member),
) -> dict:
    _ready()
    if member.role != "admin":
        raise Forbidden("Only family admins can change tracking settings")
    try:
        updated = await settings_repo.update(member.family_id, body.changes())
    except ValidationError as e:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors(include_url=False)
        ]
        raise InvalidParameter("Invalid settings", details=details)
    return _ok(updated.model_dump(mode="json"))


app.include_router(router)


@app.get("/health", response_model=HealthResponse)
async def health():
    database_ok = await ping_database()
    redis_ok = await ping_redis()
    status = "ok" if database_ok and redis_ok else "degraded"
    return HealthResponse(status=status, database=database_ok, redis=redis_ok)
