"""FastAPI application — entry point for the room scheduling service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from roomwatch.core.config import configure_logging, get_settings
from roomwatch.core.exceptions import AppError, ValidationError
from roomwatch.domain.bus import EventBus
from roomwatch.domain.handlers import HandlerRegistry
from roomwatch.domain.models import (
    BucketKey,
    BucketResponse,
    ClassSession,
    Conflict,
    ConflictStatus,
    FacilityStats,
    Occurrence,
    Room,
    RoomStatus,
    RoomUpdate,
    RoomView,
    SessionUpsert,
    Suggestion,
    TimelineEntry,
    Weekday,
)
from roomwatch.repos.memory import TimelineRepository, seed_rooms, seed_sessions
from roomwatch.repos.persistence import InMemoryPersistence, JsonFilePersistence
from roomwatch.services.engine import SchedulingEngine

logger = logging.getLogger(__name__)

settings = get_settings()

# ── Singletons (created at import time for simplicity) ────────────────
event_bus = EventBus()
timeline_repo = TimelineRepository()
persistence = (
    JsonFilePersistence(settings.data_file) if settings.data_file else InMemoryPersistence()
)
engine = SchedulingEngine(
    persistence=persistence,
    bus=event_bus,
    tz=settings.tz,
    day_start_minute=settings.day_start_minute,
    day_end_minute=settings.day_end_minute,
)
handler_registry = HandlerRegistry(bus=event_bus, timeline_repo=timeline_repo)


def bootstrap(target: SchedulingEngine) -> None:
    """Load persisted state, seeding the demo facility when there is none."""
    target.load()
    if settings.seed_demo_data and not target.list_rooms():
        for room in seed_rooms():
            target.add_room(room)
        for session in seed_sessions():
            target.upsert_session(session)
        logger.info("Seeded demo facility")


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings)
    bootstrap(engine)
    yield


app = FastAPI(title=settings.project_name, lifespan=lifespan)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.message, "details": exc.details},
    )


def _localize(now: datetime | None) -> datetime:
    """Naive query times are facility-local; aware ones are converted."""
    if now is None:
        return engine.now()
    if now.tzinfo is None:
        return now.replace(tzinfo=engine.tz)
    return now.astimezone(engine.tz)


def _bucket_response(key: BucketKey) -> BucketResponse:
    pending = engine.list_conflicts(room_id=key.room_id, status=ConflictStatus.PENDING)
    return BucketResponse(
        room_id=key.room_id,
        day=key.day,
        pending_conflicts=sum(1 for c in pending if c.day == key.day),
    )


# ── Routes ────────────────────────────────────────────────────────────

prefix = settings.api_prefix


@app.get(f"{prefix}/health")
def health() -> dict:
    return {"status": "ok"}


@app.get(f"{prefix}/rooms", response_model=list[RoomView])
def list_rooms(now: datetime | None = None) -> list[RoomView]:
    """Return all rooms with their derived status."""
    statuses = engine.all_room_statuses(_localize(now))
    return [
        RoomView(**room.model_dump(), status=statuses.get(room.id, RoomStatus.AVAILABLE))
        for room in engine.list_rooms()
    ]


@app.post(f"{prefix}/rooms", response_model=Room, status_code=201)
def add_room(room: Room) -> Room:
    return engine.add_room(room)


@app.put(f"{prefix}/rooms/{{room_id}}", response_model=Room)
def update_room(room_id: str, body: RoomUpdate) -> Room:
    return engine.update_room(room_id, body)


@app.delete(f"{prefix}/rooms/{{room_id}}")
def remove_room(room_id: str) -> dict:
    engine.remove_room(room_id)
    return {"status": "deleted"}


@app.get(f"{prefix}/rooms/{{room_id}}/status")
def room_status(room_id: str, now: datetime | None = None) -> dict:
    at = _localize(now)
    return {"room_id": room_id, "status": engine.room_status(room_id, at), "at": at.isoformat()}


@app.get(f"{prefix}/rooms/{{room_id}}/agenda", response_model=list[Occurrence])
def room_agenda(room_id: str, on: date | None = None) -> list[Occurrence]:
    """Return the room's bookings for one calendar day (default: today)."""
    return engine.room_agenda(room_id, on or engine.now().date())


@app.get(f"{prefix}/schedule", response_model=list[ClassSession])
def list_schedule(room_id: str | None = None, day: Weekday | None = None) -> list[ClassSession]:
    return engine.list_sessions(room_id=room_id, day=day)


@app.put(f"{prefix}/schedule/{{session_id}}", response_model=BucketResponse)
def upsert_session(session_id: str, body: SessionUpsert) -> BucketResponse:
    """Create or replace a weekly session and recompute its room's conflicts."""
    try:
        session = body.to_session(session_id)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid session", details={"errors": [err["msg"] for err in exc.errors()]}
        ) from exc
    return _bucket_response(engine.upsert_session(session))


@app.delete(f"{prefix}/schedule/{{session_id}}", response_model=BucketResponse)
def remove_session(session_id: str) -> BucketResponse:
    return _bucket_response(engine.remove_session(session_id))


@app.get(f"{prefix}/conflicts", response_model=list[Conflict])
def list_conflicts(
    room_id: str | None = None, status: ConflictStatus | None = None
) -> list[Conflict]:
    return engine.list_conflicts(room_id=room_id, status=status)


@app.post(f"{prefix}/conflicts/{{conflict_id}}/resolve", response_model=Conflict)
def resolve_conflict(conflict_id: str) -> Conflict:
    return engine.resolve_conflict(conflict_id)


@app.post(f"{prefix}/conflicts/{{conflict_id}}/dismiss", response_model=Conflict)
def dismiss_conflict(conflict_id: str) -> Conflict:
    return engine.dismiss_conflict(conflict_id)


@app.get(f"{prefix}/conflicts/{{conflict_id}}/suggestions", response_model=list[Suggestion])
def suggest_resolutions(
    conflict_id: str,
    required_capacity: int = 1,
    candidate_cap: int | None = None,
) -> list[Suggestion]:
    return engine.suggest_resolutions(
        conflict_id,
        required_capacity,
        candidate_cap if candidate_cap is not None else settings.default_candidate_cap,
    )


@app.get(f"{prefix}/conflicts/{{conflict_id}}/timeline", response_model=list[TimelineEntry])
def conflict_timeline(conflict_id: str) -> list[TimelineEntry]:
    return timeline_repo.list_for_conflict(conflict_id)


@app.get(f"{prefix}/stats", response_model=FacilityStats)
def stats(now: datetime | None = None) -> FacilityStats:
    return engine.facility_stats(_localize(now))
