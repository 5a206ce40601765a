"""Domain models for the room scheduling system."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import StrEnum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MINUTES_PER_DAY = 24 * 60


class Weekday(StrEnum):
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"

    @classmethod
    def of(cls, moment: date) -> Weekday:
        """Weekday of *moment* as read from its own (local) fields."""
        return list(cls)[moment.weekday()]


class ConflictStatus(StrEnum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class RoomStatus(StrEnum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    CONFLICT = "conflict"
    MAINTENANCE = "maintenance"


class SuggestionKind(StrEnum):
    ALTERNATE_ROOM = "alternate_room"
    ALTERNATE_SLOT = "alternate_slot"


class TimelineEntryType(StrEnum):
    DETECTED = "detected"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"
    RETIRED = "retired"


class BucketKey(NamedTuple):
    """One room on one weekday: the unit of detection and locking."""

    room_id: str
    day: Weekday


PairKey = tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def parse_clock(value: object) -> object:
    """Turn ``"HH:MM"`` into minutes since midnight; pass anything else through."""
    if not isinstance(value, str):
        return value
    hours, sep, minutes = value.strip().partition(":")
    if not sep or not hours.isdigit() or not minutes.isdigit():
        raise ValueError(f"expected HH:MM, got {value!r}")
    return int(hours) * 60 + int(minutes)


def format_clock(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class Room(BaseModel):
    id: str = Field(min_length=1)
    name: str
    building: str
    floor: int = 0
    capacity: int = Field(gt=0)
    type: str = "Lecture"
    maintenance: bool = False


class ClassSession(BaseModel):
    """A weekly booking of one room, ``[start_minute, end_minute)`` on ``day``."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id, min_length=1)
    room_id: str
    name: str
    instructor: str = ""
    start_minute: int = Field(ge=0, le=MINUTES_PER_DAY)
    end_minute: int = Field(ge=0, le=MINUTES_PER_DAY)
    day: Weekday
    batch: str = ""

    @field_validator("start_minute", "end_minute", mode="before")
    @classmethod
    def _accept_clock_strings(cls, value: object) -> object:
        return parse_clock(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> ClassSession:
        if self.end_minute <= self.start_minute:
            raise ValueError("end_minute must be after start_minute")
        return self

    @property
    def bucket(self) -> BucketKey:
        return BucketKey(self.room_id, self.day)

    @property
    def duration(self) -> int:
        return self.end_minute - self.start_minute

    def covers(self, day: Weekday, minute: int) -> bool:
        return self.day == day and self.start_minute <= minute < self.end_minute


class Conflict(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    room_id: str
    day: Weekday
    session_ids: PairKey
    status: ConflictStatus = ConflictStatus.PENDING
    description: str = ""
    detected_at: datetime = Field(default_factory=_utcnow)
    resolved_at: datetime | None = None
    dismissed_at: datetime | None = None

    @field_validator("session_ids")
    @classmethod
    def _canonical(cls, value: PairKey) -> PairKey:
        first, second = value
        if first == second:
            raise ValueError("a conflict needs two distinct sessions")
        return (first, second) if first < second else (second, first)

    @property
    def bucket(self) -> BucketKey:
        return BucketKey(self.room_id, self.day)

    @property
    def is_pending(self) -> bool:
        return self.status == ConflictStatus.PENDING


class Suggestion(BaseModel):
    kind: SuggestionKind
    conflict_id: str
    session_id: str
    room_id: str
    day: Weekday
    start_minute: int
    end_minute: int
    capacity_surplus: int | None = None
    rationale: str


class TimelineEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    conflict_id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    type: TimelineEntryType
    payload: dict = Field(default_factory=dict)


class Occurrence(BaseModel):
    """A dated instance of a weekly session."""

    session_id: str
    room_id: str
    name: str
    start: datetime
    end: datetime
    in_conflict: bool = False


class FacilityStats(BaseModel):
    total_rooms: int
    occupied_rooms: int
    maintenance_rooms: int
    pending_conflicts: int
    utilization: int


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class RoomUpdate(BaseModel):
    name: str
    building: str
    floor: int = 0
    capacity: int = Field(gt=0)
    type: str = "Lecture"
    maintenance: bool = False


class RoomView(Room):
    status: RoomStatus


class SessionUpsert(BaseModel):
    room_id: str
    name: str
    instructor: str = ""
    start_minute: int
    end_minute: int
    day: Weekday
    batch: str = ""

    @field_validator("start_minute", "end_minute", mode="before")
    @classmethod
    def _accept_clock_strings(cls, value: object) -> object:
        return parse_clock(value)

    def to_session(self, session_id: str) -> ClassSession:
        return ClassSession(id=session_id, **self.model_dump())


class BucketResponse(BaseModel):
    room_id: str
    day: Weekday
    pending_conflicts: int
