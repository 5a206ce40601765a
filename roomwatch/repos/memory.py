"""In-memory repositories for rooms, weekly sessions and conflict timelines."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from roomwatch.core.exceptions import NotFoundError, ValidationError
from roomwatch.domain.models import (
    BucketKey,
    ClassSession,
    Room,
    TimelineEntry,
    Weekday,
)


def _sort_key(session: ClassSession) -> tuple[int, int, str]:
    return (session.start_minute, session.end_minute, session.id)


class RoomRepository:
    """Dict-backed store for Room instances, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, Room] = {}

    def add(self, room: Room) -> None:
        self._store[room.id] = room

    def get(self, room_id: str) -> Room | None:
        return self._store.get(room_id)

    def exists(self, room_id: str) -> bool:
        return room_id in self._store

    def list_all(self) -> list[Room]:
        return list(self._store.values())

    def delete(self, room_id: str) -> None:
        self._store.pop(room_id, None)

    def clear(self) -> None:
        self._store.clear()


class ScheduleStore:
    """Sessions grouped into (room, weekday) buckets, each sorted by start time.

    Buckets are immutable tuples, so a reader holding a bucket keeps a
    consistent view while writers install replacements.

    The ``staged_*`` methods compute the bucket contents a mutation would
    produce without touching the store; ``commit_buckets`` installs them.
    ``upsert`` and ``remove`` do both in one step.
    """

    def __init__(self, rooms: RoomRepository) -> None:
        self._rooms = rooms
        self._buckets: dict[BucketKey, tuple[ClassSession, ...]] = {}
        self._index: dict[str, BucketKey] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def sessions_in(self, room_id: str, day: Weekday) -> tuple[ClassSession, ...]:
        return self._buckets.get(BucketKey(room_id, Weekday(day)), ())

    def get(self, session_id: str) -> ClassSession | None:
        key = self._index.get(session_id)
        if key is None:
            return None
        for session in self._buckets[key]:
            if session.id == session_id:
                return session
        return None

    def bucket_of(self, session_id: str) -> BucketKey | None:
        return self._index.get(session_id)

    def buckets_for_room(self, room_id: str) -> list[BucketKey]:
        return sorted(key for key in self._buckets if key.room_id == room_id)

    def list_all(self) -> list[ClassSession]:
        return [s for key in sorted(self._buckets) for s in self._buckets[key]]

    def snapshot(self) -> dict[BucketKey, tuple[ClassSession, ...]]:
        return dict(self._buckets)

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def validate(self, session: ClassSession) -> None:
        if session.start_minute >= session.end_minute:
            raise ValidationError(
                "Session must start before it ends",
                details={"session_id": session.id},
            )
        if not self._rooms.exists(session.room_id):
            raise ValidationError(
                f"Unknown room {session.room_id}",
                details={"session_id": session.id, "room_id": session.room_id},
            )

    def staged_upsert(
        self, session: ClassSession
    ) -> dict[BucketKey, tuple[ClassSession, ...]]:
        """Return the new contents of every bucket touched by upserting *session*.

        Replacing a session that lives in another bucket touches two buckets.
        """
        self.validate(session)
        staged: dict[BucketKey, tuple[ClassSession, ...]] = {}
        previous = self._index.get(session.id)
        if previous is not None and previous != session.bucket:
            staged[previous] = tuple(
                s for s in self._buckets.get(previous, ()) if s.id != session.id
            )
        kept = [s for s in self._buckets.get(session.bucket, ()) if s.id != session.id]
        kept.append(session)
        staged[session.bucket] = tuple(sorted(kept, key=_sort_key))
        return staged

    def staged_remove(
        self, session_id: str
    ) -> tuple[BucketKey, tuple[ClassSession, ...]]:
        key = self._index.get(session_id)
        if key is None:
            raise NotFoundError("Session", session_id)
        remaining = tuple(s for s in self._buckets[key] if s.id != session_id)
        return key, remaining

    def commit_buckets(self, staged: Mapping[BucketKey, Iterable[ClassSession]]) -> None:
        for key, sessions in staged.items():
            bucket = tuple(sorted(sessions, key=_sort_key))
            for old in self._buckets.get(key, ()):
                if self._index.get(old.id) == key:
                    del self._index[old.id]
            if bucket:
                self._buckets[key] = bucket
            else:
                self._buckets.pop(key, None)
            for session in bucket:
                self._index[session.id] = key

    # ------------------------------------------------------------------
    # Direct mutations
    # ------------------------------------------------------------------

    def upsert(self, session: ClassSession) -> BucketKey:
        self.commit_buckets(self.staged_upsert(session))
        return session.bucket

    def remove(self, session_id: str) -> BucketKey:
        key, remaining = self.staged_remove(session_id)
        self.commit_buckets({key: remaining})
        return key

    def clear(self) -> None:
        self._buckets.clear()
        self._index.clear()


class TimelineRepository:
    """List-backed store for TimelineEntry instances."""

    def __init__(self) -> None:
        self._entries: list[TimelineEntry] = []

    def add(self, entry: TimelineEntry) -> None:
        self._entries.append(entry)

    def list_for_conflict(self, conflict_id: str) -> list[TimelineEntry]:
        return sorted(
            [e for e in self._entries if e.conflict_id == conflict_id],
            key=lambda e: e.timestamp,
        )

    def clear(self) -> None:
        self._entries.clear()


# ---------------------------------------------------------------------------
# Seed data – the facility's demo rooms and weekly classes
# ---------------------------------------------------------------------------

SEED_ROOMS = [
    ("RM-101", "Lab 101", "North Wing", 1, 50, "Lab"),
    ("RM-102", "Studio A", "North Wing", 1, 30, "Studio"),
    ("RM-103", "Seminar Hall 1", "North Wing", 1, 100, "Lecture"),
    ("RM-201", "Workshop 201", "South Wing", 2, 60, "Workshop"),
    ("RM-202", "Workshop 202", "South Wing", 2, 80, "Workshop"),
    ("RM-204", "Lab 204", "South Wing", 2, 45, "Lab"),
    ("RM-301", "Conf. Room 1", "Main Block", 3, 15, "Meeting"),
    ("RM-302", "Conf. Room 4", "Main Block", 3, 20, "Meeting"),
    ("RM-401", "Main Lab 4", "Science Wing", 4, 40, "Lab"),
    ("RM-402", "Research Hub", "Science Wing", 4, 40, "Lab"),
    ("RM-105", "Lecture Hall 1", "East Wing", 1, 120, "Lecture"),
    ("RM-106", "Lecture Hall 2", "East Wing", 1, 120, "Lecture"),
]

SEED_SESSIONS = [
    ("RM-101", "Advanced Algorithms", "Dr. Sarah Connor", "09:00", "11:00", "Monday", "Batch 11"),
    ("RM-102", "Advanced UI/UX", "Prof. Miller", "10:00", "12:00", "Tuesday", "Batch 11"),
    ("RM-103", "Soft Skills Workshop", "Jane Doe", "08:00", "10:00", "Thursday", "Batch 11"),
    ("RM-201", "Human Computer Interaction", "Prof. Miller", "10:00", "12:00", "Tuesday", "Batch 11"),
    ("RM-302", "Faculty Meeting", "Admin", "10:00", "12:00", "Tuesday", "Staff"),
    ("RM-401", "Networking Lab", "Dr. Sarah Jenkins", "10:30", "11:30", "Monday", "Batch 11"),
    ("RM-402", "Machine Learning Lab", "Dr. Smith", "14:00", "16:00", "Wednesday", "Batch 11"),
    ("RM-402", "Physics 101", "Dr. Jones", "14:30", "16:30", "Wednesday", "Batch 14"),
    ("RM-204", "Cybersecurity Ethics", "Dr. Smith", "13:00", "15:00", "Friday", "Batch 11"),
]


def seed_rooms() -> list[Room]:
    return [
        Room(id=rid, name=name, building=building, floor=floor, capacity=capacity, type=kind)
        for rid, name, building, floor, capacity, kind in SEED_ROOMS
    ]


def seed_sessions() -> list[ClassSession]:
    return [
        ClassSession(
            id=f"CLS-{n:03d}",
            room_id=room_id,
            name=name,
            instructor=instructor,
            start_minute=start,
            end_minute=end,
            day=day,
            batch=batch,
        )
        for n, (room_id, name, instructor, start, end, day, batch) in enumerate(
            SEED_SESSIONS, start=1
        )
    ]
