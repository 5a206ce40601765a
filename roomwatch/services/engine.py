"""The scheduling engine: the one entry point for mutations and reads.

Every session mutation is staged, run through detection for each bucket it
touches, handed to the persistence adapter, and only then installed in
memory. Mutations of one bucket are serialised by that bucket's lock;
installing a staged change and copying state for a read share a short
commit lock. Adding, updating and removing rooms hold a separate room lock,
taken before any bucket lock.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import ExitStack, contextmanager
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any

from roomwatch.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from roomwatch.domain.bus import EventBus
from roomwatch.domain.events import (
    ConflictDetected,
    ConflictDismissed,
    ConflictResolved,
    ConflictRetired,
    SessionRemoved,
    SessionUpserted,
)
from roomwatch.domain.models import (
    BucketKey,
    ClassSession,
    Conflict,
    ConflictStatus,
    FacilityStats,
    Occurrence,
    Room,
    RoomStatus,
    RoomUpdate,
    Suggestion,
    Weekday,
)
from roomwatch.repos.memory import RoomRepository, ScheduleStore
from roomwatch.repos.persistence import ChangeSet, InMemoryPersistence, PersistenceAdapter
from roomwatch.services import advisor
from roomwatch.services.conflicts import detect_overlaps
from roomwatch.services.recurrence import expand_occurrences
from roomwatch.services.registry import ConflictRegistry, Reconciliation
from roomwatch.services.status import project_all, project_status

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulingEngine:
    def __init__(
        self,
        persistence: PersistenceAdapter | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = _utcnow,
        tz: tzinfo = timezone.utc,
        day_start_minute: int = 0,
        day_end_minute: int = 24 * 60,
    ) -> None:
        self.rooms = RoomRepository()
        self.store = ScheduleStore(self.rooms)
        self.registry = ConflictRegistry()
        self.persistence = persistence if persistence is not None else InMemoryPersistence()
        self.bus = bus or EventBus()
        self.clock = clock
        self.tz = tz
        self.day_start_minute = day_start_minute
        self.day_end_minute = day_end_minute

        self._commit_lock = threading.Lock()
        self._rooms_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._bucket_locks: dict[BucketKey, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Locking and commit helpers
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        """The clock's current instant in the facility time zone."""
        return self.clock().astimezone(self.tz)

    def _lock_for(self, key: BucketKey) -> threading.Lock:
        with self._locks_guard:
            return self._bucket_locks.setdefault(key, threading.Lock())

    def _discard_locks(self, keys: Iterable[BucketKey]) -> None:
        with self._locks_guard:
            for key in keys:
                self._bucket_locks.pop(key, None)

    @contextmanager
    def _locked(self, keys: Iterable[BucketKey]) -> Iterator[None]:
        # Sorted acquisition keeps multi-bucket mutations deadlock free.
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield

    @staticmethod
    def _room_keys(room_id: str) -> list[BucketKey]:
        return [BucketKey(room_id, day) for day in Weekday]

    def _persist(self, changes: ChangeSet) -> None:
        if not changes:
            return
        try:
            self.persistence.commit(changes)
        except PersistenceError:
            logger.warning("Persistence rejected change; nothing applied", exc_info=True)
            raise
        except OSError as exc:
            logger.warning("Persistence I/O failed; nothing applied", exc_info=True)
            raise PersistenceError(f"Could not persist change: {exc}") from exc

    def _detect(
        self,
        key: BucketKey,
        sessions: Iterable[ClassSession],
        now: datetime,
    ) -> Reconciliation:
        bucket = tuple(sessions)
        pairs = detect_overlaps(bucket)
        logger.debug("Detection on %s/%s: %d session(s), %d overlap(s)",
                     key.room_id, key.day, len(bucket), len(pairs))
        return self.registry.reconcile(key, pairs, {s.id: s for s in bucket}, now)

    @staticmethod
    def _conflict_changes(plans: Iterable[Reconciliation]) -> tuple[list[Conflict], list[Conflict]]:
        created: list[Conflict] = []
        retired: list[Conflict] = []
        for plan in plans:
            created.extend(plan.created)
            retired.extend(plan.retired)
        return created, retired

    def _conflict_events(
        self, created: list[Conflict], retired: list[Conflict], now: datetime
    ) -> list[Any]:
        events: list[Any] = [ConflictRetired(conflict=c, retired_at=now) for c in retired]
        events.extend(ConflictDetected(conflict=c) for c in created)
        return events

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Populate memory from the persistence adapter and re-run detection.

        Sessions whose room is unknown are skipped. Detection runs over every
        bucket that holds sessions or conflicts, and whatever it changes is
        persisted back.
        """
        snapshot = self.persistence.load()
        now = self.clock()
        with self._commit_lock:
            self.rooms.clear()
            self.store.clear()
            self.registry.clear()
            for room in snapshot.rooms:
                self.rooms.add(room)
            buckets: dict[BucketKey, list[ClassSession]] = {}
            for session in snapshot.sessions:
                if not self.rooms.exists(session.room_id):
                    logger.warning("Skipping session %s for unknown room %s",
                                   session.id, session.room_id)
                    continue
                buckets.setdefault(session.bucket, []).append(session)
            self.store.commit_buckets(buckets)
            for conflict in snapshot.conflicts:
                self.registry.put(conflict)

            keys = set(buckets) | {c.bucket for c in snapshot.conflicts}
            plans = [
                self._detect(key, self.store.sessions_in(*key), now) for key in sorted(keys)
            ]
            for plan in plans:
                self.registry.commit(plan)

        created, retired = self._conflict_changes(plans)
        self._persist(
            ChangeSet(
                upserted_conflicts=created,
                removed_conflict_ids=[c.id for c in retired],
            )
        )
        logger.info("Loaded %d room(s), %d session(s), %d conflict(s)",
                    len(snapshot.rooms), len(snapshot.sessions),
                    len(self.registry.snapshot()))
        self.bus.publish_all(self._conflict_events(created, retired, now))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def upsert_session(self, session: ClassSession) -> BucketKey:
        """Insert or replace *session* and recompute every bucket it touches."""
        if not self.rooms.exists(session.room_id):
            raise ValidationError(
                f"Unknown room {session.room_id}",
                details={"session_id": session.id, "room_id": session.room_id},
            )
        while True:
            previous = self.store.bucket_of(session.id)
            keys = {session.bucket} | ({previous} if previous else set())
            with self._locked(keys):
                if self.store.bucket_of(session.id) != previous:
                    continue  # moved by another writer while we waited
                return self._upsert_locked(session)

    def _upsert_locked(self, session: ClassSession) -> BucketKey:
        now = self.clock()
        with self._commit_lock:
            staged = self.store.staged_upsert(session)
            plans = [self._detect(key, sessions, now) for key, sessions in staged.items()]
        created, retired = self._conflict_changes(plans)

        self._persist(
            ChangeSet(
                upserted_sessions=[session],
                upserted_conflicts=created,
                removed_conflict_ids=[c.id for c in retired],
            )
        )
        with self._commit_lock:
            self.store.commit_buckets(staged)
            for plan in plans:
                self.registry.commit(plan)

        self.bus.publish_all(
            [SessionUpserted(session_id=session.id, room_id=session.room_id, day=session.day)]
            + self._conflict_events(created, retired, now)
        )
        return session.bucket

    def remove_session(self, session_id: str) -> BucketKey:
        while True:
            key = self.store.bucket_of(session_id)
            if key is None:
                raise NotFoundError("Session", session_id)
            with self._locked([key]):
                if self.store.bucket_of(session_id) != key:
                    continue
                return self._remove_locked(session_id)

    def _remove_locked(self, session_id: str) -> BucketKey:
        now = self.clock()
        with self._commit_lock:
            key, remaining = self.store.staged_remove(session_id)
            plan = self._detect(key, remaining, now)

        self._persist(
            ChangeSet(
                removed_session_ids=[session_id],
                upserted_conflicts=plan.created,
                removed_conflict_ids=[c.id for c in plan.retired],
            )
        )
        with self._commit_lock:
            self.store.commit_buckets({key: remaining})
            self.registry.commit(plan)

        self.bus.publish_all(
            [SessionRemoved(session_id=session_id, room_id=key.room_id, day=key.day)]
            + self._conflict_events(plan.created, plan.retired, now)
        )
        return key

    def get_session(self, session_id: str) -> ClassSession:
        with self._commit_lock:
            session = self.store.get(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    def list_sessions(
        self, room_id: str | None = None, day: Weekday | None = None
    ) -> list[ClassSession]:
        with self._commit_lock:
            sessions = self.store.list_all()
        return [
            s
            for s in sessions
            if (room_id is None or s.room_id == room_id) and (day is None or s.day == day)
        ]

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def list_conflicts(
        self, room_id: str | None = None, status: ConflictStatus | None = None
    ) -> list[Conflict]:
        with self._commit_lock:
            return self.registry.list_conflicts(room_id, status)

    def get_conflict(self, conflict_id: str) -> Conflict:
        with self._commit_lock:
            conflict = self.registry.get(conflict_id)
        if conflict is None:
            raise NotFoundError("Conflict", conflict_id)
        return conflict

    def resolve_conflict(self, conflict_id: str) -> Conflict:
        updated = self._transition(conflict_id, ConflictStatus.RESOLVED)
        logger.info("Resolved conflict %s in %s/%s", updated.id, updated.room_id, updated.day)
        self.bus.publish(ConflictResolved(conflict=updated))
        return updated

    def dismiss_conflict(self, conflict_id: str) -> Conflict:
        updated = self._transition(conflict_id, ConflictStatus.DISMISSED)
        logger.info("Dismissed conflict %s in %s/%s", updated.id, updated.room_id, updated.day)
        self.bus.publish(ConflictDismissed(conflict=updated))
        return updated

    def _transition(self, conflict_id: str, target: ConflictStatus) -> Conflict:
        with self._commit_lock:
            current = self.registry.get(conflict_id)
        if current is None:
            raise InvalidStateError(
                f"Conflict {conflict_id} does not exist",
                details={"conflict_id": conflict_id},
            )
        with self._locked([current.bucket]):
            with self._commit_lock:
                updated = self.registry.staged_transition(conflict_id, target, self.clock())
            self._persist(ChangeSet(upserted_conflicts=[updated]))
            with self._commit_lock:
                self.registry.put(updated)
        return updated

    def suggest_resolutions(
        self,
        conflict_id: str,
        required_capacity: int,
        candidate_cap: int,
    ) -> list[Suggestion]:
        with self._commit_lock:
            conflict = self.registry.get(conflict_id)
            rooms = self.rooms.list_all()
            buckets = self.store.snapshot()
        if conflict is None:
            raise NotFoundError("Conflict", conflict_id)

        sessions = {s.id: s for s in buckets.get(conflict.bucket, ())}
        return advisor.suggest_resolutions(
            conflict,
            sessions,
            rooms,
            lambda room_id, day: buckets.get(BucketKey(room_id, day), ()),
            required_capacity,
            candidate_cap,
            self.day_start_minute,
            self.day_end_minute,
        )

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def list_rooms(self) -> list[Room]:
        with self._commit_lock:
            return self.rooms.list_all()

    def get_room(self, room_id: str) -> Room:
        with self._commit_lock:
            room = self.rooms.get(room_id)
        if room is None:
            raise NotFoundError("Room", room_id)
        return room

    def add_room(self, room: Room) -> Room:
        with self._rooms_lock:
            if self.rooms.exists(room.id):
                raise ValidationError(
                    f"Room {room.id} already exists", details={"room_id": room.id}
                )
            self._persist(ChangeSet(upserted_rooms=[room]))
            with self._commit_lock:
                self.rooms.add(room)
        logger.info("Added room %s (%s)", room.id, room.name)
        return room

    def update_room(self, room_id: str, update: RoomUpdate) -> Room:
        if update.capacity <= 0:
            raise ValidationError("Room capacity must be positive", details={"room_id": room_id})
        with self._rooms_lock:
            if not self.rooms.exists(room_id):
                raise NotFoundError("Room", room_id)
            room = Room(id=room_id, **update.model_dump())
            self._persist(ChangeSet(upserted_rooms=[room]))
            with self._commit_lock:
                self.rooms.add(room)
        return room

    def remove_room(self, room_id: str) -> None:
        """Delete a room together with its sessions and conflicts."""
        keys = self._room_keys(room_id)
        now = self.clock()
        with self._rooms_lock:
            if not self.rooms.exists(room_id):
                raise NotFoundError("Room", room_id)
            with self._locked(keys):
                with self._commit_lock:
                    sessions = [s for key in keys for s in self.store.sessions_in(*key)]
                    conflicts = self.registry.list_conflicts(room_id=room_id)

                self._persist(
                    ChangeSet(
                        removed_room_ids=[room_id],
                        removed_session_ids=[s.id for s in sessions],
                        removed_conflict_ids=[c.id for c in conflicts],
                    )
                )
                with self._commit_lock:
                    self.store.commit_buckets({key: () for key in keys})
                    self.registry.retire_room(room_id)
                    self.rooms.delete(room_id)
            self._discard_locks(keys)

        logger.info("Removed room %s with %d session(s) and %d conflict(s)",
                    room_id, len(sessions), len(conflicts))
        self.bus.publish_all(
            [SessionRemoved(session_id=s.id, room_id=s.room_id, day=s.day) for s in sessions]
            + self._conflict_events([], conflicts, now)
        )

    # ------------------------------------------------------------------
    # Status, agenda and statistics
    # ------------------------------------------------------------------

    def room_status(self, room_id: str, now: datetime | None = None) -> RoomStatus:
        now = now or self.now()
        with self._commit_lock:
            room = self.rooms.get(room_id)
            sessions = self.store.sessions_in(room_id, Weekday.of(now))
            conflicts = self.registry.list_conflicts(room_id, ConflictStatus.PENDING)
        if room is None:
            raise NotFoundError("Room", room_id)
        return project_status(room, sessions, conflicts, now)

    def all_room_statuses(self, now: datetime | None = None) -> dict[str, RoomStatus]:
        now = now or self.now()
        day = Weekday.of(now)
        with self._commit_lock:
            rooms = self.rooms.list_all()
            sessions = {r.id: list(self.store.sessions_in(r.id, day)) for r in rooms}
            pending = self.registry.list_conflicts(status=ConflictStatus.PENDING)
        conflicts: dict[str, list[Conflict]] = {}
        for conflict in pending:
            conflicts.setdefault(conflict.room_id, []).append(conflict)
        return project_all(rooms, sessions, conflicts, now)

    def room_agenda(self, room_id: str, on: date) -> list[Occurrence]:
        """Occurrences of the room's weekly sessions on the calendar day *on*."""
        day = Weekday.of(on)
        with self._commit_lock:
            room = self.rooms.get(room_id)
            sessions = self.store.sessions_in(room_id, day)
            pending = self.registry.list_conflicts(room_id, ConflictStatus.PENDING)
        if room is None:
            raise NotFoundError("Room", room_id)

        conflicted = {sid for c in pending for sid in c.session_ids}
        window_start = datetime.combine(on, time.min, tzinfo=self.tz)
        window_end = window_start + timedelta(days=1)
        occurrences = [
            occ
            for s in sessions
            for occ in expand_occurrences(s, window_start, window_end, s.id in conflicted)
        ]
        return sorted(occurrences, key=lambda o: (o.start, o.session_id))

    def facility_stats(self, now: datetime | None = None) -> FacilityStats:
        statuses = self.all_room_statuses(now)
        occupied = sum(
            1 for s in statuses.values() if s in (RoomStatus.OCCUPIED, RoomStatus.CONFLICT)
        )
        total = len(statuses)
        return FacilityStats(
            total_rooms=total,
            occupied_rooms=occupied,
            maintenance_rooms=sum(1 for s in statuses.values() if s == RoomStatus.MAINTENANCE),
            pending_conflicts=len(self.list_conflicts(status=ConflictStatus.PENDING)),
            utilization=round(occupied / total * 100) if total else 0,
        )
