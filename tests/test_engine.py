"""Tests for the scheduling engine: mutations, persistence and events."""

from __future__ import annotations

import threading
import time
from datetime import date, datetime, timezone

import pytest

from roomwatch.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from roomwatch.domain.bus import EventBus
from roomwatch.domain.events import ConflictDetected, ConflictRetired
from roomwatch.domain.handlers import HandlerRegistry
from roomwatch.domain.models import (
    BucketKey,
    ClassSession,
    ConflictStatus,
    Room,
    RoomStatus,
    RoomUpdate,
    SuggestionKind,
    TimelineEntryType,
    Weekday,
)
from roomwatch.repos.memory import TimelineRepository
from roomwatch.repos.persistence import InMemoryPersistence, JsonFilePersistence, Snapshot
from roomwatch.services.engine import SchedulingEngine

_NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
# 2026-03-04 is a Wednesday.
_WED_1500 = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)
_WED_1700 = datetime(2026, 3, 4, 17, 0, tzinfo=timezone.utc)
_WED_1900 = datetime(2026, 3, 4, 19, 0, tzinfo=timezone.utc)


@pytest.fixture()
def env():
    """Fresh engine + bus + timeline for each test."""
    bus = EventBus()
    persistence = InMemoryPersistence()
    timeline_repo = TimelineRepository()
    HandlerRegistry(bus=bus, timeline_repo=timeline_repo)
    engine = SchedulingEngine(persistence=persistence, bus=bus, clock=lambda: _NOW)
    for room in (
        Room(id="RM-402", name="Research Hub", building="Science Wing", capacity=40),
        Room(id="RM-101", name="Lab 101", building="North Wing", capacity=50),
        Room(id="RM-105", name="Lecture Hall 1", building="East Wing", capacity=120),
    ):
        engine.add_room(room)

    class Env:
        pass

    e = Env()
    e.bus = bus
    e.persistence = persistence
    e.timeline_repo = timeline_repo
    e.engine = engine
    return e


def _session(session_id: str, start: str, end: str, **overrides) -> ClassSession:
    defaults = dict(
        id=session_id,
        room_id="RM-402",
        name=f"Class {session_id}",
        start_minute=start,
        end_minute=end,
        day=Weekday.WEDNESDAY,
    )
    defaults.update(overrides)
    return ClassSession(**defaults)


def _seed_overlap(engine: SchedulingEngine) -> None:
    engine.upsert_session(_session("A", "14:00", "16:00"))
    engine.upsert_session(_session("B", "14:30", "16:30"))


# ---------------------------------------------------------------------------
# Detection driven by mutations
# ---------------------------------------------------------------------------


def test_overlap_creates_exactly_one_pending_conflict(env):
    _seed_overlap(env.engine)

    conflicts = env.engine.list_conflicts()
    assert len(conflicts) == 1
    assert conflicts[0].session_ids == ("A", "B")
    assert conflicts[0].status == ConflictStatus.PENDING
    assert conflicts[0].room_id == "RM-402"
    assert conflicts[0].day == Weekday.WEDNESDAY


def test_upsert_returns_bucket_key(env):
    key = env.engine.upsert_session(_session("A", "14:00", "16:00"))
    assert key == BucketKey("RM-402", Weekday.WEDNESDAY)


def test_reupserting_same_session_is_idempotent(env):
    _seed_overlap(env.engine)
    before = env.engine.list_conflicts()

    env.engine.upsert_session(_session("B", "14:30", "16:30"))

    assert env.engine.list_conflicts() == before


def test_edit_removing_overlap_retires_conflict(env):
    _seed_overlap(env.engine)

    env.engine.upsert_session(_session("B", "16:00", "18:00"))

    assert env.engine.list_conflicts() == []


def test_moving_session_to_other_room_retires_conflict(env):
    _seed_overlap(env.engine)

    key = env.engine.upsert_session(_session("B", "14:30", "16:30", room_id="RM-101"))

    assert key == BucketKey("RM-101", Weekday.WEDNESDAY)
    assert env.engine.list_conflicts() == []
    assert [s.id for s in env.engine.store.sessions_in("RM-402", Weekday.WEDNESDAY)] == ["A"]
    assert [s.id for s in env.engine.store.sessions_in("RM-101", Weekday.WEDNESDAY)] == ["B"]


def test_remove_session_retires_conflict(env):
    _seed_overlap(env.engine)

    key = env.engine.remove_session("B")

    assert key == BucketKey("RM-402", Weekday.WEDNESDAY)
    assert env.engine.list_conflicts() == []


def test_remove_unknown_session_not_found(env):
    with pytest.raises(NotFoundError):
        env.engine.remove_session("nope")


def test_upsert_unknown_room_rejected_without_change(env):
    with pytest.raises(ValidationError, match="Unknown room"):
        env.engine.upsert_session(_session("A", "14:00", "16:00", room_id="RM-999"))
    assert env.engine.list_sessions() == []
    assert all(not c.upserted_sessions for c in env.persistence.commits)


def test_sessions_are_kept_sorted(env):
    env.engine.upsert_session(_session("late", "15:00", "16:00"))
    env.engine.upsert_session(_session("early", "08:00", "09:00"))
    env.engine.upsert_session(_session("mid", "11:00", "12:00"))

    ordered = env.engine.store.sessions_in("RM-402", Weekday.WEDNESDAY)
    assert [s.id for s in ordered] == ["early", "mid", "late"]


# ---------------------------------------------------------------------------
# Resolve / dismiss
# ---------------------------------------------------------------------------


def test_resolve_is_unconditional_override(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]

    resolved = env.engine.resolve_conflict(conflict.id)

    assert resolved.status == ConflictStatus.RESOLVED
    assert resolved.resolved_at == _NOW
    # The sessions still overlap; the record stays resolved.
    env.engine.upsert_session(_session("A", "14:00", "16:00"))
    assert env.engine.get_conflict(conflict.id).status == ConflictStatus.RESOLVED


def test_resolve_non_pending_fails_without_change(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]
    env.engine.dismiss_conflict(conflict.id)

    with pytest.raises(InvalidStateError):
        env.engine.resolve_conflict(conflict.id)
    assert env.engine.get_conflict(conflict.id).status == ConflictStatus.DISMISSED


def test_resolve_unknown_conflict_is_invalid_state(env):
    with pytest.raises(InvalidStateError):
        env.engine.resolve_conflict("missing")
    with pytest.raises(InvalidStateError):
        env.engine.dismiss_conflict("missing")


def test_dismissed_conflict_not_resurrected_by_unrelated_mutation(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]
    env.engine.dismiss_conflict(conflict.id)

    env.engine.upsert_session(
        _session("X", "09:00", "10:00", room_id="RM-101", day=Weekday.MONDAY)
    )
    env.engine.upsert_session(_session("Y", "09:00", "10:00", room_id="RM-101"))

    conflicts = env.engine.list_conflicts()
    assert [c.id for c in conflicts] == [conflict.id]
    assert conflicts[0].status == ConflictStatus.DISMISSED
    assert env.engine.list_conflicts(status=ConflictStatus.PENDING) == []


def test_dismissed_conflict_retired_when_session_deleted(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]
    env.engine.dismiss_conflict(conflict.id)

    env.engine.remove_session("A")

    assert env.engine.list_conflicts() == []


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def test_room_status_scenarios(env):
    _seed_overlap(env.engine)
    env.engine.upsert_session(_session("C", "16:30", "18:00"))

    assert env.engine.room_status("RM-402", _WED_1500) == RoomStatus.CONFLICT
    assert env.engine.room_status("RM-402", _WED_1700) == RoomStatus.OCCUPIED
    assert env.engine.room_status("RM-402", _WED_1900) == RoomStatus.AVAILABLE

    env.engine.update_room(
        "RM-402",
        RoomUpdate(name="Research Hub", building="Science Wing", capacity=40, maintenance=True),
    )
    assert env.engine.room_status("RM-402", _WED_1500) == RoomStatus.MAINTENANCE


def test_resolved_conflict_room_is_occupied(env):
    _seed_overlap(env.engine)
    env.engine.resolve_conflict(env.engine.list_conflicts()[0].id)

    assert env.engine.room_status("RM-402", _WED_1500) == RoomStatus.OCCUPIED


def test_all_room_statuses(env):
    _seed_overlap(env.engine)
    env.engine.upsert_session(_session("L", "14:00", "15:30", room_id="RM-105"))

    assert env.engine.all_room_statuses(_WED_1500) == {
        "RM-402": RoomStatus.CONFLICT,
        "RM-101": RoomStatus.AVAILABLE,
        "RM-105": RoomStatus.OCCUPIED,
    }


def test_room_status_unknown_room(env):
    with pytest.raises(NotFoundError):
        env.engine.room_status("RM-999", _WED_1500)


def test_facility_stats(env):
    _seed_overlap(env.engine)
    env.engine.upsert_session(_session("L", "14:00", "15:30", room_id="RM-105"))

    stats = env.engine.facility_stats(_WED_1500)

    assert stats.total_rooms == 3
    assert stats.occupied_rooms == 2
    assert stats.maintenance_rooms == 0
    assert stats.pending_conflicts == 1
    assert stats.utilization == 67


# ---------------------------------------------------------------------------
# Suggestions and agenda
# ---------------------------------------------------------------------------


def test_suggestions_exclude_origin_room(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]

    suggestions = env.engine.suggest_resolutions(conflict.id, 40, 5)

    rooms = [s for s in suggestions if s.kind == SuggestionKind.ALTERNATE_ROOM]
    assert [s.room_id for s in rooms] == ["RM-101", "RM-105"]
    surpluses = [s.capacity_surplus for s in rooms]
    assert surpluses == sorted(surpluses)
    assert any(s.kind == SuggestionKind.ALTERNATE_SLOT for s in suggestions)
    # Suggestions never change state.
    assert env.engine.list_conflicts() == [conflict]


def test_applying_slot_suggestion_retires_conflict(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]
    slot = next(
        s
        for s in env.engine.suggest_resolutions(conflict.id, 40, 5)
        if s.kind == SuggestionKind.ALTERNATE_SLOT
    )

    moved = env.engine.get_session(slot.session_id).model_copy(
        update={"start_minute": slot.start_minute, "end_minute": slot.end_minute}
    )
    env.engine.upsert_session(moved)

    assert env.engine.list_conflicts() == []


def test_suggest_unknown_conflict_not_found(env):
    with pytest.raises(NotFoundError):
        env.engine.suggest_resolutions("missing", 10, 5)


def test_room_agenda_flags_conflicting_sessions(env):
    _seed_overlap(env.engine)
    env.engine.upsert_session(_session("C", "17:00", "18:00"))

    agenda = env.engine.room_agenda("RM-402", date(2026, 3, 4))

    assert [(o.session_id, o.in_conflict) for o in agenda] == [
        ("A", True),
        ("B", True),
        ("C", False),
    ]
    assert agenda[0].start == datetime(2026, 3, 4, 14, 0, tzinfo=timezone.utc)
    assert env.engine.room_agenda("RM-402", date(2026, 3, 5)) == []


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------


def test_add_duplicate_room_rejected(env):
    with pytest.raises(ValidationError):
        env.engine.add_room(
            Room(id="RM-402", name="Dup", building="Science Wing", capacity=10)
        )


def test_remove_room_cascades(env):
    _seed_overlap(env.engine)
    env.engine.upsert_session(_session("L", "14:00", "15:30", room_id="RM-105"))

    env.engine.remove_room("RM-402")

    assert [r.id for r in env.engine.list_rooms()] == ["RM-101", "RM-105"]
    assert [s.id for s in env.engine.list_sessions()] == ["L"]
    assert env.engine.list_conflicts() == []
    with pytest.raises(NotFoundError):
        env.engine.remove_room("RM-402")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def test_persistence_failure_rolls_back_upsert(env):
    env.engine.upsert_session(_session("A", "14:00", "16:00"))
    env.persistence.fail_next = 1

    with pytest.raises(PersistenceError):
        env.engine.upsert_session(_session("B", "14:30", "16:30"))

    assert [s.id for s in env.engine.list_sessions()] == ["A"]
    assert env.engine.list_conflicts() == []


def test_persistence_failure_rolls_back_resolve(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]
    env.persistence.fail_next = 1

    with pytest.raises(PersistenceError):
        env.engine.resolve_conflict(conflict.id)

    assert env.engine.get_conflict(conflict.id).status == ConflictStatus.PENDING


def test_persistence_failure_rolls_back_remove(env):
    _seed_overlap(env.engine)
    env.persistence.fail_next = 1

    with pytest.raises(PersistenceError):
        env.engine.remove_session("B")

    assert len(env.engine.list_sessions()) == 2
    assert len(env.engine.list_conflicts()) == 1


def test_oserror_from_adapter_is_wrapped(env):
    class BrokenDisk(InMemoryPersistence):
        def commit(self, changes):
            raise OSError("disk full")

    engine = SchedulingEngine(persistence=BrokenDisk(), clock=lambda: _NOW)
    with pytest.raises(PersistenceError, match="disk full"):
        engine.add_room(Room(id="RM-1", name="R", building="B", capacity=5))
    assert engine.list_rooms() == []


def test_durable_state_matches_memory(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]
    env.engine.dismiss_conflict(conflict.id)

    durable = env.persistence.snapshot
    assert {s.id for s in durable.sessions} == {"A", "B"}
    assert [(c.id, c.status) for c in durable.conflicts] == [
        (conflict.id, ConflictStatus.DISMISSED)
    ]


def test_load_rebuilds_and_reconciles(env):
    _seed_overlap(env.engine)
    snapshot = env.persistence.load()
    # Drop the conflict from storage; load must detect it again.
    snapshot = Snapshot(rooms=snapshot.rooms, sessions=snapshot.sessions)
    persistence = InMemoryPersistence(snapshot)

    engine = SchedulingEngine(persistence=persistence, clock=lambda: _NOW)
    engine.load()

    assert len(engine.list_rooms()) == 3
    assert len(engine.list_conflicts(status=ConflictStatus.PENDING)) == 1
    assert len(persistence.snapshot.conflicts) == 1


def test_load_keeps_dismissed_conflicts(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]
    env.engine.dismiss_conflict(conflict.id)

    engine = SchedulingEngine(persistence=InMemoryPersistence(env.persistence.load()))
    engine.load()

    assert [(c.id, c.status) for c in engine.list_conflicts()] == [
        (conflict.id, ConflictStatus.DISMISSED)
    ]


# ---------------------------------------------------------------------------
# Events and timeline
# ---------------------------------------------------------------------------


def test_conflict_events_published(env):
    seen: list = []
    env.bus.subscribe(ConflictDetected, seen.append)
    env.bus.subscribe(ConflictRetired, seen.append)

    _seed_overlap(env.engine)
    env.engine.remove_session("B")

    assert [type(e) for e in seen] == [ConflictDetected, ConflictRetired]


def test_timeline_records_lifecycle(env):
    _seed_overlap(env.engine)
    conflict = env.engine.list_conflicts()[0]
    env.engine.resolve_conflict(conflict.id)
    env.engine.remove_session("A")

    types = [e.type for e in env.timeline_repo.list_for_conflict(conflict.id)]
    assert types == [
        TimelineEntryType.DETECTED,
        TimelineEntryType.RESOLVED,
        TimelineEntryType.RETIRED,
    ]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


_WRITER_DAYS = [Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY, Weekday.THURSDAY]


def _run_writers(engine: SchedulingEngine, per_day: int = 10) -> list[BaseException]:
    """One thread per weekday, each upserting *per_day* sessions into its bucket."""
    errors: list[BaseException] = []

    def writer(day: Weekday) -> None:
        try:
            for i in range(per_day):
                engine.upsert_session(
                    _session(f"{day}-{i}", 8 * 60 + i * 30, 8 * 60 + i * 30 + 45, day=day)
                )
        except BaseException as exc:  # surfaced by the caller
            errors.append(exc)

    threads = [threading.Thread(target=writer, args=(day,)) for day in _WRITER_DAYS]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


def test_concurrent_mutations_leave_consistent_state(env):
    """Writers on several buckets at once end with one conflict per overlapping pair."""
    assert _run_writers(env.engine) == []
    assert len(env.engine.list_sessions()) == 40
    # Each day: session i overlaps i+1 only (45 min long, 30 min apart).
    assert len(env.engine.list_conflicts(status=ConflictStatus.PENDING)) == 4 * 9
    durable = env.persistence.load()
    assert {s.id for s in durable.sessions} == {s.id for s in env.engine.list_sessions()}
    assert len(durable.conflicts) == 4 * 9


class _SlowJsonFile(JsonFilePersistence):
    """Holds each write open a little longer so concurrent commits overlap."""

    def _write(self, snapshot: Snapshot) -> None:
        time.sleep(0.01)
        super()._write(snapshot)


def test_concurrent_writers_keep_json_file_in_step(tmp_path):
    path = tmp_path / "state.json"
    engine = SchedulingEngine(persistence=_SlowJsonFile(path), clock=lambda: _NOW)
    engine.load()
    engine.add_room(Room(id="RM-402", name="Research Hub", building="Science Wing", capacity=40))

    assert _run_writers(engine, per_day=5) == []

    reloaded = JsonFilePersistence(path).load()
    assert len(engine.list_sessions()) == 20
    assert {s.id for s in reloaded.sessions} == {s.id for s in engine.list_sessions()}
    assert {c.id for c in reloaded.conflicts} == {c.id for c in engine.list_conflicts()}


# ---------------------------------------------------------------------------
# Bucket locks
# ---------------------------------------------------------------------------


def test_rejected_upserts_leave_no_bucket_locks(env):
    for i in range(50):
        with pytest.raises(ValidationError):
            env.engine.upsert_session(_session(f"S{i}", "09:00", "10:00", room_id=f"RM-X{i}"))

    assert env.engine._bucket_locks == {}


def test_unknown_room_updates_leave_no_bucket_locks(env):
    with pytest.raises(NotFoundError):
        env.engine.update_room("RM-999", RoomUpdate(name="X", building="Y", capacity=1))
    with pytest.raises(NotFoundError):
        env.engine.remove_room("RM-999")

    assert env.engine._bucket_locks == {}


def test_remove_room_drops_its_bucket_locks(env):
    _seed_overlap(env.engine)
    env.engine.upsert_session(_session("L", "14:00", "15:30", room_id="RM-105"))

    env.engine.remove_room("RM-402")

    assert {key.room_id for key in env.engine._bucket_locks} == {"RM-105"}
