"""Tests for conflict reconciliation and lifecycle transitions."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from roomwatch.core.exceptions import InvalidStateError
from roomwatch.domain.models import (
    BucketKey,
    ClassSession,
    ConflictStatus,
    Weekday,
)
from roomwatch.services.conflicts import detect_overlaps
from roomwatch.services.registry import ConflictRegistry

_NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
_KEY = BucketKey("RM-402", Weekday.WEDNESDAY)


def _make_session(session_id: str, start: str, end: str) -> ClassSession:
    return ClassSession(
        id=session_id,
        room_id="RM-402",
        name=f"Class {session_id}",
        start_minute=start,
        end_minute=end,
        day=Weekday.WEDNESDAY,
    )


def _detect(registry: ConflictRegistry, *sessions: ClassSession):
    return registry.apply_detection(
        _KEY, detect_overlaps(sessions), {s.id: s for s in sessions}, _NOW
    )


@pytest.fixture()
def registry() -> ConflictRegistry:
    return ConflictRegistry()


A = _make_session("A", "14:00", "16:00")
B = _make_session("B", "14:30", "16:30")
B_MOVED = _make_session("B", "16:00", "18:00")


# ---------------------------------------------------------------------------
# Detection reconciliation
# ---------------------------------------------------------------------------


def test_new_overlap_creates_pending_conflict(registry):
    plan = _detect(registry, A, B)

    assert len(plan.created) == 1
    conflicts = registry.list_conflicts()
    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.session_ids == ("A", "B")
    assert conflict.status == ConflictStatus.PENDING
    assert conflict.detected_at == _NOW
    assert conflict.room_id == "RM-402"
    assert conflict.description == "Class A overlaps with Class B"


def test_rerunning_detection_is_idempotent(registry):
    _detect(registry, A, B)
    first = registry.list_conflicts()

    plan = _detect(registry, A, B)

    assert not plan
    assert registry.list_conflicts() == first


def test_pending_conflict_retired_when_overlap_disappears(registry):
    _detect(registry, A, B)
    plan = _detect(registry, A, B_MOVED)

    assert [c.session_ids for c in plan.retired] == [("A", "B")]
    assert registry.list_conflicts() == []


def test_resolved_conflict_is_sticky_while_overlapping(registry):
    _detect(registry, A, B)
    conflict = registry.list_conflicts()[0]
    registry.resolve(conflict.id, _NOW)

    _detect(registry, A, B)

    remaining = registry.list_conflicts()
    assert len(remaining) == 1
    assert remaining[0].id == conflict.id
    assert remaining[0].status == ConflictStatus.RESOLVED


def test_resolved_conflict_retired_when_overlap_disappears(registry):
    _detect(registry, A, B)
    registry.resolve(registry.list_conflicts()[0].id, _NOW)

    _detect(registry, A, B_MOVED)

    assert registry.list_conflicts() == []


def test_dismissed_conflict_kept_while_sessions_exist(registry):
    _detect(registry, A, B)
    conflict = registry.dismiss(registry.list_conflicts()[0].id, _NOW)

    _detect(registry, A, B)
    _detect(registry, A, B_MOVED)

    remaining = registry.list_conflicts()
    assert [c.id for c in remaining] == [conflict.id]
    assert remaining[0].status == ConflictStatus.DISMISSED


def test_dismissed_conflict_retired_when_session_removed(registry):
    _detect(registry, A, B)
    registry.dismiss(registry.list_conflicts()[0].id, _NOW)

    _detect(registry, A)

    assert registry.list_conflicts() == []


def test_overlap_after_retirement_creates_fresh_record(registry):
    _detect(registry, A, B)
    old_id = registry.list_conflicts()[0].id
    _detect(registry, A, B_MOVED)

    _detect(registry, A, B)

    conflicts = registry.list_conflicts()
    assert len(conflicts) == 1
    assert conflicts[0].id != old_id
    assert conflicts[0].status == ConflictStatus.PENDING


def test_reconcile_does_not_mutate(registry):
    plan = registry.reconcile(_KEY, detect_overlaps([A, B]), {"A": A, "B": B}, _NOW)

    assert len(plan.created) == 1
    assert registry.list_conflicts() == []


def test_detection_only_touches_its_bucket(registry):
    _detect(registry, A, B)
    other = BucketKey("RM-101", Weekday.WEDNESDAY)

    registry.apply_detection(other, frozenset(), {}, _NOW)

    assert len(registry.list_conflicts()) == 1


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def test_resolve_sets_timestamp(registry):
    _detect(registry, A, B)
    resolved = registry.resolve(registry.list_conflicts()[0].id, _NOW)

    assert resolved.status == ConflictStatus.RESOLVED
    assert resolved.resolved_at == _NOW
    assert registry.get(resolved.id) == resolved


def test_resolve_twice_fails(registry):
    _detect(registry, A, B)
    conflict_id = registry.list_conflicts()[0].id
    registry.resolve(conflict_id, _NOW)

    with pytest.raises(InvalidStateError, match="already resolved"):
        registry.resolve(conflict_id, _NOW)


def test_dismiss_after_resolve_fails(registry):
    _detect(registry, A, B)
    conflict_id = registry.list_conflicts()[0].id
    registry.resolve(conflict_id, _NOW)

    with pytest.raises(InvalidStateError):
        registry.dismiss(conflict_id, _NOW)
    assert registry.get(conflict_id).status == ConflictStatus.RESOLVED


def test_unknown_conflict_is_invalid_state(registry):
    with pytest.raises(InvalidStateError):
        registry.resolve("missing")
    with pytest.raises(InvalidStateError):
        registry.dismiss("missing")


def test_list_conflicts_filters(registry):
    _detect(registry, A, B)
    conflict_id = registry.list_conflicts()[0].id
    registry.dismiss(conflict_id, _NOW)

    assert registry.list_conflicts(status=ConflictStatus.PENDING) == []
    assert len(registry.list_conflicts(status=ConflictStatus.DISMISSED)) == 1
    assert len(registry.list_conflicts(room_id="RM-402")) == 1
    assert registry.list_conflicts(room_id="RM-101") == []
