"""Read-only remediation suggestions for a pending conflict.

Two kinds of suggestion are produced for the session that would move:

* alternate room: another room, big enough and free for the same weekday
  and window, best fit (smallest capacity surplus) first;
* alternate slot: a free window of the same length in the same room and
  weekday, closest to the original start first.

Nothing here mutates state. Applying a suggestion means upserting the moved
session through the engine, which re-runs detection.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping

from roomwatch.core.exceptions import InvalidStateError, ValidationError
from roomwatch.domain.models import (
    ClassSession,
    Conflict,
    Room,
    Suggestion,
    SuggestionKind,
    Weekday,
    format_clock,
)
from roomwatch.services.conflicts import find_conflicts

BucketLookup = Callable[[str, Weekday], Iterable[ClassSession]]


def session_to_move(conflict: Conflict, sessions: Mapping[str, ClassSession]) -> ClassSession:
    """Pick the later-starting session of the pair; ties move the higher id."""
    first, second = (sessions[sid] for sid in conflict.session_ids)
    if first.start_minute > second.start_minute:
        return first
    return second


def alternate_rooms(
    conflict: Conflict,
    session: ClassSession,
    rooms: Iterable[Room],
    bucket_lookup: BucketLookup,
    required_capacity: int,
    candidate_cap: int,
) -> list[Suggestion]:
    """Free rooms for *session*'s window, best fit first.

    Only free rooms count toward *candidate_cap*. At most twice that many
    candidates are checked against their bookings, so a facility whose best
    fits are all busy can return fewer than *candidate_cap* suggestions.
    """
    candidates = sorted(
        (
            room
            for room in rooms
            if room.id != conflict.room_id
            and not room.maintenance
            and room.capacity >= required_capacity
        ),
        key=lambda room: (room.capacity - required_capacity, room.building, room.id),
    )

    suggestions: list[Suggestion] = []
    for room in candidates[: 2 * candidate_cap]:
        if len(suggestions) == candidate_cap:
            break
        clashes = find_conflicts(
            session.start_minute,
            session.end_minute,
            bucket_lookup(room.id, session.day),
            exclude_id=session.id,
        )
        if clashes:
            continue
        surplus = room.capacity - required_capacity
        suggestions.append(
            Suggestion(
                kind=SuggestionKind.ALTERNATE_ROOM,
                conflict_id=conflict.id,
                session_id=session.id,
                room_id=room.id,
                day=session.day,
                start_minute=session.start_minute,
                end_minute=session.end_minute,
                capacity_surplus=surplus,
                rationale=(
                    f"Move {session.name} to {room.name} ({room.id}, {room.building}): "
                    f"{room.capacity} seats, {surplus} spare, free on {session.day} "
                    f"{format_clock(session.start_minute)}-{format_clock(session.end_minute)}."
                ),
            )
        )
    return suggestions


def _busy_intervals(sessions: Iterable[ClassSession]) -> list[tuple[int, int]]:
    merged: list[tuple[int, int]] = []
    for s in sorted(sessions, key=lambda s: s.start_minute):
        if merged and s.start_minute <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], s.end_minute))
        else:
            merged.append((s.start_minute, s.end_minute))
    return merged


def free_gaps(
    sessions: Iterable[ClassSession], day_start: int, day_end: int
) -> list[tuple[int, int]]:
    """Free windows between *day_start* and *day_end* not covered by any session."""
    gaps: list[tuple[int, int]] = []
    cursor = day_start
    for start, end in _busy_intervals(sessions):
        if start > cursor:
            gaps.append((cursor, min(start, day_end)))
        cursor = max(cursor, end)
        if cursor >= day_end:
            break
    if cursor < day_end:
        gaps.append((cursor, day_end))
    return [(start, end) for start, end in gaps if end > start]


def alternate_slots(
    conflict: Conflict,
    session: ClassSession,
    bucket: Iterable[ClassSession],
    candidate_cap: int,
    day_start: int = 0,
    day_end: int = 24 * 60,
) -> list[Suggestion]:
    others = [s for s in bucket if s.id != session.id]
    duration = session.duration
    ranked: list[tuple[int, int, int]] = []
    for gap_start, gap_end in free_gaps(others, day_start, day_end):
        size = gap_end - gap_start
        if size < duration:
            continue
        start = min(max(session.start_minute, gap_start), gap_end - duration)
        ranked.append((abs(start - session.start_minute), size, start))
    ranked.sort()

    suggestions: list[Suggestion] = []
    for distance, size, start in ranked[:candidate_cap]:
        end = start + duration
        suggestions.append(
            Suggestion(
                kind=SuggestionKind.ALTERNATE_SLOT,
                conflict_id=conflict.id,
                session_id=session.id,
                room_id=session.room_id,
                day=session.day,
                start_minute=start,
                end_minute=end,
                rationale=(
                    f"Shift {session.name} to {format_clock(start)}-{format_clock(end)} "
                    f"on {session.day}: {size} free minutes, {distance} minutes from "
                    f"the original start."
                ),
            )
        )
    return suggestions


def suggest_resolutions(
    conflict: Conflict,
    sessions: Mapping[str, ClassSession],
    rooms: Iterable[Room],
    bucket_lookup: BucketLookup,
    required_capacity: int,
    candidate_cap: int,
    day_start: int = 0,
    day_end: int = 24 * 60,
) -> list[Suggestion]:
    """Alternate-room suggestions followed by alternate-slot suggestions.

    *sessions* must contain both sessions of the conflict. At most
    *candidate_cap* free rooms and *candidate_cap* slots are returned.
    """
    if not conflict.is_pending:
        raise InvalidStateError(
            f"Conflict is already {conflict.status}",
            details={"conflict_id": conflict.id, "status": str(conflict.status)},
        )
    if required_capacity < 0:
        raise ValidationError("required_capacity must not be negative")
    if candidate_cap < 1:
        raise ValidationError("candidate_cap must be at least 1")

    session = session_to_move(conflict, sessions)
    return alternate_rooms(
        conflict, session, rooms, bucket_lookup, required_capacity, candidate_cap
    ) + alternate_slots(
        conflict,
        session,
        bucket_lookup(session.room_id, session.day),
        candidate_cap,
        day_start,
        day_end,
    )
