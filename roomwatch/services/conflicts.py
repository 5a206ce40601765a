"""Overlap detection for the sessions of one room on one weekday."""

from __future__ import annotations

from collections.abc import Iterable

from roomwatch.domain.models import ClassSession, PairKey


def sessions_overlap(a: ClassSession, b: ClassSession) -> bool:
    """Return True when the two half-open intervals intersect.

    Overlap rule: a.start < b.end AND b.start < a.end. Equal starts always
    overlap; exact boundary touches (a.end == b.start) do not.
    """
    return a.start_minute < b.end_minute and b.start_minute < a.end_minute


def canonical_pair(first_id: str, second_id: str) -> PairKey:
    """Order a session pair so the lower id comes first."""
    return (first_id, second_id) if first_id <= second_id else (second_id, first_id)


def detect_overlaps(sessions: Iterable[ClassSession]) -> frozenset[PairKey]:
    """Return every overlapping session pair in a single bucket.

    Sweeps the sessions in start order while keeping the "open" sessions,
    i.e. those whose end is past the current start. Anything still open when
    a session starts overlaps it; anything that ended at or before that start
    can never overlap a later one and is dropped.

    The result is the complete set for the bucket, computed from scratch.
    """
    ordered = sorted(sessions, key=lambda s: (s.start_minute, s.end_minute, s.id))
    pairs: set[PairKey] = set()
    open_sessions: list[ClassSession] = []

    for current in ordered:
        open_sessions = [s for s in open_sessions if s.end_minute > current.start_minute]
        for other in open_sessions:
            if other.id != current.id and sessions_overlap(other, current):
                pairs.add(canonical_pair(other.id, current.id))
        open_sessions.append(current)

    return frozenset(pairs)


def find_conflicts(
    start_minute: int,
    end_minute: int,
    existing: Iterable[ClassSession],
    exclude_id: str | None = None,
) -> list[ClassSession]:
    """Return the sessions in *existing* that overlap ``[start_minute, end_minute)``."""
    return [
        session
        for session in existing
        if session.id != exclude_id
        and start_minute < session.end_minute
        and session.start_minute < end_minute
    ]
