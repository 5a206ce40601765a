"""Expanding weekly sessions into dated occurrences."""

from __future__ import annotations

from datetime import datetime, timedelta

from dateutil.rrule import FR, MO, SA, SU, TH, TU, WE, WEEKLY, rrule

from roomwatch.domain.models import ClassSession, Occurrence, Weekday

_DAY_MAP = {
    Weekday.MONDAY: MO,
    Weekday.TUESDAY: TU,
    Weekday.WEDNESDAY: WE,
    Weekday.THURSDAY: TH,
    Weekday.FRIDAY: FR,
    Weekday.SATURDAY: SA,
    Weekday.SUNDAY: SU,
}


def weekly_rule(session: ClassSession, window_start: datetime, window_end: datetime) -> rrule:
    """An rrule yielding the session's start instants between the window bounds."""
    midnight = window_start.replace(hour=0, minute=0, second=0, microsecond=0)
    first = midnight + timedelta(minutes=session.start_minute)
    return rrule(
        WEEKLY,
        byweekday=_DAY_MAP[session.day],
        dtstart=first,
        until=window_end,
    )


def expand_occurrences(
    session: ClassSession,
    window_start: datetime,
    window_end: datetime,
    in_conflict: bool = False,
) -> list[Occurrence]:
    """Return the occurrences of *session* that start in ``[window_start, window_end)``.

    Both bounds must share the same tzinfo (or both be naive); occurrences
    carry it through.
    """
    if window_end <= window_start:
        return []

    duration = timedelta(minutes=session.duration)
    occurrences: list[Occurrence] = []
    for start in weekly_rule(session, window_start, window_end):
        if start < window_start or start >= window_end:
            continue
        occurrences.append(
            Occurrence(
                session_id=session.id,
                room_id=session.room_id,
                name=session.name,
                start=start,
                end=start + duration,
                in_conflict=in_conflict,
            )
        )
    return occurrences
