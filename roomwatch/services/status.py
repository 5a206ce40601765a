"""Point-in-time room status derived from sessions, conflicts and the clock."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime

from roomwatch.domain.models import (
    ClassSession,
    Conflict,
    Room,
    RoomStatus,
    Weekday,
)


def minute_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def project_status(
    room: Room,
    sessions: Iterable[ClassSession],
    conflicts: Iterable[Conflict],
    now: datetime,
) -> RoomStatus:
    """Return the status of *room* at *now*.

    Maintenance wins over everything; a pending conflict whose session is
    running wins over plain occupancy. Weekday and time of day are read from
    *now* as given, so callers pass it already in the facility's time zone.
    """
    if room.maintenance:
        return RoomStatus.MAINTENANCE

    day = Weekday.of(now)
    minute = minute_of_day(now)
    running = {
        s.id for s in sessions if s.room_id == room.id and s.covers(day, minute)
    }
    if not running:
        return RoomStatus.AVAILABLE

    for conflict in conflicts:
        if (
            conflict.is_pending
            and conflict.room_id == room.id
            and any(sid in running for sid in conflict.session_ids)
        ):
            return RoomStatus.CONFLICT
    return RoomStatus.OCCUPIED


def project_all(
    rooms: Iterable[Room],
    sessions_by_room: Mapping[str, list[ClassSession]],
    conflicts_by_room: Mapping[str, list[Conflict]],
    now: datetime,
) -> dict[str, RoomStatus]:
    return {
        room.id: project_status(
            room,
            sessions_by_room.get(room.id, []),
            conflicts_by_room.get(room.id, []),
            now,
        )
        for room in rooms
    }
