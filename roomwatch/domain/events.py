"""Domain events emitted after the engine commits a change."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from roomwatch.domain.models import Conflict, Weekday


class SessionUpserted(BaseModel):
    """Fired when a session is created or edited."""

    session_id: str
    room_id: str
    day: Weekday


class SessionRemoved(BaseModel):
    """Fired when a session is deleted."""

    session_id: str
    room_id: str
    day: Weekday


class ConflictDetected(BaseModel):
    """Fired when detection creates a new pending conflict."""

    conflict: Conflict


class ConflictRetired(BaseModel):
    """Fired when detection removes a conflict whose overlap is gone."""

    conflict: Conflict
    retired_at: datetime


class ConflictResolved(BaseModel):
    conflict: Conflict


class ConflictDismissed(BaseModel):
    conflict: Conflict
