"""Persistence adapters behind the scheduling engine.

The engine calls ``commit`` with the full set of records a mutation changes
and installs the change in memory only after the call returns. An adapter
signals failure by raising (``PersistenceError`` or ``OSError``).
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from roomwatch.core.exceptions import PersistenceError
from roomwatch.domain.models import ClassSession, Conflict, Room

logger = logging.getLogger(__name__)


class Snapshot(BaseModel):
    rooms: list[Room] = Field(default_factory=list)
    sessions: list[ClassSession] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.rooms or self.sessions or self.conflicts)


class ChangeSet(BaseModel):
    upserted_rooms: list[Room] = Field(default_factory=list)
    removed_room_ids: list[str] = Field(default_factory=list)
    upserted_sessions: list[ClassSession] = Field(default_factory=list)
    removed_session_ids: list[str] = Field(default_factory=list)
    upserted_conflicts: list[Conflict] = Field(default_factory=list)
    removed_conflict_ids: list[str] = Field(default_factory=list)

    def __bool__(self) -> bool:
        return any(
            (
                self.upserted_rooms,
                self.removed_room_ids,
                self.upserted_sessions,
                self.removed_session_ids,
                self.upserted_conflicts,
                self.removed_conflict_ids,
            )
        )


class PersistenceAdapter(Protocol):
    def load(self) -> Snapshot: ...

    def commit(self, changes: ChangeSet) -> None: ...


def apply_changes(snapshot: Snapshot, changes: ChangeSet) -> Snapshot:
    """Return *snapshot* with *changes* applied; removals happen before upserts."""
    rooms = {r.id: r for r in snapshot.rooms}
    sessions = {s.id: s for s in snapshot.sessions}
    conflicts = {c.id: c for c in snapshot.conflicts}

    for rid in changes.removed_room_ids:
        rooms.pop(rid, None)
    for sid in changes.removed_session_ids:
        sessions.pop(sid, None)
    for cid in changes.removed_conflict_ids:
        conflicts.pop(cid, None)

    rooms.update((r.id, r) for r in changes.upserted_rooms)
    sessions.update((s.id, s) for s in changes.upserted_sessions)
    conflicts.update((c.id, c) for c in changes.upserted_conflicts)

    return Snapshot(
        rooms=list(rooms.values()),
        sessions=list(sessions.values()),
        conflicts=list(conflicts.values()),
    )
class InMemoryPersistence:
    """Keeps the durable copy in memory; ``fail_next`` makes commits fail."""

    def __init__(self, snapshot: Snapshot | None = None) -> None:
        self.snapshot = snapshot or Snapshot()
        self.commits: list[ChangeSet] = []
        self.fail_next = 0
        self._lock = threading.Lock()

    def load(self) -> Snapshot:
        with self._lock:
            return self.snapshot.model_copy(deep=True)

    def commit(self, changes: ChangeSet) -> None:
        with self._lock:
            if self.fail_next:
                self.fail_next -= 1
                raise PersistenceError("Simulated storage failure")
            self.snapshot = apply_changes(self.snapshot, changes)
            self.commits.append(changes)


class JsonFilePersistence:
    """Stores the whole snapshot as one JSON document.

    Each commit rewrites the file through a temporary file and an atomic
    rename, so a crash leaves either the old or the new document. Commits
    from different buckets arrive concurrently; the read-apply-write runs
    under one lock so none of them is lost.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._snapshot: Snapshot | None = None
        self._lock = threading.Lock()

    def load(self) -> Snapshot:
        with self._lock:
            return self._read().model_copy(deep=True)

    def _read(self) -> Snapshot:
        if not self.path.exists():
            self._snapshot = Snapshot()
            return self._snapshot
        try:
            self._snapshot = Snapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except PydanticValidationError as exc:
            raise PersistenceError(
                f"Data file {self.path} is not a valid snapshot",
                details={"errors": exc.error_count()},
            ) from exc
        logger.info(
            "Loaded %d rooms, %d sessions, %d conflicts from %s",
            len(self._snapshot.rooms),
            len(self._snapshot.sessions),
            len(self._snapshot.conflicts),
            self.path,
        )
        return self._snapshot

    def commit(self, changes: ChangeSet) -> None:
        with self._lock:
            current = self._snapshot if self._snapshot is not None else self._read()
            updated = apply_changes(current, changes)
            self._write(updated)
            self._snapshot = updated

    def _write(self, snapshot: Snapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(snapshot.model_dump_json(indent=2))
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
