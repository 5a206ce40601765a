"""Conflict records and their lifecycle, driven by detection passes."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from roomwatch.core.exceptions import InvalidStateError
from roomwatch.domain.models import (
    BucketKey,
    ClassSession,
    Conflict,
    ConflictStatus,
    PairKey,
)

logger = logging.getLogger(__name__)


@dataclass
class Reconciliation:
    """The changes one detection pass makes to the registry."""

    bucket: BucketKey
    created: list[Conflict] = field(default_factory=list)
    retired: list[Conflict] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.created or self.retired)


def describe(a: ClassSession, b: ClassSession) -> str:
    return f"{a.name} overlaps with {b.name}"


class ConflictRegistry:
    """Maps canonical session pairs to their Conflict record.

    Records are frozen; every transition replaces the stored instance, so a
    snapshot taken by a reader never changes underneath it.
    """

    def __init__(self) -> None:
        self._by_pair: dict[tuple[BucketKey, PairKey], Conflict] = {}
        self._by_id: dict[str, tuple[BucketKey, PairKey]] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, conflict_id: str) -> Conflict | None:
        key = self._by_id.get(conflict_id)
        return self._by_pair.get(key) if key else None

    def in_bucket(self, bucket: BucketKey) -> list[Conflict]:
        return [c for (b, _), c in self._by_pair.items() if b == bucket]

    def list_conflicts(
        self,
        room_id: str | None = None,
        status: ConflictStatus | None = None,
    ) -> list[Conflict]:
        conflicts = [
            c
            for c in self._by_pair.values()
            if (room_id is None or c.room_id == room_id)
            and (status is None or c.status == status)
        ]
        return sorted(conflicts, key=lambda c: (c.detected_at, c.room_id, c.session_ids))

    def snapshot(self) -> list[Conflict]:
        return list(self._by_pair.values())

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def reconcile(
        self,
        bucket: BucketKey,
        overlap_pairs: Iterable[PairKey],
        sessions: Mapping[str, ClassSession],
        now: datetime | None = None,
    ) -> Reconciliation:
        """Plan the effect of a fresh overlap set on *bucket* without applying it.

        *sessions* holds the bucket's sessions after the mutation, by id.
        """
        now = now or datetime.now(timezone.utc)
        fresh = set(overlap_pairs)
        plan = Reconciliation(bucket=bucket)

        for conflict in self.in_bucket(bucket):
            pair = conflict.session_ids
            if conflict.status == ConflictStatus.DISMISSED:
                # Kept while both sessions exist so the same overlap stays quiet.
                if not all(sid in sessions for sid in pair):
                    plan.retired.append(conflict)
            elif pair not in fresh:
                plan.retired.append(conflict)

        known = {c.session_ids for c in self.in_bucket(bucket)}
        for pair in sorted(fresh - known):
            first, second = sessions[pair[0]], sessions[pair[1]]
            plan.created.append(
                Conflict(
                    room_id=bucket.room_id,
                    day=bucket.day,
                    session_ids=pair,
                    description=describe(first, second),
                    detected_at=now,
                )
            )
        return plan

    def commit(self, plan: Reconciliation) -> None:
        for conflict in plan.retired:
            self._drop(conflict)
            logger.info(
                "Retired %s conflict %s in %s/%s",
                conflict.status, conflict.id, conflict.room_id, conflict.day,
            )
        for conflict in plan.created:
            self.put(conflict)
            logger.info(
                "Detected conflict %s in %s/%s: %s",
                conflict.id, conflict.room_id, conflict.day, conflict.description,
            )

    def apply_detection(
        self,
        bucket: BucketKey,
        overlap_pairs: Iterable[PairKey],
        sessions: Mapping[str, ClassSession],
        now: datetime | None = None,
    ) -> Reconciliation:
        plan = self.reconcile(bucket, overlap_pairs, sessions, now)
        self.commit(plan)
        return plan

    def retire_room(self, room_id: str) -> list[Conflict]:
        retired = [c for c in self._by_pair.values() if c.room_id == room_id]
        for conflict in retired:
            self._drop(conflict)
        return retired

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def staged_transition(
        self,
        conflict_id: str,
        target: ConflictStatus,
        now: datetime | None = None,
    ) -> Conflict:
        """Return the record *conflict_id* would become; the registry is unchanged."""
        conflict = self.get(conflict_id)
        if conflict is None:
            raise InvalidStateError(
                f"Conflict {conflict_id} does not exist",
                details={"conflict_id": conflict_id},
            )
        if not conflict.is_pending:
            raise InvalidStateError(
                f"Conflict is already {conflict.status}",
                details={"conflict_id": conflict_id, "status": str(conflict.status)},
            )
        now = now or datetime.now(timezone.utc)
        if target == ConflictStatus.RESOLVED:
            return conflict.model_copy(update={"status": target, "resolved_at": now})
        if target == ConflictStatus.DISMISSED:
            return conflict.model_copy(update={"status": target, "dismissed_at": now})
        raise InvalidStateError(f"Cannot move a conflict back to {target}")

    def resolve(self, conflict_id: str, now: datetime | None = None) -> Conflict:
        """Mark a pending conflict resolved.

        This is a user override: the sessions are not re-checked, and the
        record stays resolved until detection retires it.
        """
        updated = self.staged_transition(conflict_id, ConflictStatus.RESOLVED, now)
        self.put(updated)
        return updated

    def dismiss(self, conflict_id: str, now: datetime | None = None) -> Conflict:
        updated = self.staged_transition(conflict_id, ConflictStatus.DISMISSED, now)
        self.put(updated)
        return updated

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def put(self, conflict: Conflict) -> None:
        key = (conflict.bucket, conflict.session_ids)
        existing = self._by_pair.get(key)
        if existing is not None and existing.id != conflict.id:
            self._by_id.pop(existing.id, None)
        self._by_pair[key] = conflict
        self._by_id[conflict.id] = key

    def _drop(self, conflict: Conflict) -> None:
        key = self._by_id.pop(conflict.id, None)
        if key is not None:
            self._by_pair.pop(key, None)

    def clear(self) -> None:
        self._by_pair.clear()
        self._by_id.clear()
