"""Domain event handlers — wired up at application startup."""

from __future__ import annotations

import logging

from roomwatch.domain.bus import EventBus
from roomwatch.domain.events import (
    ConflictDetected,
    ConflictDismissed,
    ConflictResolved,
    ConflictRetired,
    SessionRemoved,
    SessionUpserted,
)
from roomwatch.domain.models import TimelineEntry, TimelineEntryType
from roomwatch.repos.memory import TimelineRepository

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Records every conflict transition on the conflict's timeline."""

    def __init__(self, bus: EventBus, timeline_repo: TimelineRepository) -> None:
        self.bus = bus
        self.timeline_repo = timeline_repo
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(SessionUpserted, self.on_session_upserted)
        self.bus.subscribe(SessionRemoved, self.on_session_removed)
        self.bus.subscribe(ConflictDetected, self.on_conflict_detected)
        self.bus.subscribe(ConflictRetired, self.on_conflict_retired)
        self.bus.subscribe(ConflictResolved, self.on_conflict_resolved)
        self.bus.subscribe(ConflictDismissed, self.on_conflict_dismissed)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_session_upserted(self, event: SessionUpserted) -> None:
        logger.debug("Session %s stored in %s/%s", event.session_id, event.room_id, event.day)

    def on_session_removed(self, event: SessionRemoved) -> None:
        logger.debug("Session %s removed from %s/%s", event.session_id, event.room_id, event.day)

    def on_conflict_detected(self, event: ConflictDetected) -> None:
        conflict = event.conflict
        self.timeline_repo.add(
            TimelineEntry(
                conflict_id=conflict.id,
                timestamp=conflict.detected_at,
                type=TimelineEntryType.DETECTED,
                payload={
                    "room_id": conflict.room_id,
                    "day": str(conflict.day),
                    "session_ids": list(conflict.session_ids),
                    "description": conflict.description,
                },
            )
        )

    def on_conflict_retired(self, event: ConflictRetired) -> None:
        self.timeline_repo.add(
            TimelineEntry(
                conflict_id=event.conflict.id,
                timestamp=event.retired_at,
                type=TimelineEntryType.RETIRED,
                payload={"last_status": str(event.conflict.status)},
            )
        )

    def on_conflict_resolved(self, event: ConflictResolved) -> None:
        self.timeline_repo.add(
            TimelineEntry(
                conflict_id=event.conflict.id,
                timestamp=event.conflict.resolved_at,
                type=TimelineEntryType.RESOLVED,
            )
        )

    def on_conflict_dismissed(self, event: ConflictDismissed) -> None:
        self.timeline_repo.add(
            TimelineEntry(
                conflict_id=event.conflict.id,
                timestamp=event.conflict.dismissed_at,
                type=TimelineEntryType.DISMISSED,
            )
        )
