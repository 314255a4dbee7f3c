"""
History Recorder

Appends an immutable audit entry for every committed transition.

APPEND-ONLY: entries are never overwritten or mutated. Record creation does
not write an entry; the timeline reconstructs the "created" step from the
record's own creation metadata.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from .inspection_model import Actor, HistoryEntry, ValidationError
from .inspection_store import InspectionStore

logger = logging.getLogger("history_recorder")


class HistoryRecorder:
    """Writes and reads the per-record audit trail through the store."""

    def __init__(self, store: InspectionStore):
        self._store = store

    async def record(
        self,
        record_id: str,
        previous: Optional[str],
        next_status: str,
        actor: Optional[Actor],
        at: datetime,
        note: Optional[str] = None,
    ) -> HistoryEntry:
        """
        Append one history entry.

        Raises:
            ValidationError: record_id or next_status is empty
            PersistenceError: the store rejected the append
        """
        if not record_id:
            raise ValidationError("History entry requires a record id")
        if not next_status or not next_status.strip():
            raise ValidationError("History entry requires the new status")

        actor_id = actor.actor_id if actor else None
        entry = await self._store.append_history_entry(
            record_id=record_id,
            previous_raw_status=previous,
            new_raw_status=next_status,
            actor_id=actor_id,
            occurred_at=at,
            note=note or None,
        )
        if entry.actor is None and actor is not None:
            # Store could not resolve the profile; keep what the caller knows
            entry = replace(entry, actor=actor)

        logger.debug(f"History entry {entry.entry_id}: {record_id} '{previous}' -> '{next_status}' by {actor_id}")
        return entry

    async def history_for(self, record_id: str) -> List[HistoryEntry]:
        """History entries of a record, ascending by time."""
        return await self._store.list_history(record_id)
