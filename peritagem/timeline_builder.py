"""
Timeline Builder

Reconstructs the six-stage process timeline of an inspection record from its
current status and its (possibly incomplete) history.

For each stage, in order:
- completed if stage < record.stage
- active    if stage == record.stage
- pending   if stage > record.stage

The first history entry whose new status canonicalizes to the stage is
attached. Stage 1 without an entry gets a synthesized "created" entry from
the record's creation metadata. An active stage without any entry (direct
jump, manual correction) gets a synthesized fallback entry, so the active
stage is never blank.

Pure and deterministic: no I/O and no clock. `now` is only used by
format_elapsed() for display.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .inspection_model import (
    SYNTHETIC_CREATED_ID,
    SYNTHETIC_FALLBACK_ID,
    HistoryEntry,
    InspectionRecord,
)
from .status_model import STATUS_CREATED, Stage, canonicalize


class StageState(str, Enum):
    """Render state of one timeline step. LOCKED."""
    COMPLETED = "completed"
    ACTIVE = "active"
    PENDING = "pending"


@dataclass(frozen=True)
class StageView:
    """One renderable timeline step."""
    stage: Stage
    state: StageState
    entry: Optional[HistoryEntry] = None

    @property
    def title(self) -> str:
        return self.stage.title

    @property
    def synthesized(self) -> bool:
        return self.entry is not None and self.entry.is_synthetic

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = {
            "stage": int(self.stage),
            "title": self.title,
            "state": self.state.value,
            "synthesized": self.synthesized,
            "entry": self.entry.to_dict() if self.entry else None,
        }
        if now is not None and self.entry is not None:
            data["elapsed"] = format_elapsed(self.entry.occurred_at, now)
        return data


def synthesize_created_entry(record: InspectionRecord) -> HistoryEntry:
    """Virtual 'created' entry from the record's own creation metadata."""
    creator = record.created_by
    return HistoryEntry(
        entry_id=SYNTHETIC_CREATED_ID,
        record_id=record.record_id,
        previous_raw_status=None,
        new_raw_status=STATUS_CREATED,
        occurred_at=record.created_at,
        actor_id=creator.actor_id if creator else None,
        actor=creator,
    )


def synthesize_fallback_entry(record: InspectionRecord) -> HistoryEntry:
    """Virtual entry for an active stage that has no history at all."""
    creator = record.created_by
    return HistoryEntry(
        entry_id=SYNTHETIC_FALLBACK_ID,
        record_id=record.record_id,
        previous_raw_status=None,
        new_raw_status=record.raw_status,
        occurred_at=record.updated_at or record.created_at,
        actor_id=creator.actor_id if creator else None,
        actor=creator,
    )


def _state_for(stage: Stage, current: Stage) -> StageState:
    if stage < current:
        return StageState.COMPLETED
    if stage == current:
        return StageState.ACTIVE
    return StageState.PENDING


def build_timeline(
    record: InspectionRecord,
    history_entries: Iterable[HistoryEntry],
) -> List[StageView]:
    """
    Assemble the per-stage view of a record.

    Args:
        record: the inspection record
        history_entries: its history, ascending by time (first match wins)

    Returns:
        Exactly six StageViews, one per stage, exactly one ACTIVE.
    """
    current = record.stage
    entries = [e for e in history_entries if e.record_id == record.record_id]

    first_by_stage: Dict[Stage, HistoryEntry] = {}
    for entry in entries:
        first_by_stage.setdefault(canonicalize(entry.new_raw_status), entry)

    views = []
    for stage in Stage.ordered():
        state = _state_for(stage, current)
        entry = first_by_stage.get(stage)
        if entry is None and stage is Stage.CREATED:
            entry = synthesize_created_entry(record)
        elif entry is None and state is StageState.ACTIVE:
            entry = synthesize_fallback_entry(record)
        views.append(StageView(stage=stage, state=state, entry=entry))
    return views


def active_view(views: List[StageView]) -> StageView:
    """The single ACTIVE step of a timeline."""
    for view in views:
        if view.state is StageState.ACTIVE:
            return view
    raise ValueError("Timeline has no active stage")


# -----------------------------------------------------------------------------
# Display helpers
# -----------------------------------------------------------------------------


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_elapsed(since: datetime, now: datetime) -> str:
    """
    Human-readable elapsed time ("3d 4h", "2h 15min", "12min").

    Naive datetimes are taken as UTC. Future timestamps render as "0min".
    """
    seconds = int((_as_utc(now) - _as_utc(since)).total_seconds())
    if seconds < 60:
        return "0min"
    minutes = seconds // 60
    days, minutes = divmod(minutes, 24 * 60)
    hours, minutes = divmod(minutes, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}min"
    return f"{minutes}min"


def timeline_to_dict(
    record: InspectionRecord,
    views: List[StageView],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Serializable timeline for the HTTP layer."""
    return {
        "record_id": record.record_id,
        "raw_status": record.raw_status,
        "current_stage": int(record.stage),
        "stages": [view.to_dict(now) for view in views],
    }
