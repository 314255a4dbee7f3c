"""
Inspection Store

Storage collaborator contract and two local implementations.

The lifecycle core never implements storage; it issues read/update/append
intents through InspectionStore:
- read_record / list_records
- insert_record / update_record_status / delete_record
- append_history_entry / list_history (ascending by time)
- resolve_actor
- intake queue items

Implementations raise PersistenceError when a read or write fails and
RecordNotFoundError for unknown ids. They never report success for a write
that did not happen.

InMemoryInspectionStore: dict-backed, for tests and `memory` mode.
JsonlInspectionStore: JSON state file (atomic replace) for records and
intake, append-only JSONL (fsync) for history, JSON file for profiles.
"""

import abc
import asyncio
import json
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

from .inspection_model import (
    PROFILE_APPROVED,
    Actor,
    HistoryEntry,
    InspectionRecord,
    IntakeItem,
    PersistenceError,
    RecordNotFoundError,
    new_id,
    utcnow,
)
from .status_model import Stage, canonicalize

logger = logging.getLogger("inspection_store")

# Fields a status update may carry alongside the new status
UPDATABLE_FIELDS: FrozenSet[str] = frozenset({"purchase_order"})


@dataclass(frozen=True)
class RecordFilter:
    """
    Listing filter.

    stages matches by canonical stage, so legacy phrasings are included.
    search matches client name or inspection number, case-insensitive.
    """
    stages: FrozenSet[Stage] = field(default_factory=frozenset)
    company_id: Optional[str] = None
    created_by: Optional[str] = None
    search: str = ""
    limit: int = 100

    def matches(self, record: InspectionRecord) -> bool:
        if self.stages and canonicalize(record.raw_status) not in self.stages:
            return False
        if self.company_id is not None and record.company_id != self.company_id:
            return False
        if self.created_by is not None:
            if not record.created_by or record.created_by.actor_id != self.created_by:
                return False
        term = self.search.strip().lower()
        if term:
            haystacks = (record.client_name.lower(), record.inspection_number.lower())
            if not any(term in h for h in haystacks):
                return False
        return True


def apply_filter(records: List[InspectionRecord], record_filter: RecordFilter) -> List[InspectionRecord]:
    """Filter, sort newest first and limit."""
    selected = [r for r in records if record_filter.matches(r)]
    selected.sort(key=lambda r: r.created_at, reverse=True)
    if record_filter.limit > 0:
        selected = selected[:record_filter.limit]
    return selected


def _check_fields(extra_fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    extra = dict(extra_fields or {})
    unknown = set(extra) - UPDATABLE_FIELDS
    if unknown:
        raise PersistenceError(f"Fields not updatable with status: {sorted(unknown)}")
    return extra


class InspectionStore(abc.ABC):
    """Storage collaborator consumed by the lifecycle service."""

    @abc.abstractmethod
    async def read_record(self, record_id: str) -> InspectionRecord:
        """Read one record. Raises RecordNotFoundError."""

    @abc.abstractmethod
    async def list_records(self, record_filter: Optional[RecordFilter] = None) -> List[InspectionRecord]:
        """List records matching a filter, newest first."""

    @abc.abstractmethod
    async def insert_record(self, record: InspectionRecord) -> InspectionRecord:
        """Persist a new record."""

    @abc.abstractmethod
    async def update_record_status(
        self,
        record_id: str,
        new_raw_status: str,
        updated_at: datetime,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> InspectionRecord:
        """Persist a new status (and transition fields). Returns the stored record."""

    @abc.abstractmethod
    async def delete_record(self, record_id: str) -> None:
        """Delete a record and, by cascade, its history."""

    @abc.abstractmethod
    async def append_history_entry(
        self,
        record_id: str,
        previous_raw_status: Optional[str],
        new_raw_status: str,
        actor_id: Optional[str],
        occurred_at: datetime,
        note: Optional[str] = None,
    ) -> HistoryEntry:
        """Append one audit entry. Never overwrites."""

    @abc.abstractmethod
    async def list_history(self, record_id: str) -> List[HistoryEntry]:
        """History of a record ordered ascending by time, actors resolved."""

    @abc.abstractmethod
    async def resolve_actor(self, user_id: str) -> Optional[Actor]:
        """Display name and role of a user, None if unknown."""

    @abc.abstractmethod
    async def add_intake_item(self, item: IntakeItem) -> IntakeItem:
        """Add a cylinder to the intake queue."""

    @abc.abstractmethod
    async def list_intake_items(self) -> List[IntakeItem]:
        """Intake queue items, newest first."""

    @abc.abstractmethod
    async def delete_intake_item(self, item_id: str) -> None:
        """Remove an intake queue item. Raises RecordNotFoundError."""


# -----------------------------------------------------------------------------
# In-Memory Store
# -----------------------------------------------------------------------------


class InMemoryInspectionStore(InspectionStore):
    """Dict-backed store. Not shared across processes."""

    def __init__(self, profiles: Optional[Dict[str, Actor]] = None):
        self._records: Dict[str, InspectionRecord] = {}
        self._history: List[HistoryEntry] = []
        self._intake: Dict[str, IntakeItem] = {}
        self._profiles: Dict[str, Actor] = dict(profiles or {})

    def add_profile(self, actor: Actor) -> None:
        self._profiles[actor.actor_id] = actor

    async def read_record(self, record_id: str) -> InspectionRecord:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Inspection {record_id} not found")
        return record

    async def list_records(self, record_filter: Optional[RecordFilter] = None) -> List[InspectionRecord]:
        return apply_filter(list(self._records.values()), record_filter or RecordFilter())

    async def insert_record(self, record: InspectionRecord) -> InspectionRecord:
        if record.record_id in self._records:
            raise PersistenceError(f"Inspection {record.record_id} already exists")
        self._records[record.record_id] = record
        return record

    async def update_record_status(
        self,
        record_id: str,
        new_raw_status: str,
        updated_at: datetime,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> InspectionRecord:
        extra = _check_fields(extra_fields)
        record = await self.read_record(record_id)
        updated = record.with_status(new_raw_status, updated_at, **extra)
        self._records[record_id] = updated
        return updated

    async def delete_record(self, record_id: str) -> None:
        if self._records.pop(record_id, None) is None:
            raise RecordNotFoundError(f"Inspection {record_id} not found")
        self._history = [e for e in self._history if e.record_id != record_id]

    async def append_history_entry(
        self,
        record_id: str,
        previous_raw_status: Optional[str],
        new_raw_status: str,
        actor_id: Optional[str],
        occurred_at: datetime,
        note: Optional[str] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            entry_id=new_id(),
            record_id=record_id,
            previous_raw_status=previous_raw_status,
            new_raw_status=new_raw_status,
            occurred_at=occurred_at,
            actor_id=actor_id,
            actor=self._profiles.get(actor_id) if actor_id else None,
            note=note,
        )
        self._history.append(entry)
        return entry

    async def list_history(self, record_id: str) -> List[HistoryEntry]:
        entries = [e for e in self._history if e.record_id == record_id]
        entries.sort(key=lambda e: e.occurred_at)
        return entries

    async def resolve_actor(self, user_id: str) -> Optional[Actor]:
        return self._profiles.get(user_id)

    async def add_intake_item(self, item: IntakeItem) -> IntakeItem:
        self._intake[item.item_id] = item
        return item

    async def list_intake_items(self) -> List[IntakeItem]:
        return sorted(self._intake.values(), key=lambda i: i.created_at, reverse=True)

    async def delete_intake_item(self, item_id: str) -> None:
        if self._intake.pop(item_id, None) is None:
            raise RecordNotFoundError(f"Intake item {item_id} not found")


# -----------------------------------------------------------------------------
# JSONL File Store
# -----------------------------------------------------------------------------


class JsonlInspectionStore(InspectionStore):
    """
    File-backed store.

    Layout under data_dir:
        inspections.json   records and intake items (atomic replace)
        history.jsonl      append-only audit entries (fsync)
        profiles.json      user profiles {id: {nome, role, status, empresa_id}}
    """

    def __init__(self, data_dir: Path):
        self._data_dir = Path(data_dir)
        self._state_file = self._data_dir / "inspections.json"
        self._history_file = self._data_dir / "history.jsonl"
        self._profiles_file = self._data_dir / "profiles.json"
        self._lock = asyncio.Lock()
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.debug(f"Could not create data directory: {e}")

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def read_record(self, record_id: str) -> InspectionRecord:
        state = self._load_state()
        data = state["records"].get(record_id)
        if data is None:
            raise RecordNotFoundError(f"Inspection {record_id} not found")
        return InspectionRecord.from_dict(data)

    async def list_records(self, record_filter: Optional[RecordFilter] = None) -> List[InspectionRecord]:
        state = self._load_state()
        records = []
        for data in state["records"].values():
            try:
                records.append(InspectionRecord.from_dict(data))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable inspection record: {e}")
        return apply_filter(records, record_filter or RecordFilter())

    async def insert_record(self, record: InspectionRecord) -> InspectionRecord:
        async with self._lock:
            state = self._load_state()
            if record.record_id in state["records"]:
                raise PersistenceError(f"Inspection {record.record_id} already exists")
            state["records"][record.record_id] = record.to_dict()
            self._save_state(state)
        return record

    async def update_record_status(
        self,
        record_id: str,
        new_raw_status: str,
        updated_at: datetime,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> InspectionRecord:
        extra = _check_fields(extra_fields)
        async with self._lock:
            state = self._load_state()
            data = state["records"].get(record_id)
            if data is None:
                raise RecordNotFoundError(f"Inspection {record_id} not found")
            updated = InspectionRecord.from_dict(data).with_status(new_raw_status, updated_at, **extra)
            state["records"][record_id] = updated.to_dict()
            self._save_state(state)
        return updated

    async def delete_record(self, record_id: str) -> None:
        """
        Delete a record, then rewrite history without its entries.

        History never outlives a surviving record.
        If the rewrite fails, the orphaned lines stay until the next delete,
        which drops every entry whose record no longer exists.
        """
        async with self._lock:
            state = self._load_state()
            if state["records"].pop(record_id, None) is None:
                raise RecordNotFoundError(f"Inspection {record_id} not found")
            self._save_state(state)
            kept = [e for e in self._read_history() if e.get("record_id") in state["records"]]
            self._rewrite_history(kept)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def append_history_entry(
        self,
        record_id: str,
        previous_raw_status: Optional[str],
        new_raw_status: str,
        actor_id: Optional[str],
        occurred_at: datetime,
        note: Optional[str] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            entry_id=new_id(),
            record_id=record_id,
            previous_raw_status=previous_raw_status,
            new_raw_status=new_raw_status,
            occurred_at=occurred_at,
            actor_id=actor_id,
            note=note,
        )
        data = entry.to_dict()
        data.pop("actor")
        data.pop("synthetic")
        async with self._lock:
            self._append_history(data)
        actor = await self.resolve_actor(actor_id) if actor_id else None
        return replace(entry, actor=actor)

    async def list_history(self, record_id: str) -> List[HistoryEntry]:
        profiles = self._load_profiles()
        entries = []
        for data in self._read_history():
            if data.get("record_id") != record_id:
                continue
            try:
                entry = HistoryEntry.from_dict(data)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable history entry: {e}")
                continue
            actor = self._profile_to_actor(entry.actor_id, profiles) if entry.actor_id else None
            entries.append(replace(entry, actor=actor))
        entries.sort(key=lambda e: e.occurred_at)
        return entries

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    async def resolve_actor(self, user_id: str) -> Optional[Actor]:
        return self._profile_to_actor(user_id, self._load_profiles())

    def save_profile(self, actor: Actor, status: str = PROFILE_APPROVED) -> None:
        """Write a user profile (seeding and administration)."""
        profiles = self._load_profiles()
        profiles[actor.actor_id] = {
            "nome": actor.display_name,
            "role": actor.role.value if actor.role else None,
            "status": status,
            "empresa_id": actor.company_id,
        }
        self._write_json(self._profiles_file, profiles)

    @staticmethod
    def _profile_to_actor(user_id: str, profiles: Dict[str, Any]) -> Optional[Actor]:
        data = profiles.get(user_id)
        if data is None:
            return None
        return Actor.from_dict({
            "actor_id": user_id,
            "display_name": data.get("nome", ""),
            "role": data.get("role"),
            "company_id": data.get("empresa_id"),
        })

    # -------------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------------

    async def add_intake_item(self, item: IntakeItem) -> IntakeItem:
        async with self._lock:
            state = self._load_state()
            state["intake"][item.item_id] = item.to_dict()
            self._save_state(state)
        return item

    async def list_intake_items(self) -> List[IntakeItem]:
        state = self._load_state()
        items = [IntakeItem.from_dict(d) for d in state["intake"].values()]
        return sorted(items, key=lambda i: i.created_at, reverse=True)

    async def delete_intake_item(self, item_id: str) -> None:
        async with self._lock:
            state = self._load_state()
            if state["intake"].pop(item_id, None) is None:
                raise RecordNotFoundError(f"Intake item {item_id} not found")
            self._save_state(state)

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _load_state(self) -> Dict[str, Any]:
        """Load state from file."""
        if not self._state_file.exists():
            return {"records": {}, "intake": {}}
        try:
            state = json.loads(self._state_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load state file: {e}")
            raise PersistenceError(f"Cannot read {self._state_file}: {e}") from e
        state.setdefault("records", {})
        state.setdefault("intake", {})
        return state

    def _save_state(self, state: Dict[str, Any]) -> None:
        """Save state to file atomically."""
        state["last_updated"] = utcnow().isoformat()
        self._write_json(self._state_file, state)

    def _load_profiles(self) -> Dict[str, Any]:
        if not self._profiles_file.exists():
            return {}
        try:
            return json.loads(self._profiles_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load profiles file: {e}")
            raise PersistenceError(f"Cannot read {self._profiles_file}: {e}") from e

    def _write_json(self, file_path: Path, data: Dict[str, Any]) -> None:
        temp_file = file_path.with_suffix(".tmp")
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(json.dumps(data, indent=2, default=str, ensure_ascii=False))
            temp_file.replace(file_path)
        except OSError as e:
            logger.error(f"Failed to save {file_path}: {e}")
            if temp_file.exists():
                temp_file.unlink()
            raise PersistenceError(f"Cannot write {file_path}: {e}") from e

    def _append_history(self, record: Dict[str, Any]) -> None:
        """Append a record to the history JSONL file with fsync."""
        try:
            self._history_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._history_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Failed to append history entry: {e}")
            raise PersistenceError(f"Cannot append to {self._history_file}: {e}") from e

    def _read_history(self) -> List[Dict[str, Any]]:
        if not self._history_file.exists():
            return []
        records = []
        with open(self._history_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    try:
                        records.append(json.loads(line))
                    except json.JSONDecodeError:
                        # Skip malformed lines
                        continue
        return records

    def _rewrite_history(self, records: List[Dict[str, Any]]) -> None:
        """Rewrite history without a deleted record's entries (cascade only)."""
        temp_file = self._history_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                for record in records:
                    f.write(json.dumps(record, ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
            temp_file.replace(self._history_file)
        except OSError as e:
            logger.error(f"Failed to rewrite history file: {e}")
            raise PersistenceError(f"Cannot rewrite {self._history_file}: {e}") from e
