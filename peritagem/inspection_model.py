"""
Inspection Data Model

Entities the lifecycle operates on:
- Role / Actor / ActorContext: who is acting (supplied by the identity
  collaborator, passed explicitly into every decision)
- InspectionRecord: one cylinder's inspection ("peritagem")
- HistoryEntry: immutable audit record of one committed transition
- IntakeItem: cylinder received and awaiting inspection
- TransitionResult: explicit success/failure result of a transition

Records are frozen dataclasses. A transition never mutates the caller's
record; the service returns a new record once the store confirms the write.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from .status_model import Stage, canonicalize

# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class PeritagemError(Exception):
    """Base error for the inspection lifecycle service."""


class ValidationError(PeritagemError):
    """Request rejected before any write (missing field, unauthorized role)."""


class PersistenceError(PeritagemError):
    """Store read/write failed. Retryable; no state was advanced."""


class PermissionDeniedError(ValidationError):
    """Actor role (or missing identity) does not allow the operation."""


class RecordNotFoundError(PeritagemError):
    """Requested record does not exist in the store."""


class ConfigurationError(PeritagemError):
    """Service misconfigured (e.g. hosted store without URL/key)."""


# -----------------------------------------------------------------------------
# Roles
# -----------------------------------------------------------------------------


class Role(str, Enum):
    """
    Actor roles.

    perito    - technical inspector
    pcp       - internal production planning (PCP)
    gestor    - manager
    comercial - commercial
    cliente   - client (read-only)
    """
    INSPECTOR = "perito"
    PLANNING = "pcp"
    MANAGER = "gestor"
    COMMERCIAL = "comercial"
    CLIENT = "cliente"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        """Case-insensitive parse. Unknown or empty values yield None."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        key = value.strip().lower()
        for role in cls:
            if role.value == key or role.name.lower() == key:
                return role
        return None

    @classmethod
    def internal_roles(cls) -> FrozenSet["Role"]:
        """Shop-floor and office roles (everyone except commercial and client)."""
        return frozenset({cls.INSPECTOR, cls.PLANNING, cls.MANAGER})


# Profile approval status set by a manager on the user's profile
PROFILE_APPROVED = "APROVADO"
PROFILE_PENDING = "PENDENTE"


@dataclass(frozen=True)
class Actor:
    """An authenticated user, characterized by display name and role."""
    actor_id: str
    display_name: str
    role: Optional[Role] = None
    company_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "display_name": self.display_name,
            "role": self.role.value if self.role else None,
            "company_id": self.company_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Actor":
        return cls(
            actor_id=str(data.get("actor_id", "")),
            display_name=data.get("display_name") or "",
            role=Role.parse(data.get("role")),
            company_id=data.get("company_id"),
        )


@dataclass(frozen=True)
class ActorContext:
    """
    Request-scoped identity, as supplied by the identity collaborator.

    Mirrors the collaborator's {session, role, status, loading} shape.
    Passed explicitly into every decision; there is no ambient role state.
    """
    actor: Optional[Actor]
    session: bool = True
    status: str = PROFILE_APPROVED
    loading: bool = False

    @property
    def role(self) -> Optional[Role]:
        return self.actor.role if self.actor else None

    @property
    def is_authenticated(self) -> bool:
        """Session present, identity resolved and profile approved."""
        return (
            self.session
            and not self.loading
            and self.actor is not None
            and self.role is not None
            and (self.status or "").strip().upper() == PROFILE_APPROVED
        )


# -----------------------------------------------------------------------------
# Inspection Record
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class InspectionRecord:
    """
    A single cylinder inspection.

    raw_status is the persisted source of truth; stage is derived from it.
    details carries business attributes (dimensions, invoice, ...) opaquely.
    """
    record_id: str
    raw_status: str
    created_at: datetime
    created_by: Optional[Actor]
    updated_at: Optional[datetime] = None
    inspection_number: str = ""
    client_name: str = ""
    company_id: Optional[str] = None
    purchase_order: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def stage(self) -> Stage:
        return canonicalize(self.raw_status)

    def with_status(
        self,
        raw_status: str,
        updated_at: datetime,
        **fields: Any,
    ) -> "InspectionRecord":
        """Copy of this record with a new status and extra fields."""
        return replace(self, raw_status=raw_status, updated_at=updated_at, **fields)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "raw_status": self.raw_status,
            "stage": int(self.stage),
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by.to_dict() if self.created_by else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "inspection_number": self.inspection_number,
            "client_name": self.client_name,
            "company_id": self.company_id,
            "purchase_order": self.purchase_order,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InspectionRecord":
        """Deserialize from dictionary."""
        return cls(
            record_id=str(data["record_id"]),
            raw_status=data.get("raw_status") or "",
            created_at=datetime.fromisoformat(data["created_at"]),
            created_by=Actor.from_dict(data["created_by"]) if data.get("created_by") else None,
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
            inspection_number=data.get("inspection_number") or "",
            client_name=data.get("client_name") or "",
            company_id=data.get("company_id"),
            purchase_order=data.get("purchase_order"),
            details=data.get("details") or {},
        )


# -----------------------------------------------------------------------------
# History Entry
# -----------------------------------------------------------------------------

# Synthetic ids for entries reconstructed by the timeline (never persisted)
SYNTHETIC_CREATED_ID = "synthetic:created"
SYNTHETIC_FALLBACK_ID = "synthetic:fallback"


@dataclass(frozen=True)
class HistoryEntry:
    """
    Immutable audit record of one transition.

    Append-only. Deleted only when the parent record is deleted.
    """
    entry_id: str
    record_id: str
    previous_raw_status: Optional[str]
    new_raw_status: str
    occurred_at: datetime
    actor_id: Optional[str] = None
    actor: Optional[Actor] = None
    note: Optional[str] = None

    @property
    def is_synthetic(self) -> bool:
        return self.entry_id.startswith("synthetic:")

    @property
    def stage(self) -> Stage:
        return canonicalize(self.new_raw_status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "record_id": self.record_id,
            "previous_raw_status": self.previous_raw_status,
            "new_raw_status": self.new_raw_status,
            "occurred_at": self.occurred_at.isoformat(),
            "actor_id": self.actor_id,
            "actor": self.actor.to_dict() if self.actor else None,
            "note": self.note,
            "synthetic": self.is_synthetic,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            entry_id=str(data["entry_id"]),
            record_id=str(data["record_id"]),
            previous_raw_status=data.get("previous_raw_status"),
            new_raw_status=data.get("new_raw_status") or "",
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            actor_id=data.get("actor_id"),
            actor=Actor.from_dict(data["actor"]) if data.get("actor") else None,
            note=data.get("note"),
        )


# -----------------------------------------------------------------------------
# Intake Item
# -----------------------------------------------------------------------------

INTAKE_WAITING = "AGUARDANDO"


@dataclass(frozen=True)
class IntakeItem:
    """A cylinder received at the shop, waiting for its inspection."""
    item_id: str
    internal_order: str
    client_name: str
    arrival_date: str
    created_at: datetime
    status: str = INTAKE_WAITING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "internal_order": self.internal_order,
            "client_name": self.client_name,
            "arrival_date": self.arrival_date,
            "created_at": self.created_at.isoformat(),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntakeItem":
        return cls(
            item_id=str(data["item_id"]),
            internal_order=data.get("internal_order") or "",
            client_name=data.get("client_name") or "",
            arrival_date=data.get("arrival_date") or "",
            created_at=datetime.fromisoformat(data["created_at"]),
            status=data.get("status") or INTAKE_WAITING,
        )


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Transition Result
# -----------------------------------------------------------------------------


class TransitionOutcome(str, Enum):
    """
    Outcome of a requested transition.

    This enum is LOCKED.
    """
    COMMITTED = "committed"
    VALIDATION_ERROR = "validation_error"
    PERSISTENCE_ERROR = "persistence_error"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class TransitionResult:
    """
    Explicit result of a transition request.

    audited is False when the status write succeeded but the history append
    failed (the record is advanced but under-audited).
    """
    success: bool
    outcome: TransitionOutcome
    message: str
    record: Optional[InspectionRecord] = None
    entry: Optional[HistoryEntry] = None
    audited: bool = False
    forbidden: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "message": self.message,
            "record": self.record.to_dict() if self.record else None,
            "entry": self.entry.to_dict() if self.entry else None,
            "audited": self.audited,
        }
