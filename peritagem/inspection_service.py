"""
Inspection Service

Orchestrates the lifecycle against the storage collaborator:
- record creation
- sanctioned transitions (authorize -> validate -> write status -> append history)
- listing / worklists, timeline, guidance, stage summary

The service holds no lock and no cached record state. Every transition
re-reads the record from the store and decides on the stored stage.

Status write and history append are two separate store calls. If the
append fails after the status write succeeded, the transition is reported
as committed but not audited (logged at WARNING); nothing is rolled back.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .config import Settings, load_settings
from .history_recorder import HistoryRecorder
from .inspection_model import (
    ActorContext,
    ConfigurationError,
    HistoryEntry,
    InspectionRecord,
    PermissionDeniedError,
    PersistenceError,
    RecordNotFoundError,
    Role,
    TransitionOutcome,
    TransitionResult,
    ValidationError,
    new_id,
    utcnow,
)
from .inspection_store import (
    InMemoryInspectionStore,
    InspectionStore,
    JsonlInspectionStore,
    RecordFilter,
)
from .lifecycle_engine import (
    ACTIONS_REQUIRING_ORDER_NUMBER,
    StageLike,
    TransitionAction,
    authorize,
    coerce_stage,
    get_next_guidance,
    status_for_action,
    target_for_action,
)
from .status_model import STATUS_CREATED, Stage
from .supabase_store import SupabaseInspectionStore
from .timeline_builder import StageView, build_timeline

logger = logging.getLogger("inspection_service")

# Roles allowed to open a new inspection
CREATE_ROLES = Role.internal_roles()
# Roles allowed to delete an inspection (and its history)
DELETE_ROLES = frozenset({Role.MANAGER})


def _require_authenticated(context: ActorContext) -> None:
    if not context.is_authenticated:
        raise PermissionDeniedError("Authenticated, approved user required")


def _is_visible(context: ActorContext, record: InspectionRecord) -> bool:
    """Clients only see records of their own company."""
    if context.role is not Role.CLIENT:
        return True
    company_id = context.actor.company_id
    return company_id is not None and record.company_id == company_id


class InspectionService:
    """Lifecycle operations over an InspectionStore."""

    def __init__(
        self,
        store: InspectionStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._recorder = HistoryRecorder(store)
        self._clock = clock or utcnow

    @property
    def store(self) -> InspectionStore:
        return self._store

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_record(
        self,
        context: ActorContext,
        client_name: str,
        inspection_number: str = "",
        company_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> InspectionRecord:
        """
        Open a new inspection at stage 1.

        No history entry is written; the timeline synthesizes the created step.

        Raises:
            PermissionDeniedError: actor may not create inspections
            ValidationError: client name missing
            PersistenceError: the store rejected the insert
        """
        _require_authenticated(context)
        if context.role not in CREATE_ROLES:
            raise PermissionDeniedError(f"Role '{context.role.value}' cannot create inspections")
        if not client_name or not client_name.strip():
            raise ValidationError("Client name is required")

        now = self._clock()
        record = InspectionRecord(
            record_id=new_id(),
            raw_status=STATUS_CREATED,
            created_at=now,
            created_by=context.actor,
            updated_at=now,
            inspection_number=(inspection_number or "").strip(),
            client_name=client_name.strip(),
            company_id=company_id,
            details=dict(details or {}),
        )
        stored = await self._store.insert_record(record)
        logger.info(f"Inspection {stored.record_id} created by {context.actor.actor_id} for '{stored.client_name}'")
        return stored

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def transition(
        self,
        context: ActorContext,
        record_id: str,
        target: Union[StageLike, TransitionAction],
        order_number: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move a record to a target stage (or by a named action).

        Order of checks: record exists, actor authorized for the edge,
        transition-specific fields present. Only then is the status written,
        followed by the history append. Unauthenticated contexts are rejected
        before the record is read.
        """
        if not context.is_authenticated:
            return TransitionResult(
                False,
                TransitionOutcome.VALIDATION_ERROR,
                "Authenticated, approved user required",
                forbidden=True,
            )

        try:
            record = await self._store.read_record(record_id)
        except RecordNotFoundError as e:
            return TransitionResult(False, TransitionOutcome.NOT_FOUND, str(e))
        except PersistenceError as e:
            logger.error(f"Cannot read inspection {record_id}: {e}")
            return TransitionResult(False, TransitionOutcome.PERSISTENCE_ERROR, str(e))

        if not _is_visible(context, record):
            return TransitionResult(False, TransitionOutcome.NOT_FOUND, f"Inspection {record_id} not found")

        if isinstance(target, TransitionAction):
            resolved = target_for_action(record.stage, target)
            if resolved is None:
                if record.stage.is_terminal:
                    message = "Process is finalized; no further transitions"
                else:
                    message = f"Action '{target.value}' is not available from stage {int(record.stage)}"
                logger.warning(f"Transition rejected for {record_id}: {message}")
                return TransitionResult(False, TransitionOutcome.VALIDATION_ERROR, message, record=record)
            target = resolved

        decision = authorize(context, record.stage, target)
        if not decision.allowed:
            return TransitionResult(
                False,
                TransitionOutcome.VALIDATION_ERROR,
                decision.reason,
                record=record,
                forbidden=decision.forbidden,
            )

        action = decision.action
        extra_fields: Dict[str, Any] = {}
        if action in ACTIONS_REQUIRING_ORDER_NUMBER:
            order = (order_number or "").strip()
            if not order:
                message = "Order number is required to release the purchase order"
                logger.warning(f"Transition rejected for {record_id}: {message}")
                return TransitionResult(False, TransitionOutcome.VALIDATION_ERROR, message, record=record)
            extra_fields["purchase_order"] = order

        new_status = status_for_action(action)
        note = None
        if action is TransitionAction.REQUEST_REVISION:
            note = (reason or "").strip() or None
        now = self._clock()

        try:
            updated = await self._store.update_record_status(record_id, new_status, now, extra_fields)
        except RecordNotFoundError as e:
            return TransitionResult(False, TransitionOutcome.NOT_FOUND, str(e))
        except PersistenceError as e:
            logger.error(f"Status write failed for {record_id} ({action.value}): {e}")
            return TransitionResult(
                False,
                TransitionOutcome.PERSISTENCE_ERROR,
                f"Could not save the transition, please retry: {e}",
                record=record,
            )

        try:
            entry = await self._recorder.record(
                record_id, record.raw_status, new_status, context.actor, now, note
            )
        except PersistenceError as e:
            logger.warning(
                f"Inspection {record_id} advanced to '{new_status}' but history append failed: {e}"
            )
            return TransitionResult(
                True,
                TransitionOutcome.COMMITTED,
                f"Transition saved, history entry missing: {e}",
                record=updated,
                audited=False,
            )

        logger.info(
            f"Inspection {record_id}: stage {int(record.stage)} -> {int(updated.stage)} "
            f"({action.value}) by {context.actor.actor_id}"
        )
        return TransitionResult(
            True,
            TransitionOutcome.COMMITTED,
            decision.reason,
            record=updated,
            entry=entry,
            audited=True,
        )

    async def approve_inspection(self, context: ActorContext, record_id: str) -> TransitionResult:
        return await self.transition(context, record_id, TransitionAction.APPROVE_INSPECTION)

    async def request_revision(
        self, context: ActorContext, record_id: str, reason: Optional[str] = None
    ) -> TransitionResult:
        return await self.transition(context, record_id, TransitionAction.REQUEST_REVISION, reason=reason)

    async def release_purchase_order(
        self, context: ActorContext, record_id: str, order_number: Optional[str]
    ) -> TransitionResult:
        return await self.transition(
            context, record_id, TransitionAction.RELEASE_PURCHASE_ORDER, order_number=order_number
        )

    async def send_to_workshop(self, context: ActorContext, record_id: str) -> TransitionResult:
        return await self.transition(context, record_id, TransitionAction.SEND_TO_WORKSHOP)

    async def finish_workshop(self, context: ActorContext, record_id: str) -> TransitionResult:
        return await self.transition(context, record_id, TransitionAction.FINISH_WORKSHOP)

    async def finalize(self, context: ActorContext, record_id: str) -> TransitionResult:
        return await self.transition(context, record_id, TransitionAction.FINALIZE)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_record(self, context: ActorContext, record_id: str) -> InspectionRecord:
        """Read one record visible to the actor. Raises RecordNotFoundError."""
        _require_authenticated(context)
        record = await self._store.read_record(record_id)
        if not _is_visible(context, record):
            raise RecordNotFoundError(f"Inspection {record_id} not found")
        return record

    async def list_records(
        self,
        context: ActorContext,
        stages: Optional[Iterable[StageLike]] = None,
        search: str = "",
        company_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[InspectionRecord]:
        """
        Worklist query, newest first.

        stages filters by canonical stage, so legacy phrasings are included.
        Client actors are always scoped to their own company.
        """
        _require_authenticated(context)
        wanted = set()
        for value in stages or ():
            stage = coerce_stage(value, strict=True)
            if stage is None:
                raise ValidationError(f"Unknown stage filter: {value!r}")
            wanted.add(stage)

        if context.role is Role.CLIENT:
            if context.actor.company_id is None:
                return []
            company_id = context.actor.company_id

        record_filter = RecordFilter(
            stages=frozenset(wanted),
            company_id=company_id,
            search=search or "",
            limit=limit,
        )
        return await self._store.list_records(record_filter)

    async def get_history(self, context: ActorContext, record_id: str) -> List[HistoryEntry]:
        await self.get_record(context, record_id)
        return await self._recorder.history_for(record_id)

    async def get_timeline(
        self, context: ActorContext, record_id: str
    ) -> Tuple[InspectionRecord, List[StageView]]:
        """Record plus its six-stage timeline."""
        record = await self.get_record(context, record_id)
        entries = await self._recorder.history_for(record_id)
        return record, build_timeline(record, entries)

    async def get_guidance(self, context: ActorContext, record_id: str) -> Dict[str, Any]:
        record = await self.get_record(context, record_id)
        return get_next_guidance(record, context.role)

    async def stage_summary(self, context: ActorContext) -> Dict[str, Any]:
        """Record count per canonical stage (dashboard distribution)."""
        records = await self.list_records(context, limit=0)
        counts = {stage: 0 for stage in Stage.ordered()}
        for record in records:
            counts[record.stage] += 1
        return {
            "total": len(records),
            "stages": [
                {"stage": int(stage), "title": stage.title, "count": count}
                for stage, count in counts.items()
            ],
        }

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    async def delete_record(self, context: ActorContext, record_id: str) -> None:
        """Delete a record; its history goes with it."""
        _require_authenticated(context)
        if context.role not in DELETE_ROLES:
            raise PermissionDeniedError(f"Role '{context.role.value}' cannot delete inspections")
        await self._store.delete_record(record_id)
        logger.info(f"Inspection {record_id} deleted by {context.actor.actor_id}")


# -----------------------------------------------------------------------------
# Store factory and singleton
# -----------------------------------------------------------------------------


def create_store(settings: Settings) -> InspectionStore:
    """Build the configured store backend."""
    if settings.store_backend == "memory":
        return InMemoryInspectionStore()
    if settings.store_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY are required for the supabase store")
        return SupabaseInspectionStore(
            settings.supabase_url, settings.supabase_key, timeout=settings.supabase_timeout
        )
    return JsonlInspectionStore(settings.data_dir)


_service_instance: Optional[InspectionService] = None


def get_inspection_service() -> InspectionService:
    """Get or create the inspection service singleton."""
    global _service_instance
    if _service_instance is None:
        settings = load_settings()
        logger.info(f"Inspection service using '{settings.store_backend}' store")
        _service_instance = InspectionService(create_store(settings))
    return _service_instance


def set_inspection_service(service: Optional[InspectionService]) -> None:
    """Replace (or clear) the singleton."""
    global _service_instance
    _service_instance = service
