"""
API Router for the inspection lifecycle.

Routes:
- Inspections: create, list, summary, read, transition, timeline, guidance, delete
- Intake queue: list, add, remove

The acting user comes from the identity collaborator as request headers
(X-Actor-Id, X-Actor-Name, X-Actor-Role, X-Actor-Status, X-Actor-Company) and
is passed explicitly into every service call.

Error mapping:
    validation error -> 400 (403 when the role or identity is the reason)
    not found        -> 404
    store failure    -> 503
"""

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from .inspection_model import (
    Actor,
    ActorContext,
    ConfigurationError,
    PermissionDeniedError,
    PersistenceError,
    RecordNotFoundError,
    Role,
    TransitionOutcome,
    TransitionResult,
    ValidationError,
    utcnow,
)
from .inspection_service import InspectionService, get_inspection_service
from .intake_queue import IntakeQueue
from .lifecycle_engine import StageLike, TransitionAction
from .timeline_builder import timeline_to_dict

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logger = logging.getLogger("inspection_router")

# -----------------------------------------------------------------------------
# Router Setup
# -----------------------------------------------------------------------------
router = APIRouter(tags=["Inspections"])


def _get_service() -> InspectionService:
    return get_inspection_service()


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------


class CreateInspectionRequest(BaseModel):
    client_name: str
    inspection_number: str = ""
    company_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class TransitionRequest(BaseModel):
    """Either a named action or a target (stage index or status label)."""
    action: Optional[str] = None
    target: Optional[Union[int, str]] = None
    order_number: Optional[str] = None
    reason: Optional[str] = None


class IntakeRequest(BaseModel):
    internal_order: str
    client_name: str
    arrival_date: str = Field(..., description="YYYY-MM-DD")


# -----------------------------------------------------------------------------
# Identity and error mapping
# -----------------------------------------------------------------------------


def actor_context(
    x_actor_id: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_actor_status: Optional[str] = Header(None),
    x_actor_company: Optional[str] = Header(None),
) -> ActorContext:
    """Build the request-scoped identity from the collaborator's headers."""
    if not x_actor_id:
        return ActorContext(actor=None, session=False, status="")

    role = Role.parse(x_actor_role)
    if x_actor_role and role is None:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid role: {x_actor_role}. Valid: {[r.value for r in Role]}",
        )
    actor = Actor(
        actor_id=x_actor_id,
        display_name=x_actor_name or "",
        role=role,
        company_id=x_actor_company or None,
    )
    return ActorContext(actor=actor, session=True, status=x_actor_status or "")


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, RecordNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=503, detail=f"Store unavailable, please retry: {e}")
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=500, detail=str(e))
    return HTTPException(status_code=500, detail=f"Internal error: {e}")


def _transition_response(result: TransitionResult) -> Dict[str, Any]:
    if result.success:
        return result.to_dict()
    if result.outcome is TransitionOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.message)
    if result.outcome is TransitionOutcome.PERSISTENCE_ERROR:
        raise HTTPException(status_code=503, detail=result.message)
    raise HTTPException(status_code=403 if result.forbidden else 400, detail=result.message)


# -----------------------------------------------------------------------------
# Inspection Endpoints
# -----------------------------------------------------------------------------


@router.post("/inspections", status_code=201)
async def create_inspection(
    request: CreateInspectionRequest,
    context: ActorContext = Depends(actor_context),
):
    """Open a new inspection (stage 1)."""
    try:
        record = await _get_service().create_record(
            context,
            client_name=request.client_name,
            inspection_number=request.inspection_number,
            company_id=request.company_id,
            details=request.details,
        )
    except (PermissionDeniedError, ValidationError, PersistenceError) as e:
        raise _http_error(e)
    return record.to_dict()


@router.get("/inspections")
async def list_inspections(
    stage: Optional[List[str]] = Query(None, description="Stage index or status label, repeatable"),
    search: str = Query("", description="Client name or inspection number"),
    company_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    context: ActorContext = Depends(actor_context),
):
    """Worklist, newest first."""
    try:
        records = await _get_service().list_records(
            context, stages=stage, search=search, company_id=company_id, limit=limit
        )
    except (PermissionDeniedError, ValidationError, PersistenceError) as e:
        raise _http_error(e)
    return {
        "inspections": [r.to_dict() for r in records],
        "count": len(records),
    }


@router.get("/inspections/summary")
async def inspections_summary(context: ActorContext = Depends(actor_context)):
    """Record count per stage."""
    try:
        return await _get_service().stage_summary(context)
    except (PermissionDeniedError, PersistenceError) as e:
        raise _http_error(e)


@router.get("/inspections/{record_id}")
async def get_inspection(record_id: str, context: ActorContext = Depends(actor_context)):
    try:
        record = await _get_service().get_record(context, record_id)
    except (PermissionDeniedError, RecordNotFoundError, PersistenceError) as e:
        raise _http_error(e)
    return record.to_dict()


@router.delete("/inspections/{record_id}")
async def delete_inspection(record_id: str, context: ActorContext = Depends(actor_context)):
    """Delete an inspection and its history (manager only)."""
    try:
        await _get_service().delete_record(context, record_id)
    except (PermissionDeniedError, RecordNotFoundError, PersistenceError) as e:
        raise _http_error(e)
    return {"deleted": record_id}


@router.post("/inspections/{record_id}/transition")
async def transition_inspection(
    record_id: str,
    request: TransitionRequest,
    context: ActorContext = Depends(actor_context),
):
    """
    Perform a sanctioned transition.

    Body carries either `action` (e.g. "release_purchase_order") or
    `target` (stage index or status label), never both.
    """
    if (request.action is None) == (request.target is None):
        raise HTTPException(status_code=400, detail="Provide exactly one of 'action' or 'target'")

    target: Union[StageLike, TransitionAction]
    if request.action is not None:
        try:
            target = TransitionAction(request.action.strip().lower())
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid action: {request.action}. Valid: {[a.value for a in TransitionAction]}",
            )
    else:
        target = request.target

    result = await _get_service().transition(
        context,
        record_id,
        target,
        order_number=request.order_number,
        reason=request.reason,
    )
    return _transition_response(result)


@router.get("/inspections/{record_id}/timeline")
async def inspection_timeline(record_id: str, context: ActorContext = Depends(actor_context)):
    """Six-stage process timeline."""
    try:
        record, views = await _get_service().get_timeline(context, record_id)
    except (PermissionDeniedError, RecordNotFoundError, PersistenceError) as e:
        raise _http_error(e)
    return timeline_to_dict(record, views, now=utcnow())


@router.get("/inspections/{record_id}/guidance")
async def inspection_guidance(record_id: str, context: ActorContext = Depends(actor_context)):
    """What happens next, and which actions this actor may take."""
    try:
        return await _get_service().get_guidance(context, record_id)
    except (PermissionDeniedError, RecordNotFoundError, PersistenceError) as e:
        raise _http_error(e)


# -----------------------------------------------------------------------------
# Intake Endpoints
# -----------------------------------------------------------------------------


def _get_intake_queue() -> IntakeQueue:
    return IntakeQueue(_get_service().store)


@router.get("/intake")
async def list_intake(
    search: str = Query("", description="Internal order or client"),
    context: ActorContext = Depends(actor_context),
):
    try:
        items = await _get_intake_queue().list_items(context, search=search)
    except (PermissionDeniedError, PersistenceError) as e:
        raise _http_error(e)
    return {"items": [i.to_dict() for i in items], "count": len(items)}


@router.post("/intake", status_code=201)
async def add_intake(request: IntakeRequest, context: ActorContext = Depends(actor_context)):
    try:
        item = await _get_intake_queue().add_item(
            context,
            internal_order=request.internal_order,
            client_name=request.client_name,
            arrival_date=request.arrival_date,
        )
    except (PermissionDeniedError, ValidationError, PersistenceError) as e:
        raise _http_error(e)
    return item.to_dict()


@router.delete("/intake/{item_id}")
async def remove_intake(item_id: str, context: ActorContext = Depends(actor_context)):
    try:
        await _get_intake_queue().remove_item(context, item_id)
    except (PermissionDeniedError, RecordNotFoundError, PersistenceError) as e:
        raise _http_error(e)
    return {"deleted": item_id}
