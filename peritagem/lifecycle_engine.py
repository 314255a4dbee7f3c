"""
Inspection Lifecycle Engine (Transition Authority)

Decides whether an actor may move an inspection record from its current
stage to a requested target. Stateless: every call is decided from its
arguments alone, and the actor role is always an explicit parameter.

Stages:
    CREATED -> PCP_APPROVAL -> CLIENT_APPROVAL -> MAINTENANCE ->
    FINAL_REVIEW -> FINALIZED
    (PCP_APPROVAL -> CREATED is the single backward edge: "needs revision")

Rules:
- No stage skipping
- FINALIZED is terminal, every request is rejected
- Clients never transition anything
- Releasing the purchase order requires a non-empty order number
  (checked by the service before any write)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

from .inspection_model import ActorContext, InspectionRecord, Role
from .status_model import (
    STATUS_NEEDS_REVISION,
    Stage,
    canonical_label,
    canonicalize,
    is_recognized,
)

logger = logging.getLogger("lifecycle_engine")

StageLike = Union[Stage, int, str]


class TransitionAction(str, Enum):
    """
    Named sanctioned transitions.

    This enum is LOCKED - one action per edge of the stage graph.
    """
    APPROVE_INSPECTION = "approve_inspection"
    REQUEST_REVISION = "request_revision"
    RELEASE_PURCHASE_ORDER = "release_purchase_order"
    SEND_TO_WORKSHOP = "send_to_workshop"
    FINISH_WORKSHOP = "finish_workshop"
    FINALIZE = "finalize"


# -----------------------------------------------------------------------------
# Valid Transitions
# -----------------------------------------------------------------------------

# Map of current_stage -> {target_stage: action}
VALID_TRANSITIONS: Dict[Stage, Dict[Stage, TransitionAction]] = {
    Stage.CREATED: {
        Stage.PCP_APPROVAL: TransitionAction.APPROVE_INSPECTION,
    },
    Stage.PCP_APPROVAL: {
        Stage.CLIENT_APPROVAL: TransitionAction.RELEASE_PURCHASE_ORDER,
        Stage.CREATED: TransitionAction.REQUEST_REVISION,
    },
    Stage.CLIENT_APPROVAL: {
        Stage.MAINTENANCE: TransitionAction.SEND_TO_WORKSHOP,
    },
    Stage.MAINTENANCE: {
        Stage.FINAL_REVIEW: TransitionAction.FINISH_WORKSHOP,
    },
    Stage.FINAL_REVIEW: {
        Stage.FINALIZED: TransitionAction.FINALIZE,
    },
    Stage.FINALIZED: {
        # Terminal stage - no transitions out
    },
}

# Roles that can perform each transition
TRANSITION_PERMISSIONS: Dict[TransitionAction, FrozenSet[Role]] = {
    TransitionAction.APPROVE_INSPECTION: frozenset({Role.PLANNING, Role.MANAGER}),
    TransitionAction.REQUEST_REVISION: frozenset({Role.PLANNING, Role.MANAGER}),
    TransitionAction.RELEASE_PURCHASE_ORDER: frozenset({Role.PLANNING, Role.MANAGER, Role.COMMERCIAL}),
    TransitionAction.SEND_TO_WORKSHOP: Role.internal_roles(),
    TransitionAction.FINISH_WORKSHOP: Role.internal_roles(),
    TransitionAction.FINALIZE: frozenset({Role.PLANNING, Role.MANAGER}),
}

# Status written by each action
ACTION_STATUS_LABELS: Dict[TransitionAction, str] = {
    TransitionAction.APPROVE_INSPECTION: canonical_label(Stage.PCP_APPROVAL),
    TransitionAction.REQUEST_REVISION: STATUS_NEEDS_REVISION,
    TransitionAction.RELEASE_PURCHASE_ORDER: canonical_label(Stage.CLIENT_APPROVAL),
    TransitionAction.SEND_TO_WORKSHOP: canonical_label(Stage.MAINTENANCE),
    TransitionAction.FINISH_WORKSHOP: canonical_label(Stage.FINAL_REVIEW),
    TransitionAction.FINALIZE: canonical_label(Stage.FINALIZED),
}

ACTION_DESCRIPTIONS: Dict[TransitionAction, str] = {
    TransitionAction.APPROVE_INSPECTION: "Approve the technical inspection",
    TransitionAction.REQUEST_REVISION: "Send the inspection back for revision",
    TransitionAction.RELEASE_PURCHASE_ORDER: "Release the purchase order",
    TransitionAction.SEND_TO_WORKSHOP: "Send the cylinder to the workshop",
    TransitionAction.FINISH_WORKSHOP: "Finish workshop work",
    TransitionAction.FINALIZE: "Final conference, finalize the process",
}

WAITING_FOR: Dict[Stage, Optional[str]] = {
    Stage.CREATED: "PCP review of the inspection",
    Stage.PCP_APPROVAL: "PCP approval and purchase order",
    Stage.CLIENT_APPROVAL: "client approval and workshop slot",
    Stage.MAINTENANCE: "workshop repair",
    Stage.FINAL_REVIEW: "final conference",
    Stage.FINALIZED: None,
}

# Actions that need a non-empty order number
ACTIONS_REQUIRING_ORDER_NUMBER: FrozenSet[TransitionAction] = frozenset({
    TransitionAction.RELEASE_PURCHASE_ORDER,
})


@dataclass(frozen=True)
class TransitionDecision:
    """Decision of the transition authority for one request."""
    allowed: bool
    reason: str
    action: Optional[TransitionAction] = None
    target_stage: Optional[Stage] = None
    forbidden: bool = False  # rejected because of the role, not the graph

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "action": self.action.value if self.action else None,
            "target_stage": int(self.target_stage) if self.target_stage else None,
        }


# -----------------------------------------------------------------------------
# Coercion
# -----------------------------------------------------------------------------


def coerce_stage(value: StageLike, strict: bool = False) -> Optional[Stage]:
    """
    Interpret a stage index or a raw status string.

    Integers (or digit strings) outside 1..6 yield None. Other strings are
    canonicalized; with strict=True an unrecognized string yields None
    instead of the stage-1 default.
    """
    if isinstance(value, Stage):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdecimal():
        try:
            value = int(value.strip())
        except ValueError:
            return None
    if isinstance(value, int):
        try:
            return Stage(value)
        except ValueError:
            return None
    if isinstance(value, str):
        if strict and not is_recognized(value):
            return None
        return canonicalize(value)
    return None


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


def evaluate_transition(
    current_stage: StageLike,
    actor_role: Union[Role, str, None],
    target: StageLike,
) -> TransitionDecision:
    """
    Check whether a transition is permitted.

    Args:
        current_stage: stage index (or raw status) the record is at
        actor_role: role of the acting user
        target: target raw status or stage index
    """
    current = coerce_stage(current_stage)
    if current is None:
        return TransitionDecision(False, f"Unknown current stage: {current_stage!r}")

    if current.is_terminal:
        return TransitionDecision(False, "Process is finalized; no further transitions")

    target_stage = coerce_stage(target, strict=True)
    if target_stage is None:
        return TransitionDecision(False, f"Unknown target: {target!r}")

    valid_targets = VALID_TRANSITIONS.get(current, {})
    action = valid_targets.get(target_stage)
    if action is None:
        return TransitionDecision(
            False,
            f"Invalid transition: stage {int(current)} -> stage {int(target_stage)}. "
            f"Valid targets: {[int(s) for s in valid_targets]}",
            target_stage=target_stage,
        )

    role = Role.parse(actor_role)
    if role is None:
        return TransitionDecision(
            False, f"Unknown role {actor_role!r}", action, target_stage, forbidden=True
        )

    if role is Role.CLIENT:
        return TransitionDecision(
            False, "Client accounts are read-only", action, target_stage, forbidden=True
        )

    allowed_roles = TRANSITION_PERMISSIONS.get(action, frozenset())
    if role not in allowed_roles:
        return TransitionDecision(
            False,
            f"Role '{role.value}' cannot {action.value}. "
            f"Required: {sorted(r.value for r in allowed_roles)}",
            action,
            target_stage,
            forbidden=True,
        )

    return TransitionDecision(
        True,
        f"Transition allowed: stage {int(current)} -> stage {int(target_stage)}",
        action,
        target_stage,
    )


def can_transition(
    current_stage: StageLike,
    actor_role: Union[Role, str, None],
    target: StageLike,
) -> bool:
    """True if actor_role may move a record at current_stage to target."""
    return evaluate_transition(current_stage, actor_role, target).allowed


def authorize(
    context: ActorContext,
    current_stage: StageLike,
    target: StageLike,
) -> TransitionDecision:
    """Evaluate a transition for a request-scoped identity context."""
    if not context.is_authenticated:
        return TransitionDecision(
            False, "Authenticated, approved user required", forbidden=True
        )
    decision = evaluate_transition(current_stage, context.role, target)
    if not decision.allowed:
        logger.warning(
            f"Transition rejected for {context.actor.actor_id} ({context.role.value}): {decision.reason}"
        )
    return decision


def target_for_action(current_stage: StageLike, action: TransitionAction) -> Optional[Stage]:
    """Stage an action leads to from current_stage, if it applies there."""
    current = coerce_stage(current_stage)
    if current is None:
        return None
    for target, edge_action in VALID_TRANSITIONS.get(current, {}).items():
        if edge_action is action:
            return target
    return None


def status_for_action(action: TransitionAction) -> str:
    """Raw status written by an action."""
    return ACTION_STATUS_LABELS[action]


# -----------------------------------------------------------------------------
# Guidance
# -----------------------------------------------------------------------------


def available_actions(
    current_stage: StageLike,
    actor_role: Union[Role, str, None],
) -> List[TransitionAction]:
    """Actions actor_role may perform from current_stage, in graph order."""
    current = coerce_stage(current_stage)
    if current is None:
        return []
    return [
        action
        for target, action in VALID_TRANSITIONS.get(current, {}).items()
        if can_transition(current, actor_role, target)
    ]


def get_next_guidance(
    record: InspectionRecord,
    actor_role: Union[Role, str, None],
) -> Dict[str, Any]:
    """
    Guidance for what happens next to a record.

    Used by the HTTP layer to show which actions are available.
    """
    stage = record.stage
    actions = available_actions(stage, actor_role)
    return {
        "record_id": record.record_id,
        "raw_status": record.raw_status,
        "current_stage": int(stage),
        "stage_title": stage.title,
        "terminal": stage.is_terminal,
        "waiting_for": WAITING_FOR[stage],
        "available_actions": [
            {
                "action": action.value,
                "description": ACTION_DESCRIPTIONS[action],
                "target_stage": int(target_for_action(stage, action)),
                "requires_order_number": action in ACTIONS_REQUIRING_ORDER_NUMBER,
            }
            for action in actions
        ],
    }
