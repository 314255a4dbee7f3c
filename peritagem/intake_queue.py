"""
Intake Queue

Cylinders received at the shop and waiting for their technical inspection
("aguardando peritagem"). PCP and managers maintain the queue; every internal
role can read it.
"""

import logging
from datetime import date
from typing import List, Optional

from .inspection_model import (
    INTAKE_WAITING,
    ActorContext,
    IntakeItem,
    PermissionDeniedError,
    Role,
    ValidationError,
    new_id,
    utcnow,
)
from .inspection_store import InspectionStore

logger = logging.getLogger("intake_queue")

MANAGE_ROLES = frozenset({Role.PLANNING, Role.MANAGER})
VIEW_ROLES = Role.internal_roles()


def _check_role(context: ActorContext, allowed: frozenset, operation: str) -> None:
    if not context.is_authenticated:
        raise PermissionDeniedError("Authenticated, approved user required")
    if context.role not in allowed:
        raise PermissionDeniedError(f"Role '{context.role.value}' cannot {operation}")


class IntakeQueue:
    """Add, list and remove intake items through the store."""

    def __init__(self, store: InspectionStore):
        self._store = store

    async def add_item(
        self,
        context: ActorContext,
        internal_order: str,
        client_name: str,
        arrival_date: str,
    ) -> IntakeItem:
        """
        Register a received cylinder.

        Raises:
            PermissionDeniedError: role is not pcp/gestor
            ValidationError: a field is missing or the date is not YYYY-MM-DD
        """
        _check_role(context, MANAGE_ROLES, "add intake items")

        internal_order = (internal_order or "").strip()
        client_name = (client_name or "").strip()
        arrival_date = (arrival_date or "").strip()
        if not internal_order or not client_name or not arrival_date:
            raise ValidationError("Internal order, client and arrival date are required")
        try:
            date.fromisoformat(arrival_date)
        except ValueError:
            raise ValidationError(f"Invalid arrival date '{arrival_date}', expected YYYY-MM-DD")

        item = IntakeItem(
            item_id=new_id(),
            internal_order=internal_order,
            client_name=client_name,
            arrival_date=arrival_date,
            created_at=utcnow(),
            status=INTAKE_WAITING,
        )
        stored = await self._store.add_intake_item(item)
        logger.info(f"Intake item {stored.item_id} added: OS {internal_order} ({client_name})")
        return stored

    async def list_items(self, context: ActorContext, search: Optional[str] = None) -> List[IntakeItem]:
        """Waiting items, newest first, optionally filtered by OS or client."""
        _check_role(context, VIEW_ROLES, "view the intake queue")
        items = await self._store.list_intake_items()
        items = [i for i in items if i.status == INTAKE_WAITING]
        term = (search or "").strip().lower()
        if term:
            items = [
                i for i in items
                if term in i.client_name.lower() or term in i.internal_order.lower()
            ]
        return items

    async def remove_item(self, context: ActorContext, item_id: str) -> None:
        """Raises RecordNotFoundError for unknown ids."""
        _check_role(context, MANAGE_ROLES, "remove intake items")
        await self._store.delete_intake_item(item_id)
        logger.info(f"Intake item {item_id} removed by {context.actor.actor_id}")
