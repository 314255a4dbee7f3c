"""
Pytest configuration for the inspection lifecycle tests.

This module provides:
1. Actor / identity fixtures for every role
2. Store and service fixtures (in-memory, no I/O)
3. Helpers to build records and history entries
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from peritagem.inspection_model import (
    PROFILE_APPROVED,
    Actor,
    ActorContext,
    HistoryEntry,
    InspectionRecord,
    Role,
)
from peritagem.inspection_service import InspectionService
from peritagem.inspection_store import InMemoryInspectionStore
from peritagem.status_model import STATUS_CREATED

# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
BASE_TIME = datetime(2024, 3, 1, 8, 0, 0, tzinfo=timezone.utc)
TEST_COMPANY_ID = "empresa-1"
OTHER_COMPANY_ID = "empresa-2"

INSPECTOR = Actor("user-perito", "Paulo Perito", Role.INSPECTOR)
PLANNER = Actor("user-pcp", "Carla PCP", Role.PLANNING)
MANAGER = Actor("user-gestor", "Gil Gestor", Role.MANAGER)
COMMERCIAL = Actor("user-comercial", "Rita Comercial", Role.COMMERCIAL)
CLIENT = Actor("user-cliente", "Joana Cliente", Role.CLIENT, company_id=TEST_COMPANY_ID)

ALL_ACTORS = [INSPECTOR, PLANNER, MANAGER, COMMERCIAL, CLIENT]


def context_for(actor: Optional[Actor], status: str = PROFILE_APPROVED) -> ActorContext:
    """Approved, loaded session for an actor."""
    return ActorContext(actor=actor, session=actor is not None, status=status)


def create_test_record(
    record_id: str = "rec-1",
    raw_status: str = STATUS_CREATED,
    created_by: Optional[Actor] = INSPECTOR,
    created_at: datetime = BASE_TIME,
    updated_at: Optional[datetime] = None,
    client_name: str = "Hidráulica Sul",
    inspection_number: str = "PT-0001",
    company_id: Optional[str] = TEST_COMPANY_ID,
) -> InspectionRecord:
    """Helper to create test inspection records."""
    return InspectionRecord(
        record_id=record_id,
        raw_status=raw_status,
        created_at=created_at,
        created_by=created_by,
        updated_at=updated_at,
        inspection_number=inspection_number,
        client_name=client_name,
        company_id=company_id,
    )


def create_test_entry(
    previous: Optional[str],
    new: str,
    minutes: int = 60,
    record_id: str = "rec-1",
    entry_id: Optional[str] = None,
    actor: Optional[Actor] = PLANNER,
) -> HistoryEntry:
    """Helper to create a history entry `minutes` after BASE_TIME."""
    return HistoryEntry(
        entry_id=entry_id or f"entry-{minutes}",
        record_id=record_id,
        previous_raw_status=previous,
        new_raw_status=new,
        occurred_at=BASE_TIME + timedelta(minutes=minutes),
        actor_id=actor.actor_id if actor else None,
        actor=actor,
    )


class StepClock:
    """Deterministic clock: advances one minute per call."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(minutes=1)
        return self.now


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def memory_store():
    """In-memory store with a profile for every test actor."""
    store = InMemoryInspectionStore()
    for actor in ALL_ACTORS:
        store.add_profile(actor)
    return store


@pytest.fixture
def service(memory_store):
    """Inspection service over the in-memory store with a stepping clock."""
    return InspectionService(memory_store, clock=StepClock())


@pytest.fixture
def inspector_ctx():
    return context_for(INSPECTOR)


@pytest.fixture
def planner_ctx():
    return context_for(PLANNER)


@pytest.fixture
def manager_ctx():
    return context_for(MANAGER)


@pytest.fixture
def commercial_ctx():
    return context_for(COMMERCIAL)


@pytest.fixture
def client_ctx():
    return context_for(CLIENT)
