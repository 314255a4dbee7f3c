"""
Unit Tests for the History Recorder
"""

from datetime import timedelta

import pytest

from peritagem.history_recorder import HistoryRecorder
from peritagem.inspection_model import Actor, PersistenceError, ValidationError
from peritagem.inspection_store import InMemoryInspectionStore

from .conftest import BASE_TIME, PLANNER, create_test_record


class FailingHistoryStore(InMemoryInspectionStore):
    """Store whose history appends always fail."""

    async def append_history_entry(self, *args, **kwargs):
        raise PersistenceError("history table unavailable")


class TestHistoryRecorder:
    """Append-only audit entries."""

    @pytest.mark.asyncio
    async def test_record_appends_entry(self, memory_store):
        recorder = HistoryRecorder(memory_store)
        await memory_store.insert_record(create_test_record())

        entry = await recorder.record(
            "rec-1", "PERITAGEM CRIADA", "AGUARDANDO APROVAÇÃO DO PCP", PLANNER, BASE_TIME
        )

        assert entry.record_id == "rec-1"
        assert entry.previous_raw_status == "PERITAGEM CRIADA"
        assert entry.new_raw_status == "AGUARDANDO APROVAÇÃO DO PCP"
        assert entry.actor == PLANNER
        assert entry.is_synthetic is False
        assert await recorder.history_for("rec-1") == [entry]

    @pytest.mark.asyncio
    async def test_entries_never_overwritten(self, memory_store):
        recorder = HistoryRecorder(memory_store)
        first = await recorder.record("rec-1", None, "AGUARDANDO APROVAÇÃO DO PCP", PLANNER, BASE_TIME)
        second = await recorder.record(
            "rec-1", "AGUARDANDO APROVAÇÃO DO PCP", "REVISÃO NECESSÁRIA", PLANNER,
            BASE_TIME + timedelta(minutes=5), note="faltam medidas",
        )

        history = await recorder.history_for("rec-1")
        assert history == [first, second]
        assert first.entry_id != second.entry_id
        assert history[1].note == "faltam medidas"

    @pytest.mark.asyncio
    async def test_history_ordered_by_time(self, memory_store):
        recorder = HistoryRecorder(memory_store)
        late = await recorder.record("rec-1", None, "EM MANUTENÇÃO", PLANNER, BASE_TIME + timedelta(hours=2))
        early = await recorder.record("rec-1", None, "AGUARDANDO APROVAÇÃO DO PCP", PLANNER, BASE_TIME)
        assert await recorder.history_for("rec-1") == [early, late]

    @pytest.mark.asyncio
    async def test_unknown_profile_keeps_caller_actor(self):
        recorder = HistoryRecorder(InMemoryInspectionStore())
        stranger = Actor("user-x", "Visitante")
        entry = await recorder.record("rec-1", None, "EM MANUTENÇÃO", stranger, BASE_TIME)
        assert entry.actor == stranger

    @pytest.mark.asyncio
    @pytest.mark.parametrize("record_id, next_status", [("", "EM MANUTENÇÃO"), ("rec-1", ""), ("rec-1", "   ")])
    async def test_missing_fields_rejected(self, memory_store, record_id, next_status):
        recorder = HistoryRecorder(memory_store)
        with pytest.raises(ValidationError):
            await recorder.record(record_id, None, next_status, PLANNER, BASE_TIME)
        assert await memory_store.list_history("rec-1") == []

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self):
        recorder = HistoryRecorder(FailingHistoryStore())
        with pytest.raises(PersistenceError):
            await recorder.record("rec-1", None, "EM MANUTENÇÃO", PLANNER, BASE_TIME)
