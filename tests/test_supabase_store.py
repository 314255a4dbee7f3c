"""
Unit Tests for the Supabase (PostgREST) store

Uses httpx.MockTransport; no network access.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from peritagem.inspection_model import PersistenceError, RecordNotFoundError, Role
from peritagem.inspection_store import RecordFilter
from peritagem.status_model import Stage
from peritagem.supabase_store import SupabaseInspectionStore, parse_timestamp

from .conftest import BASE_TIME, PLANNER, create_test_record

SUPABASE_URL = "https://example.supabase.co"

RECORD_ROW = {
    "id": "rec-1",
    "status": "Aguardando Clientes",
    "created_at": "2024-03-01T08:00:00.12345+00:00",
    "updated_at": None,
    "numero_peritagem": "PT-0001",
    "cliente": "Hidráulica Sul",
    "empresa_id": "empresa-1",
    "numero_pedido": None,
    "criado_por": "user-perito",
    "diametro_camisa": 120,
}

PROFILE_ROWS = [
    {"id": "user-perito", "nome": "Paulo Perito", "role": "perito", "empresa_id": None},
    {"id": "user-pcp", "nome": "Carla PCP", "role": "pcp", "empresa_id": None},
]


class FakePostgrest:
    """Minimal PostgREST double: records requests, answers per table."""

    def __init__(self, responses=None, status_code=200, failing=()):
        self.requests = []
        self.responses = responses or {}
        self.status_code = status_code
        self.failing = set(failing)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        table = request.url.path.rsplit("/", 1)[-1]
        key = (request.method, table)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"message": "boom"})
        if key in self.failing:
            return httpx.Response(500, json={"message": "boom"})
        if key in self.responses:
            return httpx.Response(200, json=self.responses[key])
        if table == "profiles":
            return httpx.Response(200, json=PROFILE_ROWS)
        return httpx.Response(200, json=[])

    def last(self, method, table):
        for request in reversed(self.requests):
            if request.method == method and request.url.path.endswith(f"/{table}"):
                return request
        raise AssertionError(f"No {method} {table} request")


def make_store(fake: FakePostgrest) -> SupabaseInspectionStore:
    return SupabaseInspectionStore(SUPABASE_URL, "anon-key", transport=httpx.MockTransport(fake))


# -----------------------------------------------------------------------------
# Test 1: Reads
# -----------------------------------------------------------------------------
class TestSupabaseReads:

    @pytest.mark.asyncio
    async def test_read_record_maps_columns(self):
        fake = FakePostgrest({("GET", "peritagens"): [RECORD_ROW]})
        record = await make_store(fake).read_record("rec-1")

        assert record.record_id == "rec-1"
        assert record.stage == Stage.CLIENT_APPROVAL
        assert record.client_name == "Hidráulica Sul"
        assert record.created_by.display_name == "Paulo Perito"
        assert record.created_by.role is Role.INSPECTOR
        assert record.details == {"diametro_camisa": 120}
        assert record.created_at == datetime(2024, 3, 1, 8, 0, 0, 123450, tzinfo=timezone.utc)

        request = fake.last("GET", "peritagens")
        assert request.url.params["id"] == "eq.rec-1"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["authorization"] == "Bearer anon-key"

    @pytest.mark.asyncio
    async def test_read_missing_record(self):
        with pytest.raises(RecordNotFoundError):
            await make_store(FakePostgrest()).read_record("nope")

    @pytest.mark.asyncio
    async def test_list_filters_stage_client_side(self):
        rows = [
            dict(RECORD_ROW, id="a", status="OFICINA", created_at="2024-03-02T08:00:00+00:00"),
            dict(RECORD_ROW, id="b", status="EM MANUTENÇÃO", created_at="2024-03-03T08:00:00+00:00"),
            dict(RECORD_ROW, id="c", status="PERITAGEM CRIADA"),
        ]
        fake = FakePostgrest({("GET", "peritagens"): rows})
        records = await make_store(fake).list_records(
            RecordFilter(stages=frozenset({Stage.MAINTENANCE}), company_id="empresa-1")
        )

        assert [r.record_id for r in records] == ["b", "a"]
        assert fake.last("GET", "peritagens").url.params["empresa_id"] == "eq.empresa-1"

    @pytest.mark.asyncio
    async def test_list_history_resolves_actors(self):
        rows = [{
            "id": 7,
            "peritagem_id": "rec-1",
            "status_antigo": "PERITAGEM CRIADA",
            "status_novo": "AGUARDANDO APROVAÇÃO DO PCP",
            "alterado_por": "user-pcp",
            "created_at": "2024-03-01T09:00:00Z",
        }]
        fake = FakePostgrest({("GET", "peritagem_historico"): rows})
        history = await make_store(fake).list_history("rec-1")

        assert len(history) == 1
        assert history[0].entry_id == "7"
        assert history[0].actor == PLANNER
        assert fake.last("GET", "peritagem_historico").url.params["order"] == "created_at.asc"


# -----------------------------------------------------------------------------
# Test 2: Writes
# -----------------------------------------------------------------------------
class TestSupabaseWrites:

    @pytest.mark.asyncio
    async def test_update_status_sends_patch(self):
        updated_row = dict(RECORD_ROW, status="AGUARDANDO APROVAÇÃO DO CLIENTE", numero_pedido="PO-9")
        fake = FakePostgrest({("PATCH", "peritagens"): [updated_row]})

        record = await make_store(fake).update_record_status(
            "rec-1", "AGUARDANDO APROVAÇÃO DO CLIENTE", BASE_TIME, {"purchase_order": "PO-9"}
        )

        request = fake.last("PATCH", "peritagens")
        body = json.loads(request.content)
        assert body["status"] == "AGUARDANDO APROVAÇÃO DO CLIENTE"
        assert body["numero_pedido"] == "PO-9"
        assert request.headers["prefer"] == "return=representation"
        assert record.purchase_order == "PO-9"

    @pytest.mark.asyncio
    async def test_update_missing_record(self):
        with pytest.raises(RecordNotFoundError):
            await make_store(FakePostgrest()).update_record_status("nope", "OFICINA", BASE_TIME)

    @pytest.mark.asyncio
    async def test_append_history_entry(self):
        row = {
            "id": "h-1",
            "peritagem_id": "rec-1",
            "status_antigo": "AGUARDANDO APROVAÇÃO DO PCP",
            "status_novo": "REVISÃO NECESSÁRIA",
            "alterado_por": "user-pcp",
            "created_at": BASE_TIME.isoformat(),
            "observacao": "faltam medidas",
        }
        fake = FakePostgrest({("POST", "peritagem_historico"): [row]})

        entry = await make_store(fake).append_history_entry(
            "rec-1", "AGUARDANDO APROVAÇÃO DO PCP", "REVISÃO NECESSÁRIA",
            "user-pcp", BASE_TIME, note="faltam medidas",
        )

        body = json.loads(fake.last("POST", "peritagem_historico").content)
        assert body["peritagem_id"] == "rec-1"
        assert body["alterado_por"] == "user-pcp"
        assert body["observacao"] == "faltam medidas"
        assert entry.actor == PLANNER
        assert entry.note == "faltam medidas"

    @pytest.mark.asyncio
    async def test_insert_record(self):
        record = create_test_record()
        row = dict(RECORD_ROW, status="PERITAGEM CRIADA", created_at=BASE_TIME.isoformat())
        row.pop("diametro_camisa")
        fake = FakePostgrest({("POST", "peritagens"): [row]})

        stored = await make_store(fake).insert_record(record)

        body = json.loads(fake.last("POST", "peritagens").content)
        assert body["criado_por"] == "user-perito"
        assert body["cliente"] == record.client_name
        assert stored.stage == Stage.CREATED

    @pytest.mark.asyncio
    async def test_delete_removes_history_after_record(self):
        fake = FakePostgrest({
            ("GET", "peritagens"): [RECORD_ROW],
            ("DELETE", "peritagens"): [RECORD_ROW],
        })
        await make_store(fake).delete_record("rec-1")

        deletes = [r for r in fake.requests if r.method == "DELETE"]
        assert [r.url.path.rsplit("/", 1)[-1] for r in deletes] == ["peritagens", "peritagem_historico"]
        assert deletes[1].url.params["peritagem_id"] == "eq.rec-1"

    @pytest.mark.asyncio
    async def test_failed_record_delete_keeps_history(self):
        fake = FakePostgrest({("GET", "peritagens"): [RECORD_ROW]}, failing={("DELETE", "peritagens")})

        with pytest.raises(PersistenceError):
            await make_store(fake).delete_record("rec-1")

        assert [r.url.path for r in fake.requests if r.method == "DELETE"] == ["/rest/v1/peritagens"]

    @pytest.mark.asyncio
    async def test_delete_missing_record_touches_nothing(self):
        fake = FakePostgrest()

        with pytest.raises(RecordNotFoundError):
            await make_store(fake).delete_record("nope")

        assert [r for r in fake.requests if r.method == "DELETE"] == []


# -----------------------------------------------------------------------------
# Test 3: Failures
# -----------------------------------------------------------------------------
class TestSupabaseFailures:

    @pytest.mark.asyncio
    async def test_http_error_becomes_persistence_error(self):
        with pytest.raises(PersistenceError):
            await make_store(FakePostgrest(status_code=500)).read_record("rec-1")

    @pytest.mark.asyncio
    async def test_transport_error_becomes_persistence_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        store = SupabaseInspectionStore(SUPABASE_URL, "k", transport=httpx.MockTransport(handler))
        with pytest.raises(PersistenceError):
            await store.update_record_status("rec-1", "OFICINA", BASE_TIME)

    def test_parse_timestamp(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("2024-03-01T08:00:00Z") == BASE_TIME
        assert parse_timestamp("2024-03-01 08:00:00.5+00:00").microsecond == 500000
        with pytest.raises(PersistenceError):
            parse_timestamp("yesterday")
