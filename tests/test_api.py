"""
Integration Tests for the HTTP API

Drives the FastAPI app through TestClient with an in-memory store.
"""

import pytest
from fastapi.testclient import TestClient

from peritagem import __version__
from peritagem.inspection_model import PROFILE_APPROVED, PROFILE_PENDING
from peritagem.inspection_service import InspectionService, set_inspection_service
from peritagem.main import app

from .conftest import (
    CLIENT,
    COMMERCIAL,
    INSPECTOR,
    MANAGER,
    PLANNER,
    TEST_COMPANY_ID,
    StepClock,
)


def headers_for(actor, status=PROFILE_APPROVED):
    headers = {
        "X-Actor-Id": actor.actor_id,
        "X-Actor-Name": actor.display_name,
        "X-Actor-Role": actor.role.value,
        "X-Actor-Status": status,
    }
    if actor.company_id:
        headers["X-Actor-Company"] = actor.company_id
    return headers


@pytest.fixture
def client(memory_store):
    """Test client bound to a fresh in-memory service."""
    set_inspection_service(InspectionService(memory_store, clock=StepClock()))
    yield TestClient(app)
    set_inspection_service(None)


def create_inspection(client, **overrides):
    body = {"client_name": "Hidráulica Sul", "inspection_number": "PT-1", "company_id": TEST_COMPANY_ID}
    body.update(overrides)
    response = client.post("/inspections", json=body, headers=headers_for(INSPECTOR))
    assert response.status_code == 201
    return response.json()


# -----------------------------------------------------------------------------
# Test 1: Service Endpoints
# -----------------------------------------------------------------------------
class TestHealth:

    def test_root(self, client):
        data = client.get("/").json()
        assert data["status"] == "running"
        assert data["version"] == __version__

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["api"] == "operational"
        assert "timeline_reconstruction" in data["capabilities"]


# -----------------------------------------------------------------------------
# Test 2: Inspections
# -----------------------------------------------------------------------------
class TestInspectionEndpoints:

    def test_create_and_read(self, client):
        created = create_inspection(client)
        assert created["stage"] == 1
        assert created["raw_status"] == "PERITAGEM CRIADA"

        response = client.get(f"/inspections/{created['record_id']}", headers=headers_for(PLANNER))
        assert response.status_code == 200
        assert response.json()["client_name"] == "Hidráulica Sul"

    def test_client_cannot_create(self, client):
        response = client.post("/inspections", json={"client_name": "X"}, headers=headers_for(CLIENT))
        assert response.status_code == 403

    def test_missing_identity(self, client):
        response = client.post("/inspections", json={"client_name": "X"})
        assert response.status_code == 403

    def test_invalid_role_header(self, client):
        headers = dict(headers_for(PLANNER), **{"X-Actor-Role": "admin"})
        response = client.get("/inspections", headers=headers)
        assert response.status_code == 400

    def test_full_flow_by_actions(self, client):
        rid = create_inspection(client)["record_id"]
        steps = [
            (PLANNER, {"action": "approve_inspection"}, 2),
            (COMMERCIAL, {"action": "release_purchase_order", "order_number": "PO-1"}, 3),
            (INSPECTOR, {"action": "send_to_workshop"}, 4),
            (INSPECTOR, {"target": 5}, 5),
            (MANAGER, {"target": "PROCESSO FINALIZADO"}, 6),
        ]
        for actor, body, stage in steps:
            response = client.post(f"/inspections/{rid}/transition", json=body, headers=headers_for(actor))
            assert response.status_code == 200, response.text
            data = response.json()
            assert data["success"] is True
            assert data["audited"] is True
            assert data["record"]["stage"] == stage

        timeline = client.get(f"/inspections/{rid}/timeline", headers=headers_for(CLIENT)).json()
        assert [s["state"] for s in timeline["stages"]] == ["completed"] * 5 + ["active"]
        assert timeline["stages"][0]["synthesized"] is True
        assert timeline["stages"][2]["entry"]["actor"]["display_name"] == COMMERCIAL.display_name

    def test_release_without_order_number(self, client):
        rid = create_inspection(client)["record_id"]
        client.post(f"/inspections/{rid}/transition", json={"action": "approve_inspection"},
                    headers=headers_for(PLANNER))

        response = client.post(f"/inspections/{rid}/transition",
                               json={"action": "release_purchase_order", "order_number": " "},
                               headers=headers_for(PLANNER))

        assert response.status_code == 400
        assert client.get(f"/inspections/{rid}", headers=headers_for(PLANNER)).json()["stage"] == 2

    def test_client_transition_forbidden(self, client):
        rid = create_inspection(client)["record_id"]
        response = client.post(f"/inspections/{rid}/transition", json={"target": 2},
                               headers=headers_for(CLIENT))
        assert response.status_code == 403

    def test_pending_user_forbidden(self, client):
        rid = create_inspection(client)["record_id"]
        response = client.post(f"/inspections/{rid}/transition", json={"target": 2},
                               headers=headers_for(PLANNER, status=PROFILE_PENDING))
        assert response.status_code == 403

    @pytest.mark.parametrize("body", [
        {},
        {"action": "approve_inspection", "target": 2},
        {"action": "launch"},
        {"target": "²"},
    ])
    def test_bad_transition_body(self, client, body):
        rid = create_inspection(client)["record_id"]
        response = client.post(f"/inspections/{rid}/transition", json=body, headers=headers_for(PLANNER))
        assert response.status_code == 400

    def test_transition_unknown_record(self, client):
        response = client.post("/inspections/missing/transition", json={"target": 2},
                               headers=headers_for(PLANNER))
        assert response.status_code == 404

    def test_anonymous_transition_on_unknown_record(self, client):
        response = client.post("/inspections/missing/transition", json={"target": 2})
        assert response.status_code == 403

    def test_list_summary_and_guidance(self, client):
        rid = create_inspection(client)["record_id"]
        create_inspection(client, client_name="Agro Sul", company_id="empresa-2")

        listing = client.get("/inspections", params={"stage": ["1"], "search": "hidr"},
                             headers=headers_for(PLANNER)).json()
        assert listing["count"] == 1
        assert listing["inspections"][0]["record_id"] == rid

        client_listing = client.get("/inspections", headers=headers_for(CLIENT)).json()
        assert [r["company_id"] for r in client_listing["inspections"]] == [TEST_COMPANY_ID]

        summary = client.get("/inspections/summary", headers=headers_for(MANAGER)).json()
        assert summary["total"] == 2
        assert summary["stages"][0]["count"] == 2

        guidance = client.get(f"/inspections/{rid}/guidance", headers=headers_for(PLANNER)).json()
        assert guidance["available_actions"][0]["action"] == "approve_inspection"

    def test_unknown_stage_filter(self, client):
        response = client.get("/inspections", params={"stage": ["nenhum"]}, headers=headers_for(PLANNER))
        assert response.status_code == 400

    def test_delete(self, client):
        rid = create_inspection(client)["record_id"]
        assert client.delete(f"/inspections/{rid}", headers=headers_for(PLANNER)).status_code == 403
        assert client.delete(f"/inspections/{rid}", headers=headers_for(MANAGER)).status_code == 200
        assert client.get(f"/inspections/{rid}", headers=headers_for(MANAGER)).status_code == 404


# -----------------------------------------------------------------------------
# Test 3: Intake
# -----------------------------------------------------------------------------
class TestIntakeEndpoints:

    def test_add_list_remove(self, client):
        body = {"internal_order": "OS-100", "client_name": "Metal Norte", "arrival_date": "2024-02-28"}
        response = client.post("/intake", json=body, headers=headers_for(PLANNER))
        assert response.status_code == 201
        item_id = response.json()["item_id"]

        listing = client.get("/intake", headers=headers_for(INSPECTOR)).json()
        assert listing["count"] == 1

        assert client.delete(f"/intake/{item_id}", headers=headers_for(MANAGER)).status_code == 200
        assert client.delete(f"/intake/{item_id}", headers=headers_for(MANAGER)).status_code == 404

    def test_inspector_cannot_add(self, client):
        body = {"internal_order": "OS-1", "client_name": "X", "arrival_date": "2024-02-28"}
        assert client.post("/intake", json=body, headers=headers_for(INSPECTOR)).status_code == 403

    def test_invalid_date(self, client):
        body = {"internal_order": "OS-1", "client_name": "X", "arrival_date": "amanhã"}
        assert client.post("/intake", json=body, headers=headers_for(PLANNER)).status_code == 400
