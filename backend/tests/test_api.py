import pytest
from fastapi.testclient import TestClient

from study_wizard.database import get_db
from study_wizard.main import app
from study_wizard.services.context import ContextRegistry

from conftest import OTHER, OWNER, escrow_form

HEADERS = {"session-id": "profile-1", "x-wallet-address": OWNER}


@pytest.fixture
def client(db, make_context, settings, monkeypatch):
    monkeypatch.setattr("study_wizard.routes.studies.get_settings", lambda: settings)
    monkeypatch.setattr(app.state, "contexts", ContextRegistry(lambda key, session: make_context(key=key)))
    app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def submit(client, kind, form=None, headers=HEADERS):
    body = {"kind": kind}
    if form is not None:
        body["form"] = form
    return client.post("/api/wizard/command", json=body, headers=headers)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] in ("healthy", "degraded")


def test_create_and_fetch_study(client):
    response = client.post("/api/studies/create-initial", json={}, headers={"x-wallet-address": OWNER})
    assert response.status_code == 200
    study_id = response.json()["study_id"]

    study = client.get(f"/api/studies/{study_id}").json()
    assert study["researcher_address"] == OWNER.lower()
    assert study["status"] == "created"
    assert not study["wizard_completed"]

    assert client.get("/api/studies/missing").status_code == 404


def test_build_tx_for_escrow(client):
    response = client.post("/api/studies/wizard/build-tx", json={
        "step": "escrow",
        "owner": OWNER,
        "form": escrow_form().model_dump(mode="json"),
    })
    assert response.status_code == 200
    tx = response.json()
    assert tx["function_name"] == "createStudy"
    assert tx["chain_id"] == 11155420


def test_build_tx_rejects_bad_form(client):
    response = client.post("/api/studies/wizard/build-tx", json={
        "step": "escrow", "owner": OWNER, "form": {"title": "short"},
    })
    assert response.status_code == 400


def criteria_request(code_hash):
    return {
        "step": "criteria", "owner": OWNER, "registry_id": 11,
        "form": {"min_age": 18, "max_age": 65, "requires_eligibility_proof": True,
                 "eligibility_code_hash": code_hash},
    }


@pytest.mark.parametrize("code_hash, expected", [("0123", 123), ("0x1F", 31), ("", 0)])
def test_build_tx_for_criteria_accepts_decimal_and_hex_hash(client, code_hash, expected):
    response = client.post("/api/studies/wizard/build-tx", json=criteria_request(code_hash))
    assert response.status_code == 200
    assert response.json()["args"] == [11, 18, 65, expected]


@pytest.mark.parametrize("code_hash", ["abc", "0x", "-5", "0xZZ"])
def test_build_tx_for_criteria_rejects_malformed_hash(client, code_hash):
    response = client.post("/api/studies/wizard/build-tx", json=criteria_request(code_hash))
    assert response.status_code == 400
    assert response.json()["detail"][0]["loc"] == ["eligibility_code_hash"]


def test_build_registry_without_escrow_id_conflicts(client):
    response = client.post("/api/studies/wizard/build-tx", json={
        "step": "registry", "owner": OWNER, "form": {},
        "funding": escrow_form().model_dump(mode="json"),
    })
    assert response.status_code == 409
    assert response.json()["error_code"] == "PRECONDITION_VIOLATION"


def test_index_step_is_idempotent(client):
    study_id = client.post("/api/studies/create-initial", json={},
                           headers={"x-wallet-address": OWNER}).json()["study_id"]
    body = {
        "database_id": study_id, "step": "escrow", "tx_hash": "0x" + "9" * 64,
        "chain_id": 11155420, "block_number": 42, "payload": {"emitted_ids": [7]},
    }
    first = client.post("/api/studies/wizard/index-step", json=body).json()
    second = client.post("/api/studies/wizard/index-step", json=body).json()
    assert first["derived_ids"] == {"escrow_id": 7}
    assert not first["duplicate"]
    assert second["duplicate"]

    bad = client.post("/api/studies/wizard/index-step", json={**body, "tx_hash": "0x12"})
    assert bad.status_code == 400
    missing = client.post("/api/studies/wizard/index-step", json={**body, "database_id": "nope"})
    assert missing.status_code == 404


def test_wizard_flow_over_http(client, gateway):
    view = client.get("/api/wizard/session", headers=HEADERS).json()
    assert view["session"]["status"] == "draft"
    assert view["current_step"] == 1

    response = submit(client, "submit_escrow", escrow_form().model_dump(mode="json"))
    assert response.status_code == 200
    assert response.json()["session"]["status"] == "escrow_done"
    assert response.json()["active"]["step"] == "registry"

    mismatch = submit(client, "submit_criteria", {"min_age": 18, "max_age": 65})
    assert mismatch.status_code == 409
    assert mismatch.json()["error_code"] == "STEP_MISMATCH"

    gateway.decline = 1
    declined = submit(client, "submit_registry", {})
    assert declined.status_code == 409
    assert declined.json()["error_code"] == "USER_DECLINED"
    assert declined.json()["retryable"]

    resumed = client.get("/api/wizard/session", headers=HEADERS).json()
    assert resumed["session"]["status"] == "escrow_done"
    assert resumed["session"]["error"]

    retried = submit(client, "retry")
    assert retried.json()["session"]["status"] == "registry_done"

    trail = client.get("/api/admin/audit/profile-1").json()
    assert trail[0]["action"] == "SESSION_START"
    assert client.get("/api/admin/audit/profile-1/verify").json()["valid"]


def test_other_wallet_gets_fresh_session(client):
    client.get("/api/wizard/session", headers=HEADERS)
    submit(client, "submit_escrow", escrow_form().model_dump(mode="json"))

    view = client.get("/api/wizard/session", headers={**HEADERS, "x-wallet-address": OTHER}).json()
    assert view["ownership_reset"]
    assert view["session"]["owner"] == OTHER
    assert view["session"]["status"] == "draft"


def test_unknown_command_kind(client):
    client.get("/api/wizard/session", headers=HEADERS)
    assert submit(client, "submit_everything").status_code == 422


def test_over_budget_milestones_are_rejected(client):
    client.get("/api/wizard/session", headers=HEADERS)
    submit(client, "submit_escrow", escrow_form().model_dump(mode="json"))
    submit(client, "submit_registry", {})
    submit(client, "submit_criteria", {"min_age": 18, "max_age": 65})

    milestones = [{"type": "Custom", "description": "Visit one", "reward_amount": 251}]
    response = submit(client, "submit_milestones", {"milestones": milestones})
    assert response.status_code == 400
    assert response.json()["error_code"] == "BUDGET_EXCEEDED"


def test_check_budget_endpoint(client):
    milestones = [
        {"type": "Enrollment", "description": "Initial enrollment", "reward_amount": 125},
        {"type": "StudyCompletion", "description": "Complete all requirements", "reward_amount": 126},
    ]
    result = client.post("/api/wizard/milestones/check-budget",
                         json={"total_funding": 250, "milestones": milestones}).json()
    assert result["over_budget"]
    assert result["total_rewards"] == 251


def test_cancel_and_finish(client):
    client.get("/api/wizard/session", headers=HEADERS)
    assert client.post("/api/wizard/session/finish", headers=HEADERS).status_code == 409

    view = client.post("/api/wizard/session/cancel", headers=HEADERS).json()
    assert view["session"]["status"] == "idle"
    assert not view["can_resume"]
