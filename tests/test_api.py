from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from ptw_mvp.app import analysis, config
from ptw_mvp.app.main import app


@pytest.fixture()
def client(db_path):
    app.state.db_path = db_path
    with TestClient(app) as c:
        yield c
    app.state.db_path = config.DB_PATH


def login(client: TestClient, username: str, password: str) -> None:
    resp = client.post("/login", data={"username": username, "password": password})
    assert resp.status_code == 200, resp.text


def test_requires_login(client):
    assert client.get("/api/permits").status_code == 401
    assert client.post("/login", data={"username": "worker", "password": "nope"}).status_code == 403


def test_full_happy_path(client):
    login(client, "worker", "password5")
    created = client.post(
        "/api/permits",
        data={
            "permit_type": "confined_space",
            "location": "Tank T-104",
            "department_head": "dhead",
            "maintenance_approver": "maint",
            "performer_name": "worker",
        },
    )
    assert created.status_code == 201
    permit = created.json()
    pid = permit["id"]
    assert permit["status"] == "draft"
    assert permit["capabilities"] == ["creator", "performer"]
    assert [a["id"] for a in permit["availableActions"]] == ["submit"]

    # Unconfirmed actions are not applied.
    resp = client.post(f"/api/permits/{pid}/transitions/submit")
    assert resp.status_code == 428
    assert resp.json()["confirmationMessage"]
    assert client.get(f"/api/permits/{pid}").json()["status"] == "draft"

    resp = client.post(f"/api/permits/{pid}/transitions/submit", data={"confirmed": "true"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"
    assert client.get(f"/api/permits/{pid}/history").json()[-1]["status"] == "pending"

    # The requestor is not an approver.
    assert client.post(f"/api/permits/{pid}/approvals/department_head").status_code == 403

    login(client, "dhead", "password1")
    body = client.post(f"/api/permits/{pid}/approvals/department_head").json()
    assert body["status"] == "pending"
    assert body["pendingApprovals"] == ["maintenance"]

    login(client, "maint", "password3")
    body = client.post(f"/api/permits/{pid}/approvals/maintenance").json()
    assert body["status"] == "approved"
    assert body["allApprovalsReceived"] is True

    resp = client.post(f"/api/permits/{pid}/transitions/activate", data={"confirmed": "true"})
    assert resp.json()["status"] == "active"

    login(client, "worker", "password5")
    resp = client.post(f"/api/permits/{pid}/transitions/complete", data={"confirmed": "true"})
    assert resp.json()["status"] == "completed"
    assert resp.json()["availableActions"] == []

    history = [h["status"] for h in client.get(f"/api/permits/{pid}/history").json()]
    assert history == ["draft", "pending", "approved", "active", "completed"]


def test_transition_errors(client):
    login(client, "worker", "password5")
    pid = client.post("/api/permits", data={"location": "Roof"}).json()["id"]

    assert client.post(f"/api/permits/{pid}/transitions/complete", data={"confirmed": "true"}).status_code == 409
    assert client.post("/api/permits/999/transitions/submit", data={"confirmed": "true"}).status_code == 404

    login(client, "super", "password4")
    assert client.post(f"/api/permits/{pid}/transitions/submit", data={"confirmed": "true"}).status_code == 403


def test_reject_needs_comment(client):
    login(client, "worker", "password5")
    pid = client.post("/api/permits", data={"location": "Roof"}).json()["id"]
    client.post(f"/api/permits/{pid}/transitions/submit", data={"confirmed": "true"})

    login(client, "safety", "password2")
    assert client.post(f"/api/permits/{pid}/transitions/reject", data={"confirmed": "true"}).status_code == 400
    resp = client.post(
        f"/api/permits/{pid}/transitions/reject",
        data={"confirmed": "true", "comment": "Missing isolation plan"},
    )
    assert resp.json()["status"] == "rejected"

    login(client, "worker", "password5")
    actions = client.get(f"/api/permits/{pid}/actions").json()
    assert [(a["id"], a["label"], a["requiresConfirmation"]) for a in actions] == [("withdraw", "Revise", False)]
    assert client.post(f"/api/permits/{pid}/transitions/withdraw").json()["status"] == "draft"


def test_edit_rules(client):
    login(client, "worker", "password5")
    pid = client.post("/api/permits", data={"location": "Roof"}).json()["id"]
    assert client.patch(f"/api/permits/{pid}", data={"location": "Roof, north side"}).json()["location"] == "Roof, north side"
    client.post(f"/api/permits/{pid}/transitions/submit", data={"confirmed": "true"})
    assert client.patch(f"/api/permits/{pid}", data={"location": "Elsewhere"}).status_code == 403

    login(client, "admin", "admin")
    assert client.patch(f"/api/permits/{pid}", data={"requestor_name": "admin"}).status_code == 409
    assert client.patch(f"/api/permits/{pid}", data={"location": "Elsewhere"}).status_code == 200


def test_non_admin_files_under_own_name(client):
    login(client, "worker", "password5")
    body = client.post("/api/permits", data={"requestor_name": "dhead"}).json()
    assert body["requestorName"] == "worker"


def test_admin_operations(client):
    login(client, "worker", "password5")
    pid = client.post("/api/permits", data={}).json()["id"]
    assert client.delete(f"/api/permits/{pid}").status_code == 403
    assert client.patch("/api/users/worker/role", data={"role": "supervisor"}).status_code == 403

    login(client, "admin", "admin")
    assert client.patch("/api/users/worker/role", data={"role": "supervisor"}).json()["role"] == "supervisor"
    assert client.post("/api/users", data={"username": "newbie", "role": "employee", "password": "x"}).status_code == 201
    assert client.post("/api/users", data={"username": "newbie", "role": "employee", "password": "x"}).status_code == 409
    assert client.delete(f"/api/permits/{pid}").status_code == 200
    assert client.get(f"/api/permits/{pid}").status_code == 404
    assert any(e["action"] == "delete" for e in client.get("/audit").json())


def test_analyze_without_webhook(client, monkeypatch):
    monkeypatch.setattr(config, "ANALYSIS_WEBHOOK_URL", "")
    login(client, "worker", "password5")
    pid = client.post("/api/permits", data={}).json()["id"]
    assert client.post(f"/api/permits/{pid}/analyze").status_code == 400
    assert client.get("/_analysis/status").json()["ok"] is False


def test_analyze_dispatch_failure_maps_to_502(client, monkeypatch):
    def failing(permit, webhook_url=None):
        raise analysis.AnalysisFailed("Analysis webhook error 500: boom")

    monkeypatch.setattr(analysis, "send_for_analysis", failing)
    login(client, "worker", "password5")
    pid = client.post("/api/permits", data={}).json()["id"]
    resp = client.post(f"/api/permits/{pid}/analyze")
    assert resp.status_code == 502
    assert "boom" in resp.json()["detail"]


def test_requestor_cannot_reassign_own_draft(client):
    login(client, "worker", "password5")
    pid = client.post("/api/permits", data={"location": "Roof"}).json()["id"]

    body = client.patch(f"/api/permits/{pid}", data={"requestor_name": "dhead", "location": "Roof, east"}).json()
    assert body["requestorName"] == "worker"
    assert body["location"] == "Roof, east"
    assert body["canEdit"] is True

    login(client, "admin", "admin")
    assert client.patch(f"/api/permits/{pid}", data={"requestor_name": "dhead"}).json()["requestorName"] == "dhead"


def test_admin_resets_password(client):
    login(client, "worker", "password5")
    assert client.patch("/api/users/worker/password", data={"password": "mine"}).status_code == 403

    login(client, "admin", "admin")
    assert client.patch("/api/users/worker/password", data={"password": ""}).status_code == 400
    assert client.patch("/api/users/ghost/password", data={"password": "x"}).status_code == 404
    assert client.patch("/api/users/worker/password", data={"password": "fresh-pw"}).json() == {"ok": True}

    assert client.post("/login", data={"username": "worker", "password": "password5"}).status_code == 403
    login(client, "worker", "fresh-pw")
