"""Integration tests for the FastAPI gateway.

Uses TestClient against the in-memory database from conftest.
"""
from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from epicscore.config import Settings, get_settings


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using the in-memory database and a fresh router."""
    _, TestSession = test_db
    monkeypatch.setenv("EPICSCORE_HOME", str(tmp_path))
    monkeypatch.delenv("EPICSCORE_DB", raising=False)
    monkeypatch.delenv("EPICSCORE_CONFIG", raising=False)
    get_settings.cache_clear()

    from epicscore.app import app, build_router, db_session, get_app_settings, get_router

    settings = Settings(admins=["admin"], super_admins=["boss"], effort_max=100)
    router = build_router(settings, session_factory=TestSession)

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[get_router] = lambda: router
    app.dependency_overrides[get_app_settings] = lambda: settings
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()
    get_settings.cache_clear()


def _user(handle: str) -> dict:
    return {"handle": handle, "first_name": handle.title()}


class TestChatEndpoints:
    def test_start(self, client):
        resp = client.post("/api/chats/42/command", json={"user": _user("ann"), "command": "/start"})
        assert resp.status_code == 200
        replies = resp.json()["replies"]
        assert replies[0]["text"].startswith("Hello, Ann!")
        assert replies[0]["choices"] == []

    def test_empty_command_rejected(self, client):
        resp = client.post("/api/chats/42/command", json={"user": _user("ann"), "command": "/"})
        assert resp.status_code == 422

    def test_picker_round_trip(self, client, crew):
        resp = client.post("/api/chats/7/command", json={"user": _user("admin"), "command": "assignrole"})
        rows = resp.json()["replies"][0]["choices"]
        token = next(row[0]["token"] for row in rows if "Bob" in row[0]["label"])
        assert len(token) <= 64

        resp = client.post("/api/chats/7/click", json={"user": _user("admin"), "token": token})
        rows = resp.json()["replies"][0]["choices"]
        analyst = next(row[0]["token"] for row in rows if row[0]["label"] == "Analyst")

        resp = client.post("/api/chats/7/click", json={"user": _user("admin"), "token": analyst})
        assert resp.json()["replies"][0]["text"] == "Role 'Analyst' assigned to Bob Brown."

        resp = client.get("/api/participants")
        bob = next(p for p in resp.json() if p["handle"] == "bob")
        assert bob["roles"] == ["Analyst", "Backend developer"]
        assert bob["teams"] == ["Core"]

    def test_invalid_click(self, client):
        resp = client.post("/api/chats/7/click", json={"user": _user("ann"), "token": "garbage"})
        assert resp.status_code == 200
        assert resp.json()["replies"][0]["text"] == "This button is no longer valid."

    def test_text_without_flow(self, client):
        resp = client.post("/api/chats/7/text", json={"user": _user("ann"), "text": "hi"})
        assert resp.json() == {"replies": []}


class TestReadEndpoints:
    def test_teams(self, client, crew):
        resp = client.get("/api/teams")
        assert resp.status_code == 200
        (team,) = resp.json()
        assert team["name"] == "Core"
        assert team["member_count"] == 3

    def test_epics_filter(self, client, crew, open_epic):
        open_epic("EP-1")
        open_epic("EP-2", start=False)
        resp = client.get("/api/epics", params={"status": "NEW"})
        assert [e["number"] for e in resp.json()] == ["EP-2"]
        resp = client.get("/api/epics", params={"team_id": str(crew.team_id), "status": "IN_PROGRESS"})
        assert [e["number"] for e in resp.json()] == ["EP-1"]
        assert resp.json()[0]["team"] == "Core"

    def test_bad_status_filter(self, client):
        assert client.get("/api/epics", params={"status": "DONE"}).status_code == 422

    def test_unknown_epic(self, client):
        resp = client.get(f"/api/epics/{uuid.uuid4()}/results")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]


class TestScoringEndpoints:
    def test_full_round(self, client, crew, open_epic):
        epic_id, (risk_id,) = open_epic(risks=("Vendor lock-in",))

        for handle, value in (("alice", 10), ("bob", 10)):
            resp = client.post(f"/api/epics/{epic_id}/effort", json={"user": handle, "value": value})
            assert resp.status_code == 200
            assert resp.json()["completion"]["outcome"] == "waiting_for_submissions"
        resp = client.post(f"/api/epics/{epic_id}/effort", json={"user": "carol", "value": 5})
        assert resp.json() == {
            "created": True,
            "completion": {
                "outcome": "waiting_for_risks", "target_id": str(epic_id), "score": None, "cascade": None,
            },
        }

        status = client.get(f"/api/epics/{epic_id}/status").json()
        assert status["missing_effort"] == []
        assert len(status["risks"][0]["missing"]) == 3

        for handle in ("alice", "bob"):
            client.post(f"/api/risks/{risk_id}/assessment", json={"user": handle, "probability": 3, "impact": 4})
        resp = client.post(f"/api/risks/{risk_id}/assessment", json={"user": "carol", "probability": 3, "impact": 4})
        body = resp.json()
        assert body["completion"]["outcome"] == "completed"
        assert body["completion"]["score"] == 12
        assert body["completion"]["cascade"]["outcome"] == "completed"
        # 15 * 1.20
        assert body["completion"]["cascade"]["score"] == 18

        results = client.get(f"/api/epics/{epic_id}/results").json()
        assert results["status"] == "COMPLETE"
        assert results["final_score"] == 18
        assert results["risks"][0]["coefficient"] == 1.2
        assert {rs["role"]: rs["weighted_avg"] for rs in results["role_scores"]} == {
            "Backend developer": 10, "QA engineer": 5,
        }

    def test_resubmission(self, client, crew, open_epic):
        epic_id, _ = open_epic()
        client.post(f"/api/epics/{epic_id}/effort", json={"user": "alice", "value": 10})
        resp = client.post(f"/api/epics/{epic_id}/effort", json={"user": "alice", "value": 12})
        assert resp.json()["created"] is False

    def test_configured_effort_ceiling(self, client, crew, open_epic):
        epic_id, _ = open_epic()
        resp = client.post(f"/api/epics/{epic_id}/effort", json={"user": "alice", "value": 101})
        assert resp.status_code == 400
        assert "0 to 100" in resp.json()["detail"]

    def test_epic_not_open(self, client, crew, open_epic):
        epic_id, _ = open_epic(start=False)
        resp = client.post(f"/api/epics/{epic_id}/effort", json={"user": "alice", "value": 1})
        assert resp.status_code == 400

    def test_unknown_user(self, client, crew, open_epic):
        epic_id, _ = open_epic()
        resp = client.post(f"/api/epics/{epic_id}/effort", json={"user": "nobody", "value": 1})
        assert resp.status_code == 404

    def test_risk_level_out_of_range(self, client, crew, open_epic):
        _, (risk_id,) = open_epic(risks=("R",))
        resp = client.post(f"/api/risks/{risk_id}/assessment", json={"user": "alice", "probability": 5, "impact": 1})
        assert resp.status_code == 400
