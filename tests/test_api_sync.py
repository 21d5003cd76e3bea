from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from apps.api.deps import get_current_user, get_orchestrator
from apps.api.main import app
from apps.api.schemas import SyncHistoryResponse, TriggerRequest, TriggerResponse
from packages.config import SyncSettings
from tests.fixtures.build_fixture_db import build_fixture_db
from tests.fixtures.fake_upstream import Harness, make_activity


@pytest.fixture()
def harness(tmp_path: Path):
    db_path = tmp_path / "fixture.db"
    build_fixture_db(db_path)
    settings = SyncSettings(db_path=db_path, strava_client_id="cid", strava_client_secret="csecret")
    return Harness(db_path, [make_activity(i) for i in range(120)], settings=settings)


@pytest.fixture()
def client(harness):
    app.dependency_overrides[get_orchestrator] = lambda: harness.orchestrator
    app.dependency_overrides[get_current_user] = lambda: {"id": 1, "username": "u1", "auth_disabled": False}
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def test_start_returns_trigger_contract(client):
    resp = client.post("/api/v1/sync", json={"action": "start", "userId": 1})
    assert resp.status_code == 200
    body = resp.json()
    TriggerResponse.model_validate(body)
    assert set(body) >= {"sessionId", "status", "progress", "nextCursor"}
    assert body["status"] == "fetching"
    assert body["progress"]["saved"] == 50
    assert body["nextCursor"] == {"page": 2, "per_page": 50}
    assert resp.headers.get("x-request-id")


def test_user_defaults_to_caller(client):
    resp = client.post("/api/v1/sync", json={"action": "start", "window": {"days": 3}})
    assert resp.status_code == 200


def test_resume_and_status_round_trip(client):
    session_id = client.post("/api/v1/sync", json={"action": "start"}).json()["sessionId"]

    resumed = client.post("/api/v1/sync", json={"action": "resume", "sessionId": session_id})
    assert resumed.status_code == 200
    assert resumed.json()["nextCursor"] == {"page": 3, "per_page": 50}

    status = client.get(f"/api/v1/sync/{session_id}")
    assert status.status_code == 200
    assert status.json()["progress"]["saved"] == 100

    client.post("/api/v1/sync", json={"action": "resume", "sessionId": session_id})
    done = client.post("/api/v1/sync", json={"action": "status", "sessionId": session_id}).json()
    assert done["status"] == "completed"
    assert done["nextCursor"] is None


def test_second_start_conflicts(client):
    first = client.post("/api/v1/sync", json={"action": "start"}).json()
    resp = client.post("/api/v1/sync", json={"action": "start"})
    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["code"] == "active_session_exists"
    assert error["details"]["session_id"] == first["sessionId"]


def test_cancel_then_resume_conflicts(client):
    session_id = client.post("/api/v1/sync", json={"action": "start"}).json()["sessionId"]
    cancelled = client.post("/api/v1/sync", json={"action": "cancel", "sessionId": session_id})
    assert cancelled.json()["status"] == "cancelled"
    resp = client.post("/api/v1/sync", json={"action": "resume", "sessionId": session_id})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "invalid_session_state"


def test_unknown_session_is_404(client):
    resp = client.get("/api/v1/sync/does-not-exist")
    assert resp.status_code == 404
    body = resp.json()
    assert body["error"]["code"] == "session_not_found"
    assert body["error"]["request_id"]


def test_other_users_sync_is_forbidden(client):
    resp = client.post("/api/v1/sync", json={"action": "start", "userId": 2})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "http_403"


def test_bad_requests_are_rejected(client):
    assert client.post("/api/v1/sync", json={"action": "explode"}).status_code == 422
    resp = client.post("/api/v1/sync", json={"action": "resume"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_request"
    resp = client.post("/api/v1/sync", json={"action": "start", "window": {"after": 20, "before": 10}})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_window"


def test_history_and_cleanup(client):
    client.post("/api/v1/sync", json={"action": "start"})
    resp = client.get("/api/v1/sync/history?limit=5")
    assert resp.status_code == 200
    history = SyncHistoryResponse.model_validate(resp.json())
    assert len(history.sessions) == 1
    assert history.sessions[0].status == "fetching"

    cleaned = client.post("/api/v1/sync/cleanup", json={"keep_days": 0})
    assert cleaned.status_code == 200
    assert cleaned.json()["deleted"] == 0


def test_health_and_metrics(client):
    client.post("/api/v1/sync", json={"action": "start"})
    health = client.get("/api/v1/health").json()
    assert health["status"] == "ok"
    assert health["active_sessions"] == 1

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "sync_chunks_total" in metrics.text
    assert 'sync_stage_duration_seconds_sum{stage="fetching"}' in metrics.text


def test_versioned_routes_exist():
    paths = {route.path for route in app.routes}
    for prefix in ("", "/api", "/api/v1"):
        assert f"{prefix}/sync" in paths
        assert f"{prefix}/sync/{{session_id}}" in paths
        assert f"{prefix}/health" in paths


def test_trigger_request_accepts_camel_case_and_windows():
    request = TriggerRequest.model_validate(
        {"action": "start", "userId": 7, "window": {"after": "2026-01-01T00:00:00Z", "before": 1767312000}}
    )
    assert request.user_id == 7
    assert request.to_trigger(7)["window"] == {"after": "2026-01-01T00:00:00Z", "before": 1767312000}
    assert TriggerRequest.model_validate({"action": "start", "window": "incremental"}).to_trigger(1)["window"] == "incremental"
