"""Error payload shape shared by every endpoint."""
from fastapi.testclient import TestClient

from assetgate.core import database
from assetgate.core.auth import get_current_user
from assetgate.main import app


def test_error_payload_carries_request_id(client):
    resp = client.get("/downloads/status", headers={"x-request-id": "req-abc"})

    body = resp.json()
    assert resp.status_code == 401
    assert body["error"]["request_id"] == "req-abc"
    assert body["detail"] == body["error"]["message"]
    assert resp.headers["x-request-id"] == "req-abc"


def test_unknown_route_is_not_found(client):
    resp = client.get("/nope")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_storage_unavailable_detail_hidden_in_production(client, user, auth_headers, test_settings, monkeypatch):
    headers = auth_headers(user)
    monkeypatch.setattr(test_settings, "ENV", "production")
    database.dispose_engine()
    database.init_engine("sqlite:////nonexistent-dir/assetgate.db")

    resp = client.get("/downloads/status", headers=headers)

    assert resp.status_code == 500
    assert resp.json()["error"] == {
        "code": "storage_unavailable",
        "message": "Service temporarily unavailable",
        "request_id": resp.headers["x-request-id"],
    }


def test_unhandled_exception_is_internal_error(db):
    def _explode():
        raise RuntimeError("boom")

    app.dependency_overrides[get_current_user] = _explode
    try:
        resp = TestClient(app, raise_server_exceptions=False).get("/downloads/status")
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"
