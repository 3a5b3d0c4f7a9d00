"""Tests for normalized error responses."""

from fastapi.testclient import TestClient

from contractor_core.core.auth import issue_session_token
from contractor_core.features.identity.service import ensure_identity
from contractor_core.main import app


def _assert_shape(resp, status, code):
    assert resp.status_code == status
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert rid
    assert body["error"]["code"] == code
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]
    return body


def test_validation_error_has_standard_shape(otp):
    client = TestClient(app)
    resp = client.post("/api/auth/otp/send", json={"phone": "not-a-phone"})
    _assert_shape(resp, 400, "invalid_phone")


def test_unauthorized_normalized():
    client = TestClient(app)
    resp = client.get("/api/profile", headers={"Authorization": "Bearer garbage"})
    body = _assert_shape(resp, 401, "unauthorized")
    assert body["error"]["message"] == "Invalid session token"


def test_not_found_normalized():
    identity = ensure_identity("+15551234567")
    client = TestClient(app)
    resp = client.get("/api/profile", headers={"Authorization": f"Bearer {issue_session_token(identity.id)}"})
    _assert_shape(resp, 404, "profile_not_found")


def test_verify_failure_normalized(otp):
    client = TestClient(app)
    resp = client.post("/api/auth/otp/verify", json={"phone": "+15551234567", "code": "000000"})
    body = _assert_shape(resp, 400, "invalid_code")
    assert body["error"]["message"] == "Invalid or expired code"


def test_provided_request_id_is_echoed():
    client = TestClient(app)
    resp = client.get("/api/profile", headers={"X-Request-Id": "test-rid-123"})
    assert resp.headers.get("x-request-id") == "test-rid-123"
    assert resp.json()["error"]["request_id"] == "test-rid-123"
