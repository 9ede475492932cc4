"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<correlation id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

import propauth.app as app_module
from propauth.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, error_response
from propauth.api.schemas import Envelope, ErrorBody
from propauth.service import errors


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="invalid credentials")

        assert error.details is None

    def test_details_may_be_a_list(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"loc": ["body"]}])

        assert len(error.details) == 1

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_every_service_error_code_is_valid(self):
        """Each exported exception maps onto an accepted envelope code."""
        for name in errors.__all__:
            cls = getattr(errors, name)
            ErrorBody(code=cls.error_code, message=name)


class TestEnvelope:
    def test_status_values(self):
        assert Envelope(status="ok").status == "ok"
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id


class TestErrorResponse:
    def test_status_mapping(self):
        assert _STATUS_TO_CODE[423] == "account_locked"
        assert _error_code_for_status(503) == "service_unavailable"
        assert _error_code_for_status(418) == "server_error"

    def test_builds_envelope(self):
        response = error_response(404, "missing", {"id": "x"})
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}

    def test_explicit_code_and_headers(self):
        response = error_response(429, "slow down", code="rate_limited", headers={"Retry-After": "5"})

        assert response.headers["Retry-After"] == "5"


class TestHTTPErrors:
    def test_request_validation_is_422(self, client):
        response = client.post("/v1/auth/login", json={"email": "not-an-email"})

        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)
        assert all({"loc", "msg", "type"} <= set(item) for item in body["error"]["details"])

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/v1/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_correlation_id_round_trip(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-abc-123"})

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-abc-123"
        assert response.json()["request_id"] == "req-abc-123"

    def test_correlation_id_generated(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Request-ID"]

    def test_directory_outage_is_503(self, client, monkeypatch):
        from propauth.service.runtime import get_runtime
        from propauth.storage.errors import DirectoryUnavailable

        def _down(*args, **kwargs):
            raise DirectoryUnavailable()

        monkeypatch.setattr(get_runtime().store, "get_user_by_email", _down)

        response = client.post(
            "/v1/auth/login", json={"email": "someone@example.com", "password": "Whatever#1"}
        )

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "service_unavailable"
        assert error["details"]["retryable"] is True
