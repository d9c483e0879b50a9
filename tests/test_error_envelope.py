"""Tests for the error envelope format and exception handlers.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from chatrelay.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from chatrelay.api.routes import _http_error
from chatrelay.api.schemas import Envelope, ErrorBody
from chatrelay.service.errors import (
    CompressionConflictError,
    ContextWindowNotConfiguredError,
    NotFoundError,
    ProviderRequestError,
    ProviderTimeoutError,
    QuotaExceededError,
)
from chatrelay.storage.errors import DuplicateKey


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="unauthorized", message="Missing caller identity")
        assert error.code == "unauthorized"
        assert error.message == "Missing caller identity"
        assert error.details is None

    def test_error_body_with_details_list(self):
        """ErrorBody accepts list details."""
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "content"}, {"field": "images"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_unknown_code_raises(self):
        """Only the stable code set is accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_provider_codes_accepted(self):
        assert ErrorBody(code="provider_error", message="upstream").code == "provider_error"
        assert ErrorBody(code="configuration_error", message="cfg").code == "configuration_error"


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"content": "hi"})
        assert envelope.status == "ok"
        assert envelope.data == {"content": "hi"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Daily quota exhausted", details={"remaining": 0}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["code"] == "rate_limited"
        assert dumped["error"]["details"]["remaining"] == 0
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
            (502, "provider_error"),
            (504, "provider_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapped_codes_are_valid_error_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    """Tests for the _error_response helper function."""

    def test_error_response_basic(self):
        response = _error_response(401, "missing caller identity")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(500, "no window", code="configuration_error")
        assert json.loads(response.body.decode())["error"]["code"] == "configuration_error"

    def test_http_error_helper_shape(self):
        exc = _http_error("not_found", "trace not found", status_code=404, details={"id": "t"})
        assert exc.status_code == 404
        assert exc.detail == {
            "status": "error",
            "error": {"code": "not_found", "message": "trace not found", "details": {"id": "t"}},
        }


# =============================================================================
# Handlers wired into an application
# =============================================================================


class _Body(BaseModel):
    value: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/quota")
    async def quota():
        raise QuotaExceededError({"usedCount": 5, "remaining": 0}, required_login=True)

    @app.get("/provider")
    async def provider():
        raise ProviderRequestError(500, reason="Internal Server Error")

    @app.get("/timeout")
    async def timeout():
        raise ProviderTimeoutError("Provider request timed out", detail={"timeout_ms": 10})

    @app.get("/missing")
    async def missing():
        raise NotFoundError("Chat session not found", detail={"session_id": "s"})

    @app.get("/window")
    async def window():
        raise ContextWindowNotConfiguredError("Context window is not configured")

    @app.get("/conflict")
    async def conflict():
        raise CompressionConflictError("Messages were already compressed")

    @app.get("/duplicate")
    async def duplicate():
        raise DuplicateKey("client message id already used", {"client_message_id": "c"})

    @app.get("/http")
    async def http():
        raise _http_error("unauthorized", "unknown user", status_code=401)

    @app.post("/validate")
    async def validate(body: _Body):
        return body

    @app.get("/crash")
    async def crash():
        raise RuntimeError("password=hunter2 leaked")

    return TestClient(app, raise_server_exceptions=False)


class TestRegisteredHandlers:
    """Tests for envelope-shaped responses from real routes."""

    def test_quota_exceeded(self, client):
        response = client.get("/quota")
        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["required_login"] is True
        assert error["details"]["quota"]["remaining"] == 0

    def test_provider_failure(self, client):
        response = client.get("/provider")
        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "provider_error"
        assert error["message"] == "AI API request failed: 500 Internal Server Error"
        assert error["details"] == {"upstream_status": 500}

    def test_provider_timeout(self, client):
        response = client.get("/timeout")
        assert response.status_code == 504
        assert response.json()["error"]["code"] == "provider_error"

    def test_not_found(self, client):
        response = client.get("/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_configuration_error(self, client):
        response = client.get("/window")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "configuration_error"

    def test_compression_conflict(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_storage_constraint_is_conflict(self, client):
        response = client.get("/duplicate")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"client_message_id": "c"}

    def test_http_exception_passthrough(self, client):
        response = client.get("/http")
        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "unknown user",
            "details": None,
        }

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/no-such-route")
        assert response.status_code == 404
        assert response.json()["status"] == "error"
        assert response.json()["error"] == {
            "code": "not_found",
            "message": "Not Found",
            "details": None,
        }

    def test_wrong_method_is_enveloped(self, client):
        response = client.delete("/quota")
        assert response.status_code == 405
        assert response.json()["error"]["code"] == "validation_error"

    def test_request_validation(self, client):
        response = client.post("/validate", json={"value": "nope"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "value"]

    def test_unhandled_exception_is_masked(self, client):
        response = client.get("/crash")
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert "hunter2" not in response.text
