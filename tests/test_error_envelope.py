"""Error envelope format and exception-to-envelope mapping.

Every error response has the shape::

    {
        "status": "error",
        "error": {"code": "<stable_code>", "message": "...", "details": ...},
        "request_id": "<id>"
    }
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from kanari.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from kanari.api.schemas import Envelope, ErrorBody
from kanari.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UpstreamError,
    UpstreamTimeoutError,
)
from kanari.service.fs import PathTraversalError
from kanari.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_domain_codes_accepted(self):
        for code in ("chat_not_found", "paid_model_requires_user_key", "openrouter_stream_timeout"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="totally_made_up", message="x")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert envelope.request_id

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many requests", details={"retry_after": 60}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (502, "openrouter_error"),
            (504, "openrouter_stream_timeout"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_statuses(self):
        assert _error_code_for_status(418) == "validation_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"] == {"code": "not_found", "message": "Not found", "details": None}
        assert data["request_id"]


@pytest.fixture
def raising_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/not-found")
    async def not_found():
        raise NotFoundError("chat not found", error_code="chat_not_found")

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("need a key", error_code="paid_model_requires_user_key")

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("busy", error_code="chat_stream_in_progress")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/traversal")
    async def traversal():
        raise PathTraversalError("path traversal detected")

    @app.get("/upstream")
    async def upstream():
        raise UpstreamError("openrouter_error: 500 boom")

    @app.get("/timeout")
    async def timeout():
        raise UpstreamTimeoutError("upstream stream timed out")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize(
    "path,status,code",
    [
        ("/not-found", 404, "chat_not_found"),
        ("/forbidden", 403, "paid_model_requires_user_key"),
        ("/conflict", 409, "chat_stream_in_progress"),
        ("/constraint", 409, "conflict"),
        ("/traversal", 400, "validation_error"),
        ("/upstream", 502, "openrouter_error"),
        ("/timeout", 504, "openrouter_stream_timeout"),
        ("/boom", 500, "server_error"),
    ],
)
def test_exceptions_map_to_envelope(raising_client, path, status, code):
    response = raising_client.get(path)
    assert response.status_code == status
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code


def test_constraint_details_are_returned(raising_client):
    body = raising_client.get("/constraint").json()
    assert body["error"]["details"] == {"field": "email"}


def test_uncaught_error_hides_message(raising_client):
    body = raising_client.get("/boom").json()
    assert "secret internals" not in body["error"]["message"]
