"""Tests for the error envelope format and outcome translation.

Error responses look like:
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
from fastapi.testclient import TestClient
from pydantic import ValidationError

from accountcore import app as app_module
from accountcore.api.error_handling import (
    _error_code_for_status,
    _error_response,
    outcome_response,
)
from accountcore.api.schemas import Envelope, ErrorBody
from accountcore.service.outcomes import Outcome, OutcomeKind, outcome_from_error
from accountcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError as InputError,
)


def _body(response):
    return json.loads(response.body)


class TestErrorBody:
    def test_accepts_stable_codes(self):
        for code in ["invalid_token", "expired_token", "conflict", "server_error"]:
            assert ErrorBody(code=code, message="m").code == code

    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


class TestOutcomeTranslation:
    @pytest.mark.parametrize(
        "kind,status,code",
        [
            (OutcomeKind.INVALID_INPUT, 400, "validation_error"),
            (OutcomeKind.NOT_AUTHORIZED, 401, "unauthorized"),
            (OutcomeKind.INVALID_TOKEN, 401, "invalid_token"),
            (OutcomeKind.EXPIRED_TOKEN, 401, "expired_token"),
            (OutcomeKind.NOT_FOUND, 404, "not_found"),
            (OutcomeKind.CONFLICT, 409, "conflict"),
            (OutcomeKind.INTERNAL_ERROR, 500, "server_error"),
        ],
    )
    def test_failure_status_and_code(self, kind, status, code):
        response = outcome_response(Outcome.failure(kind, "went wrong", detail="internal"))
        body = _body(response)

        assert response.status_code == status
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["error"]["message"] == "went wrong"
        assert "internal" not in response.body.decode()

    def test_success_carries_payload_and_delivery(self):
        outcome = Outcome.success({"account": {"id": "a"}}, email_delivered=False)
        response = outcome_response(outcome, success_status=201)
        body = _body(response)

        assert response.status_code == 201
        assert body["status"] == "ok"
        assert body["data"] == {"account": {"id": "a"}, "email_delivered": False}
        assert body["error"] is None

    def test_success_without_email_omits_delivery(self):
        body = _body(outcome_response(Outcome.success({"logged_out": True})))
        assert body["data"] == {"logged_out": True}

    @pytest.mark.parametrize(
        "exc,kind",
        [
            (InputError("bad"), OutcomeKind.INVALID_INPUT),
            (AuthenticationError("no"), OutcomeKind.NOT_AUTHORIZED),
            (InvalidTokenError("no", detail={"reason": "token_not_found"}), OutcomeKind.INVALID_TOKEN),
            (ExpiredTokenError("old"), OutcomeKind.EXPIRED_TOKEN),
            (NotFoundError("gone"), OutcomeKind.NOT_FOUND),
            (ConflictError("taken"), OutcomeKind.CONFLICT),
        ],
    )
    def test_outcome_from_error(self, exc, kind):
        outcome = outcome_from_error(exc)
        assert outcome.kind is kind
        assert outcome.reason == exc.message
        assert outcome.detail == exc.detail.get("reason")


class TestErrorResponse:
    def test_status_code_mapping(self):
        assert _error_code_for_status(403) == "forbidden"
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        body = _body(_error_response(404, "missing", {"id": "x"}))
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}


class TestHandlersOverHttp:
    @pytest.fixture
    def client(self):
        return TestClient(app_module.app)

    def test_request_validation_is_enveloped(self, client):
        response = client.post("/v1/auth/login", json={"username_or_email": "alice"})
        body = response.json()

        assert response.status_code == 400
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_unknown_fields_rejected(self, client):
        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": "x", "extra": "field"}
        )
        assert response.status_code == 400

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/v1/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_request_id_round_trip(self, client):
        response = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": "bogus"},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"
        assert response.json()["error"]["code"] == "invalid_token"

    def test_storage_error_is_generic_500(self, client, monkeypatch):
        from accountcore.service.runtime import get_runtime
        from accountcore.storage.errors import StorageError

        runtime = get_runtime()

        def broken(*args, **kwargs):
            raise StorageError("account directory unavailable")

        monkeypatch.setattr(runtime.directory, "find_by_token", broken)
        response = client.post("/v1/auth/refresh", json={"refresh_token": "anything"})

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
