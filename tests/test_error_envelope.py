"""Tests for the uniform error envelope.

Every failure renders as::

    {"error": {"message", "code", "statusCode", "requestId", "details"?, "stack"?}}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from lettera.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from lettera.api.schemas import ErrorBody
from lettera.config import reset_settings_cache
from lettera.logging import set_correlation_id
from lettera.service.errors import (
    DependencyError,
    EmailDispatchError,
    InvalidCodeError,
    ServiceError,
    WeakPasswordError,
)
from lettera.storage.errors import ConstraintViolation, StoreUnavailable


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/invalid-code")
    async def invalid_code():
        raise InvalidCodeError()

    @app.get("/weak")
    async def weak():
        raise WeakPasswordError(detail={"violations": ["too short"]})

    @app.get("/dispatch")
    async def dispatch():
        raise EmailDispatchError(detail={"email": "a@x.com", "resendAvailable": True})

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/db-down")
    async def db_down():
        raise StoreUnavailable("database unavailable")

    @app.get("/dependency-down")
    async def dependency_down():
        raise DependencyError()

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.get("/needs-int/{value}")
    async def needs_int(value: int):
        return {"value": value}

    return app


@pytest.fixture
def client():
    return TestClient(_build_app(), raise_server_exceptions=False)


class TestErrorBody:
    def test_serialises_camel_case(self):
        body = ErrorBody(message="m", code="X", status_code=400, request_id="r1")
        dumped = body.model_dump(by_alias=True, exclude_none=True)
        assert dumped == {"message": "m", "code": "X", "statusCode": 400, "requestId": "r1"}

    def test_status_code_mapping(self):
        assert _error_code_for_status(404) == "NOT_FOUND"
        assert _error_code_for_status(418) == "INTERNAL_SERVER_ERROR"
        assert _STATUS_TO_CODE[400] == "VALIDATION_ERROR"

    def test_error_response_carries_request_id(self):
        set_correlation_id("req-123")
        response = _error_response(400, "bad", code="VALIDATION_ERROR")
        body = json.loads(response.body)
        assert body["error"]["requestId"] == "req-123"
        assert body["error"]["statusCode"] == 400
        assert "details" not in body["error"]


class TestHandlers:
    def test_service_error(self, client):
        response = client.get("/invalid-code")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_CODE"
        assert error["statusCode"] == 400
        assert error["message"] == "Invalid verification code"
        assert "stack" not in error

    def test_service_error_details(self, client):
        response = client.get("/weak")
        assert response.json()["error"]["details"] == {"violations": ["too short"]}

    def test_dispatch_error_is_502(self, client):
        response = client.get("/dispatch")
        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "EMAIL_DISPATCH_FAILED"
        assert error["details"]["resendAvailable"] is True

    def test_constraint_violation_is_409(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_store_unavailable_is_503(self, client):
        response = client.get("/db-down")
        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "DATABASE_UNAVAILABLE"
        assert error["message"] == "Database is unavailable"
        assert "database unavailable" not in json.dumps(error)

    def test_dependency_error_is_503(self, client):
        response = client.get("/dependency-down")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"

    def test_request_validation_is_400(self, client):
        response = client.get("/needs-int/abc")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"][0]["field"] == "value"

    def test_unknown_route_is_404(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_unexpected_error_outside_production_has_stack(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_SERVER_ERROR"
        assert error["message"] == "Internal server error"
        assert "RuntimeError" in error["stack"]

    def test_unexpected_error_in_production_hides_stack(self, client, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        reset_settings_cache()
        response = client.get("/boom")
        error = response.json()["error"]
        assert response.status_code == 500
        assert "stack" not in error
        assert "secret internals" not in response.text


def test_service_error_overrides():
    exc = ServiceError("custom", status_code=418, error_code="TEAPOT", detail={"a": 1})
    assert exc.status_code == 418
    assert exc.error_code == "TEAPOT"
    assert exc.detail == {"a": 1}
    assert str(exc) == "custom"
