"""Tests for the global exception handlers."""

from unittest.mock import patch

import asyncpg
import pytest

from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from tokenchat.api.middleware.exception_handlers import (
    AppException,
    AuthenticationError,
    LedgerError,
    register_exception_handlers,
)
from tokenchat.models.error_models import ErrorCode


@pytest.fixture
def test_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    return app


@pytest.fixture
def client(test_app: FastAPI) -> TestClient:
    # raise_server_exceptions=False returns the 500 response instead of re-raising
    return TestClient(test_app, raise_server_exceptions=False)


def test_app_exception(test_app: FastAPI, client: TestClient) -> None:
    @test_app.get("/app_error")
    def raise_app_error() -> None:
        raise AppException(code=ErrorCode.INTERNAL_ERROR, message="Test error", details={"foo": "bar"})

    response = client.get("/app_error")

    assert response.status_code == 500
    data = response.json()["error"]
    assert data["code"] == "INTERNAL_ERROR"
    assert data["message"] == "Test error"
    assert data["details"] == [{"field": "foo", "message": "bar"}]
    assert data["path"] == "/app_error"
    assert "debug" not in data


def test_ledger_error_status(test_app: FastAPI, client: TestClient) -> None:
    @test_app.post("/debit")
    def debit() -> None:
        raise LedgerError(code=ErrorCode.INSUFFICIENT_TOKENS, message="Insufficient tokens")

    response = client.post("/debit")

    assert response.status_code == 402
    assert response.json()["error"]["code"] == "INSUFFICIENT_TOKENS"


def test_authentication_error(test_app: FastAPI, client: TestClient) -> None:
    @test_app.get("/private")
    def private() -> None:
        raise AuthenticationError(message="Invalid token", code=ErrorCode.AUTH_INVALID_TOKEN)

    response = client.get("/private")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_INVALID_TOKEN"


def test_http_exception(test_app: FastAPI, client: TestClient) -> None:
    @test_app.get("/gone")
    def gone() -> None:
        raise HTTPException(status_code=404, detail="Nothing here")

    response = client.get("/gone")

    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Nothing here"


def test_request_validation(test_app: FastAPI, client: TestClient) -> None:
    class Body(BaseModel):
        count: int

    @test_app.post("/items")
    def create(body: Body) -> None:
        return None

    response = client.post("/items", json={"count": "many"})

    assert response.status_code == 422
    data = response.json()["error"]
    assert data["code"] == "VALIDATION_ERROR"
    assert data["details"][0]["field"] == "body.count"


def test_database_error(test_app: FastAPI, client: TestClient) -> None:
    @test_app.get("/db")
    def db() -> None:
        raise asyncpg.PostgresError("relation does not exist")

    response = client.get("/db")

    assert response.status_code == 500
    data = response.json()["error"]
    assert data["code"] == "DATABASE_ERROR"
    assert "relation" not in data["message"]


def test_unexpected_error_hides_internals(test_app: FastAPI, client: TestClient) -> None:
    @test_app.get("/boom")
    def boom() -> None:
        raise ValueError("secret internal state")

    response = client.get("/boom")

    assert response.status_code == 500
    data = response.json()["error"]
    assert data["code"] == "INTERNAL_UNEXPECTED"
    assert data["message"] == "An unexpected error occurred"
    assert "debug" not in data


def test_http_exception_keeps_headers(test_app: FastAPI, client: TestClient) -> None:
    @test_app.get("/busy")
    def busy() -> None:
        raise HTTPException(status_code=503, detail="Shutting down", headers={"Retry-After": "5"})

    response = client.get("/busy")

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"
    assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"


def test_model_validation_downstream(test_app: FastAPI, client: TestClient) -> None:
    class Pack(BaseModel):
        tokens: int

    @test_app.get("/pack")
    def pack() -> None:
        Pack.model_validate({"tokens": "lots"})

    response = client.get("/pack")

    assert response.status_code == 422
    data = response.json()["error"]
    assert data["message"] == "Data validation failed"
    assert data["details"][0]["field"] == "tokens"


def test_debug_info_only_in_debug(test_app: FastAPI, client: TestClient) -> None:
    @test_app.get("/db")
    def db() -> None:
        raise asyncpg.PostgresError("relation does not exist")

    with patch("tokenchat.api.middleware.exception_handlers.get_settings") as mock_settings:
        mock_settings.return_value.debug = True
        data = client.get("/db").json()["error"]

    assert data["debug"]["pg_error_class"] == "PostgresError"
    assert "relation" not in data["message"]
