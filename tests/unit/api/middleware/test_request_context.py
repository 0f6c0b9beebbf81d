"""Tests for request scopes and the request context middleware."""

from __future__ import annotations

import asyncio
import contextvars
import time

import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from tokenchat.api.middleware.request_context import (
    RequestContextMiddleware,
    RequestScope,
    ScopeKind,
    bind,
    current_request_id,
    current_scope,
    new_id,
    open_connection_scope,
    open_turn_scope,
)


def test_scope_log_fields_skip_unset() -> None:
    scope = RequestScope(request_id="req_1", kind=ScopeKind.HTTP, path="/api/v1/billing/balance")

    assert scope.log_fields() == {"request_id": "req_1", "scope": "http", "path": "/api/v1/billing/balance"}
    time.sleep(0.01)
    assert scope.elapsed_ms > 0


def test_new_id() -> None:
    first, second = new_id("req_"), new_id("req_")
    assert first.startswith("req_")
    assert len(first) == len("req_") + 16
    assert first != second


def test_bind_outside_scope_is_noop() -> None:
    assert contextvars.copy_context().run(bind, user_id="user-1") is None


def test_bind_replaces_instead_of_mutating() -> None:
    def run() -> tuple[RequestScope, RequestScope | None]:
        connection = open_connection_scope("conn-1", client_ip="10.0.0.1")
        bind(user_id="user-1")
        return connection, current_scope()

    connection, bound = contextvars.copy_context().run(run)

    assert connection.user_id is None
    assert bound is not None
    assert bound.user_id == "user-1"
    assert bound.connection_id == "conn-1"
    assert bound.request_id == connection.request_id


def test_turn_scope_inherits_transport_fields() -> None:
    def run() -> tuple[RequestScope, RequestScope, str | None]:
        connection = open_connection_scope("conn-1", client_ip="10.0.0.1")
        turn = open_turn_scope("conn-1", "user-1")
        return connection, turn, current_request_id()

    connection, turn, request_id = contextvars.copy_context().run(run)

    assert turn.kind is ScopeKind.TURN
    assert turn.request_id.startswith("turn_")
    assert turn.request_id != connection.request_id
    assert turn.path == "/ws/chat"
    assert turn.client_ip == "10.0.0.1"
    assert turn.user_id == "user-1"
    assert request_id == turn.request_id


@pytest.mark.asyncio
async def test_conversation_bound_in_turn_task_stays_in_task() -> None:
    """Test that a turn task binding its conversation leaves the connection scope untouched."""

    async def turn() -> str | None:
        open_turn_scope("conn-1", "user-1")
        bind(conversation_id="c1")
        scope = current_scope()
        return scope.conversation_id if scope else None

    def run() -> RequestScope:
        return open_connection_scope("conn-1")

    connection_ctx = contextvars.copy_context()
    connection = connection_ctx.run(run)

    task = connection_ctx.run(asyncio.create_task, turn())
    assert await task == "c1"
    assert connection_ctx.run(current_scope) == connection
    assert connection.conversation_id is None


def test_middleware_sets_headers_and_scope() -> None:
    app = FastAPI()
    app.add_middleware(RequestContextMiddleware)
    seen: dict[str, object] = {}

    @app.get("/api/v1/conversations/{conversation_id}")
    async def read(conversation_id: str) -> dict[str, str]:
        scope = current_scope()
        assert scope is not None
        seen.update(kind=scope.kind, path=scope.path, client_ip=scope.client_ip, conversation_id=scope.conversation_id)
        return {}

    response = TestClient(app).get(
        "/api/v1/conversations/abc",
        headers={"X-Request-ID": "req_upstream", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )

    assert response.headers["X-Request-ID"] == "req_upstream"
    assert response.headers["X-Response-Time"].endswith("ms")
    assert seen == {
        "kind": ScopeKind.HTTP,
        "path": "/api/v1/conversations/abc",
        "client_ip": "203.0.113.9",
        "conversation_id": None,
    }


def test_middleware_generates_request_id() -> None:
    app = FastAPI()
    app.add_middleware(RequestContextMiddleware)

    @app.get("/health")
    async def health() -> dict[str, str | None]:
        return {"request_id": current_request_id()}

    response = TestClient(app).get("/health")

    assert response.headers["X-Request-ID"].startswith("req_")
    assert response.json()["request_id"] == response.headers["X-Request-ID"]
