"""
Scoped log context for requests, socket connections and chat turns.

A ``RequestScope`` is an immutable value held in a context variable. Every
log record picks up its fields. Narrowing a scope (``bind``) swaps in a copy
rather than mutating the shared object, so a turn task that binds its
conversation id never leaks it into the connection that spawned it.
"""

from __future__ import annotations

import dataclasses
import secrets
import time

from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"
RESPONSE_TIME_HEADER = "X-Response-Time"


class ScopeKind(str, Enum):
    HTTP = "http"
    WEBSOCKET = "websocket"
    TURN = "turn"


#: Id prefixes, so a log line shows at a glance what kind of scope produced it
SCOPE_ID_PREFIXES = {
    ScopeKind.HTTP: "req_",
    ScopeKind.WEBSOCKET: "ws_",
    ScopeKind.TURN: "turn_",
}


@dataclass(frozen=True, slots=True)
class RequestScope:
    request_id: str
    kind: ScopeKind
    path: str = ""
    client_ip: str | None = None
    user_id: str | None = None
    connection_id: str | None = None
    conversation_id: str | None = None
    started: float = field(default_factory=time.monotonic)

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000

    def log_fields(self) -> dict[str, Any]:
        """Fields attached to every log record emitted inside this scope; unset ones are left out."""
        fields: dict[str, Any] = {"request_id": self.request_id, "scope": self.kind.value}
        for name in ("path", "client_ip", "user_id", "connection_id", "conversation_id"):
            value = getattr(self, name)
            if value:
                fields[name] = value
        return fields


_current_scope: ContextVar[RequestScope | None] = ContextVar("tokenchat_request_scope", default=None)


def new_id(prefix: str) -> str:
    """``prefix`` plus 16 hex characters, e.g. ``req_a1b2c3d4e5f6a7b8``."""
    return f"{prefix}{secrets.token_hex(8)}"


def current_scope() -> RequestScope | None:
    return _current_scope.get()


def current_request_id() -> str | None:
    scope = _current_scope.get()
    return scope.request_id if scope else None


def enter_scope(scope: RequestScope) -> Token[RequestScope | None]:
    return _current_scope.set(scope)


def exit_scope(token: Token[RequestScope | None]) -> None:
    _current_scope.reset(token)


def bind(**fields: str | None) -> RequestScope | None:
    """Replace the current scope with a copy carrying ``fields``. No-op outside any scope."""
    scope = _current_scope.get()
    if scope is None:
        return None
    narrowed = dataclasses.replace(scope, **fields)
    _current_scope.set(narrowed)
    return narrowed


def open_connection_scope(connection_id: str, client_ip: str | None = None) -> RequestScope:
    """Scope for one WebSocket connection, opened before authentication."""
    scope = RequestScope(
        request_id=new_id(SCOPE_ID_PREFIXES[ScopeKind.WEBSOCKET]),
        kind=ScopeKind.WEBSOCKET,
        path="/ws/chat",
        client_ip=client_ip,
        connection_id=connection_id,
    )
    _current_scope.set(scope)
    return scope


def open_turn_scope(connection_id: str, user_id: str) -> RequestScope:
    """Scope for one chat turn; keeps the transport's path and client address."""
    parent = _current_scope.get()
    scope = RequestScope(
        request_id=new_id(SCOPE_ID_PREFIXES[ScopeKind.TURN]),
        kind=ScopeKind.TURN,
        path=parent.path if parent else "",
        client_ip=parent.client_ip if parent else None,
        user_id=user_id,
        connection_id=connection_id,
    )
    _current_scope.set(scope)
    return scope


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Open an HTTP scope per request and echo its id and duration in response headers.

    An incoming ``X-Request-ID`` is reused so ids line up with upstream proxies.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        scope = RequestScope(
            request_id=request.headers.get(REQUEST_ID_HEADER) or new_id(SCOPE_ID_PREFIXES[ScopeKind.HTTP]),
            kind=ScopeKind.HTTP,
            path=request.url.path,
            client_ip=_client_ip(request),
        )
        token = enter_scope(scope)
        try:
            response = await call_next(request)
        finally:
            exit_scope(token)

        response.headers[REQUEST_ID_HEADER] = scope.request_id
        response.headers[RESPONSE_TIME_HEADER] = f"{scope.elapsed_ms:.2f}ms"
        return response


__all__ = [
    "RequestContextMiddleware",
    "RequestScope",
    "ScopeKind",
    "bind",
    "current_request_id",
    "current_scope",
    "enter_scope",
    "exit_scope",
    "new_id",
    "open_connection_scope",
    "open_turn_scope",
]
