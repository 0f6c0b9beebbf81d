"""WebSocket connection management, cancellation and error framing."""

from __future__ import annotations

from tokenchat.api.websocket.errors import WSCloseCode, close_with_error, send_ws_error, validate_ws_message
from tokenchat.api.websocket.manager import WebSocketManager
from tokenchat.api.websocket.task_manager import ActiveStreamRegistry, CancellationToken, OperationCancelled

__all__ = [
    "ActiveStreamRegistry",
    "CancellationToken",
    "OperationCancelled",
    "WSCloseCode",
    "WebSocketManager",
    "close_with_error",
    "send_ws_error",
    "validate_ws_message",
]
