"""
Error frames and close codes for the chat socket.

A recoverable problem (bad frame, unknown type, refused turn) is reported with
``{"type": "error", "code", "message"}`` and the socket stays open. A fatal one
(bad token, connection refused) sends the same frame, then closes the socket
with the close code mapped from the error code.
"""

from __future__ import annotations

import contextlib

from enum import IntEnum
from typing import Any

from fastapi import WebSocket

from tokenchat.models.error_models import ErrorCode, WebSocketError
from tokenchat.utils.logger import logger

#: RFC 6455 caps the close reason at 123 bytes of UTF-8
MAX_CLOSE_REASON_BYTES = 123


class WSCloseCode(IntEnum):
    NORMAL = 1000
    GOING_AWAY = 1001
    INTERNAL_ERROR = 1011
    # Application codes; 44xx and 45xx mirror the HTTP status of the same failure
    IDLE_TIMEOUT = 4000
    AUTH_REQUIRED = 4401
    ACCESS_DENIED = 4403
    SERVICE_UNAVAILABLE = 4503


ERROR_CODE_TO_WS_CLOSE: dict[ErrorCode, WSCloseCode] = {
    ErrorCode.AUTH_REQUIRED: WSCloseCode.AUTH_REQUIRED,
    ErrorCode.AUTH_INVALID_TOKEN: WSCloseCode.AUTH_REQUIRED,
    ErrorCode.ACCESS_DENIED: WSCloseCode.ACCESS_DENIED,
    ErrorCode.SERVICE_UNAVAILABLE: WSCloseCode.SERVICE_UNAVAILABLE,
}


def close_reason(message: str) -> str:
    """``message`` cut to fit a close frame without splitting a UTF-8 sequence."""
    return message.encode("utf-8")[:MAX_CLOSE_REASON_BYTES].decode("utf-8", errors="ignore")


async def send_ws_error(websocket: WebSocket, code: ErrorCode, message: str) -> None:
    """Send an error frame; a peer that is already gone is logged, not raised."""
    try:
        await websocket.send_json(WebSocketError(code=code, message=message).to_dict())
    except Exception as e:
        logger.warning(f"Could not deliver {code.value} to chat socket: {e!r}")


async def close_with_error(websocket: WebSocket, code: ErrorCode, message: str) -> None:
    await send_ws_error(websocket, code, message)
    with contextlib.suppress(Exception):
        await websocket.close(
            code=ERROR_CODE_TO_WS_CLOSE.get(code, WSCloseCode.INTERNAL_ERROR),
            reason=close_reason(message),
        )


async def validate_ws_message(websocket: WebSocket, data: Any) -> str | None:
    """Return the frame's ``type``, or report ``WS_MESSAGE_INVALID`` and return None."""
    problem = None
    if not isinstance(data, dict):
        problem = "Message must be a JSON object"
    elif not isinstance(data.get("type"), str) or not data["type"]:
        problem = "Missing required fields: type"

    if problem:
        await send_ws_error(websocket, ErrorCode.WS_MESSAGE_INVALID, problem)
        return None
    return str(data["type"])


__all__ = [
    "ERROR_CODE_TO_WS_CLOSE",
    "WSCloseCode",
    "close_reason",
    "close_with_error",
    "send_ws_error",
    "validate_ws_message",
]
