from __future__ import annotations

import asyncio
import json
import uuid

from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from tokenchat.api.middleware.auth import get_current_user_from_token
from tokenchat.api.middleware.exception_handlers import AuthenticationError
from tokenchat.api.middleware.request_context import bind, open_connection_scope
from tokenchat.api.services.chat_service import ChatService, ConnectionContext, EmitFn
from tokenchat.api.websocket.errors import close_with_error, send_ws_error, validate_ws_message
from tokenchat.api.websocket.manager import WebSocketManager
from tokenchat.core.constants import MSG_TYPE_ABORT_STREAM, MSG_TYPE_SEND_MESSAGE, get_settings
from tokenchat.models.chat_models import WireModel
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils.logger import logger
from tokenchat.utils.metrics import ws_messages_total

router = APIRouter()


@router.websocket("/ws/chat")
async def chat_websocket(
    websocket: WebSocket,
    token: str | None = Query(default=None),
) -> None:
    """WebSocket endpoint for chat turns: ``send_message`` and ``abort_stream`` in, turn events out."""
    settings = get_settings()
    ws_manager: WebSocketManager = websocket.app.state.ws_manager
    chat_service: ChatService = websocket.app.state.chat_service

    connection_id = uuid.uuid4().hex
    client_ip = websocket.client.host if websocket.client else None
    open_connection_scope(connection_id, client_ip=client_ip)

    # Authenticate once; the identity is fixed for the connection's lifetime
    try:
        user = get_current_user_from_token(token, settings)
    except AuthenticationError as e:
        await websocket.accept()
        await close_with_error(websocket, e.code, e.message)
        return

    bind(user_id=user.id)
    ctx = ConnectionContext(connection_id=connection_id, user=user, client_ip=client_ip)

    if not await ws_manager.connect(websocket, user.id):
        # Not yet accepted: accept so the close code reaches the client
        await websocket.accept()
        await close_with_error(
            websocket,
            ErrorCode.SERVICE_UNAVAILABLE,
            "Service unavailable - connection limit reached",
        )
        return

    async def emit(event: WireModel) -> None:
        await ws_manager.send(websocket, event.to_wire())

    active_turn: asyncio.Task[None] | None = None

    try:
        keepalive_task = asyncio.create_task(ws_manager.keepalive(websocket, settings.ws_heartbeat_interval))
        try:
            async for raw in websocket.iter_text():
                await ws_manager.touch(websocket)
                ws_messages_total.labels(direction="inbound").inc()

                try:
                    data = json.loads(raw)
                except ValueError:
                    await send_ws_error(websocket, ErrorCode.WS_MESSAGE_INVALID, "Message must be valid JSON")
                    continue

                msg_type = await validate_ws_message(websocket, data)
                if msg_type is None:
                    continue

                if msg_type == MSG_TYPE_SEND_MESSAGE:
                    if active_turn and not active_turn.done():
                        await send_ws_error(
                            websocket,
                            ErrorCode.TURN_IN_PROGRESS,
                            "A response is already streaming on this connection",
                        )
                        continue
                    active_turn = asyncio.create_task(_handle_send_message(chat_service, ctx, data, emit, websocket))

                elif msg_type == MSG_TYPE_ABORT_STREAM:
                    if not await chat_service.abort(connection_id):
                        logger.debug("Abort received with no active stream")

                else:
                    await send_ws_error(websocket, ErrorCode.WS_MESSAGE_INVALID, f"Unknown message type: {msg_type}")
        finally:
            keepalive_task.cancel()
            # Disconnect acts as abort_stream: only the stream stops, the turn settles on its own
            await chat_service.active_streams.cancel(connection_id, reason="disconnect")
            if active_turn is not None:
                await asyncio.shield(active_turn)
    except WebSocketDisconnect:
        pass  # Normal client disconnect
    except RuntimeError as e:
        # Handle "WebSocket is not connected" errors gracefully
        if "not connected" not in str(e).lower():
            raise
    finally:
        await ws_manager.disconnect(websocket, user.id)
        logger.info("WebSocket disconnected")


async def _handle_send_message(
    chat_service: ChatService,
    ctx: ConnectionContext,
    data: dict[str, Any],
    emit: EmitFn,
    websocket: WebSocket,
) -> None:
    """Run one turn as a background task so aborts can be received meanwhile."""
    try:
        await chat_service.handle_send_message(ctx, data, emit)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Chat processing error: {e}", exc_info=True)
        await send_ws_error(websocket, ErrorCode.INTERNAL_ERROR, "Chat processing failed")
