"""
HTTP + server-sent events fallback for chat turns.

The turn runs in a background task feeding a queue. The response waits for
the debit outcome so that rejections become plain JSON errors and successful
turns can expose ``X-Conversation-Id`` and ``X-Token-Balance`` headers; the
remaining events stream as ``data:`` lines ending with ``data: [DONE]``.
"""

from __future__ import annotations

import asyncio

from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from tokenchat.api.dependencies import Chat
from tokenchat.api.middleware.auth import CurrentUser
from tokenchat.api.middleware.request_context import current_request_id, new_id
from tokenchat.api.services.chat_service import ChatService, ConnectionContext, TurnResult
from tokenchat.core.constants import SSE_DONE_SENTINEL
from tokenchat.models.chat_models import SendMessageRequest, WireModel
from tokenchat.models.error_models import ErrorCode, ErrorResponse, get_status_code
from tokenchat.models.event_models import (
    ConversationCreatedEvent,
    ErrorEvent,
    SourcesEvent,
    StreamChunkEvent,
    StreamDoneEvent,
    StreamErrorEvent,
    TokenConsumedEvent,
    TokenRefundedEvent,
)
from tokenchat.utils.logger import logger
from tokenchat.utils.sse import encode_sse

router = APIRouter()

SSE_CONNECTION_PREFIX = "sse_"

#: Turns still running; held so they are not garbage collected mid-flight
_turn_tasks: set[asyncio.Task[TurnResult]] = set()


def sse_payload(event: WireModel) -> dict[str, Any] | None:
    """Body line for one turn event, or None for events carried in headers."""
    if isinstance(event, StreamChunkEvent):
        return {"content": event.content}
    if isinstance(event, SourcesEvent):
        return {"type": "sources", "sources": [s.to_wire() for s in event.sources]}
    if isinstance(event, StreamDoneEvent):
        return {"type": "done", "saved": event.saved}
    if isinstance(event, TokenRefundedEvent):
        return {"type": "refund", "message": event.message}
    if isinstance(event, StreamErrorEvent):
        return {"type": "error", "message": event.message}
    return None


def _error_response(request: Request, code: ErrorCode, message: str) -> JSONResponse:
    error = ErrorResponse(code=code, message=message, request_id=current_request_id(), path=request.url.path)
    return JSONResponse(status_code=get_status_code(code), content=error.to_dict())


@router.post("/chat/send")
async def send_message(
    request: Request,
    body: SendMessageRequest,
    user: CurrentUser,
    chat: Chat,
) -> Any:
    """Run a chat turn and stream the answer as SSE."""
    ctx = ConnectionContext(
        connection_id=new_id(SSE_CONNECTION_PREFIX),
        user=user,
        client_ip=request.client.host if request.client else None,
    )
    queue: asyncio.Queue[WireModel | None] = asyncio.Queue()

    async def emit(event: WireModel) -> None:
        queue.put_nowait(event)

    async def run_turn() -> TurnResult:
        try:
            return await chat.handle_send_message(ctx, body, emit)
        finally:
            queue.put_nowait(None)

    task = track_turn(asyncio.create_task(run_turn()))

    conversation_id = str(body.conversation_id) if body.conversation_id else None
    balance: int | None = None
    try:
        while balance is None:
            event = await queue.get()
            if event is None or isinstance(event, ErrorEvent | StreamErrorEvent):
                # Turn ended before the token was reported (rejected, or failed and refunded)
                result = await asyncio.shield(task)
                code = result.error_code or ErrorCode.INTERNAL_ERROR
                message = event.message if isinstance(event, ErrorEvent | StreamErrorEvent) else "Chat turn failed"
                return _error_response(request, code, message)
            if isinstance(event, ConversationCreatedEvent):
                conversation_id = event.conversation_id
            elif isinstance(event, TokenConsumedEvent):
                balance = event.remaining_balance
    except asyncio.CancelledError:
        await _abort_turn(chat, ctx, task)
        raise

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Conversation-Id": conversation_id or "",
        "X-Token-Balance": str(balance),
    }
    return StreamingResponse(
        _event_stream(chat, ctx, queue, task),
        media_type="text/event-stream",
        headers=headers,
    )


def track_turn(task: asyncio.Task[TurnResult]) -> asyncio.Task[TurnResult]:
    """Keep a turn task referenced until it finishes, and log how it ended.

    The turn outlives the request when the client goes away, so nothing else
    is guaranteed to await it.
    """
    _turn_tasks.add(task)
    task.add_done_callback(_turn_finished)
    return task


def _turn_finished(task: asyncio.Task[TurnResult]) -> None:
    _turn_tasks.discard(task)
    if task.cancelled():
        logger.info("SSE chat turn cancelled")
        return
    error = task.exception()
    if error is not None:
        logger.error(f"SSE chat turn failed: {error}", exc_info=error)


async def _abort_turn(chat: ChatService, ctx: ConnectionContext, task: asyncio.Task[TurnResult]) -> None:
    """Client went away: stop the stream like abort_stream; the turn settles on its own."""
    if not task.done():
        await chat.active_streams.cancel(ctx.connection_id, reason="client disconnected")


async def _event_stream(
    chat: ChatService,
    ctx: ConnectionContext,
    queue: asyncio.Queue[WireModel | None],
    task: asyncio.Task[TurnResult],
) -> AsyncIterator[str]:
    try:
        while (event := await queue.get()) is not None:
            payload = sse_payload(event)
            if payload is not None:
                yield encode_sse(payload)
        yield encode_sse(SSE_DONE_SENTINEL)
    finally:
        await _abort_turn(chat, ctx, task)
