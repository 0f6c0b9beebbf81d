"""
Outbound chat turn events.

The orchestrator emits these typed events in order; each transport decides how
to frame them. On the socket every event becomes one JSON frame of the form
``{"type": <event name>, ...payload}``.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import Field

from tokenchat.core.constants import (
    MSG_TYPE_CONVERSATION_CREATED,
    MSG_TYPE_ERROR,
    MSG_TYPE_SOURCES,
    MSG_TYPE_STREAM_CHUNK,
    MSG_TYPE_STREAM_DONE,
    MSG_TYPE_STREAM_ERROR,
    MSG_TYPE_TOKEN_CONSUMED,
    MSG_TYPE_TOKEN_REFUNDED,
)
from tokenchat.models.chat_models import SourceCitation, WireModel


class ConversationCreatedEvent(WireModel):
    """A new conversation was created for this turn."""

    type: Literal["conversation_created"] = MSG_TYPE_CONVERSATION_CREATED
    conversation_id: str
    title: str


class TokenConsumedEvent(WireModel):
    """One token was debited for this turn."""

    type: Literal["token_consumed"] = MSG_TYPE_TOKEN_CONSUMED
    remaining_balance: int


class SourcesEvent(WireModel):
    """Citations for the answer that is about to stream."""

    type: Literal["sources"] = MSG_TYPE_SOURCES
    sources: list[SourceCitation]


class StreamChunkEvent(WireModel):
    type: Literal["stream_chunk"] = MSG_TYPE_STREAM_CHUNK
    content: str


class StreamDoneEvent(WireModel):
    """Terminal event for a completed or aborted turn. ``saved`` is False after an abort."""

    type: Literal["stream_done"] = MSG_TYPE_STREAM_DONE
    saved: bool


class StreamErrorEvent(WireModel):
    type: Literal["stream_error"] = MSG_TYPE_STREAM_ERROR
    message: str


class TokenRefundedEvent(WireModel):
    type: Literal["token_refunded"] = MSG_TYPE_TOKEN_REFUNDED
    message: str


class ErrorEvent(WireModel):
    """Rejection before any debit happened (validation, insufficient tokens, busy connection)."""

    type: Literal["error"] = MSG_TYPE_ERROR
    code: str
    message: str


ChatEvent = Annotated[
    ConversationCreatedEvent
    | TokenConsumedEvent
    | SourcesEvent
    | StreamChunkEvent
    | StreamDoneEvent
    | StreamErrorEvent
    | TokenRefundedEvent
    | ErrorEvent,
    Field(discriminator="type"),
]


__all__ = [
    "ChatEvent",
    "ConversationCreatedEvent",
    "ErrorEvent",
    "SourcesEvent",
    "StreamChunkEvent",
    "StreamDoneEvent",
    "StreamErrorEvent",
    "TokenConsumedEvent",
    "TokenRefundedEvent",
]
