"""
Chat request and record models.

Inbound payloads are validated here before any side effect happens; the
conversation and message records mirror the database rows one-to-one.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tokenchat.core.constants import MAX_MESSAGE_LENGTH, MAX_TITLE_LENGTH


class WireModel(BaseModel):
    """Base for models exchanged with clients: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


class SendMessageRequest(WireModel):
    """Inbound ``send_message`` payload, shared by the socket and SSE transports."""

    content: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    conversation_id: UUID | None = None


class SourceCitation(WireModel):
    """One numbered reference shown under an answer. Index is 1-based in retrieval order."""

    index: int = Field(..., ge=1)
    title: str
    source: str


class Conversation(WireModel):
    id: UUID
    user_id: str | None = None
    title: str
    created_at: datetime
    updated_at: datetime


class Message(WireModel):
    id: UUID
    conversation_id: UUID
    role: str
    content: str
    created_at: datetime
    updated_at: datetime


class ConversationCreateRequest(WireModel):
    title: str | None = Field(default=None, max_length=MAX_TITLE_LENGTH)


class ConversationRenameRequest(WireModel):
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("title must not be blank")
        return stripped


class ConversationListResponse(WireModel):
    conversations: list[Conversation]


class MessageListResponse(WireModel):
    messages: list[Message]


__all__ = [
    "Conversation",
    "ConversationCreateRequest",
    "ConversationListResponse",
    "ConversationRenameRequest",
    "Message",
    "MessageListResponse",
    "SendMessageRequest",
    "SourceCitation",
    "WireModel",
]
