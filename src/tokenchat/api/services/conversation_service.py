from __future__ import annotations

import re

from typing import Any, Protocol
from uuid import UUID

import asyncpg

from tokenchat.api.middleware.exception_handlers import ConversationError
from tokenchat.core.constants import DEFAULT_CONVERSATION_TITLE, TITLE_MAX_LENGTH
from tokenchat.models.chat_models import Conversation, Message
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils.db_utils import transaction, with_retry

_WHITESPACE = re.compile(r"\s+")


def generate_title_from_message(content: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    """Conversation title from the first message: whitespace collapsed, truncated with '...'."""
    text = _WHITESPACE.sub(" ", content).strip()
    if not text:
        return DEFAULT_CONVERSATION_TITLE
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


class ConversationStore(Protocol):
    """Conversation persistence used by the chat turn orchestrator."""

    async def create(self, user_id: str | None, title: str) -> Conversation: ...

    async def get_owned(self, user_id: str, conversation_id: UUID) -> Conversation: ...

    async def add_message(self, conversation_id: UUID, role: str, content: str) -> Message: ...

    async def get_messages(self, conversation_id: UUID, limit: int | None = None) -> list[Message]: ...


def _row_to_conversation(row: asyncpg.Record | dict[str, Any]) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row: asyncpg.Record | dict[str, Any]) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class ConversationService:
    """Conversation and message persistence backed by PostgreSQL."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create(self, user_id: str | None, title: str) -> Conversation:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO conversations (user_id, title)
                VALUES ($1, $2)
                RETURNING *
                """,
                user_id,
                title,
            )
        return _row_to_conversation(row)

    @with_retry()
    async def get(self, conversation_id: UUID) -> Conversation | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM conversations WHERE id = $1", conversation_id)
        return _row_to_conversation(row) if row else None

    async def get_owned(self, user_id: str, conversation_id: UUID) -> Conversation:
        """Fetch a conversation the caller may access.

        Conversations without an owner are legacy anonymous threads and stay readable.

        Raises:
            ConversationError: CONVERSATION_NOT_FOUND or ACCESS_DENIED
        """
        conversation = await self.get(conversation_id)
        if conversation is None:
            raise ConversationError(
                code=ErrorCode.CONVERSATION_NOT_FOUND,
                message="Conversation not found",
                details={"conversation_id": str(conversation_id)},
            )
        if conversation.user_id is not None and conversation.user_id != user_id:
            raise ConversationError(
                code=ErrorCode.ACCESS_DENIED,
                message="You do not have access to this conversation",
                details={"conversation_id": str(conversation_id)},
            )
        return conversation

    @with_retry()
    async def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Conversation]:
        """Most recently active first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM conversations
                WHERE user_id = $1
                ORDER BY updated_at DESC
                LIMIT $2 OFFSET $3
                """,
                user_id,
                limit,
                offset,
            )
        return [_row_to_conversation(r) for r in rows]

    async def rename(self, conversation_id: UUID, title: str) -> Conversation:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE conversations
                SET title = $2, updated_at = now()
                WHERE id = $1
                RETURNING *
                """,
                conversation_id,
                title,
            )
        if not row:
            raise ConversationError(
                code=ErrorCode.CONVERSATION_NOT_FOUND,
                message="Conversation not found",
                details={"conversation_id": str(conversation_id)},
            )
        return _row_to_conversation(row)

    async def delete(self, conversation_id: UUID) -> bool:
        """Delete a conversation; messages go with it (ON DELETE CASCADE)."""
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM conversations WHERE id = $1", conversation_id)
        return str(result).endswith(" 1")

    async def add_message(self, conversation_id: UUID, role: str, content: str) -> Message:
        """Append a message and bump the conversation's ``updated_at``.

        Returns only after commit, so the message is visible to ``get_messages``.
        """
        async with transaction(self.pool) as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO messages (conversation_id, role, content, created_at, updated_at)
                VALUES ($1, $2, $3, clock_timestamp(), clock_timestamp())
                RETURNING *
                """,
                conversation_id,
                role,
                content,
            )
            await conn.execute(
                "UPDATE conversations SET updated_at = now() WHERE id = $1",
                conversation_id,
            )
        return _row_to_message(row)

    @with_retry()
    async def get_messages(self, conversation_id: UUID, limit: int | None = None) -> list[Message]:
        """Messages oldest first; with ``limit``, only the most recent ``limit`` of them."""
        async with self.pool.acquire() as conn:
            if limit is None:
                rows = await conn.fetch(
                    """
                    SELECT * FROM messages
                    WHERE conversation_id = $1
                    ORDER BY created_at ASC
                    """,
                    conversation_id,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM (
                        SELECT * FROM messages
                        WHERE conversation_id = $1
                        ORDER BY created_at DESC
                        LIMIT $2
                    ) recent
                    ORDER BY created_at ASC
                    """,
                    conversation_id,
                    limit,
                )
        return [_row_to_message(r) for r in rows]


__all__ = ["ConversationService", "ConversationStore", "generate_title_from_message"]
