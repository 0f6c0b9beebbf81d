"""In-memory collaborators for chat turn, billing and webhook tests."""

from __future__ import annotations

import asyncio

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from tokenchat.api.middleware.exception_handlers import ConversationError
from tokenchat.api.services.rag_service import RetrievalResult
from tokenchat.api.websocket.task_manager import CancellationToken
from tokenchat.integrations.completion.base import ChatMessages, CompletionStream
from tokenchat.models.billing_models import TokenTransaction, TransactionType
from tokenchat.models.chat_models import Conversation, Message, WireModel
from tokenchat.models.error_models import ErrorCode


class FakeLedger:
    """In-memory ledger with the same atomicity guarantees as the SQL one."""

    def __init__(self, balances: dict[str, int] | None = None) -> None:
        self.balances: dict[str, int] = dict(balances or {})
        self.transactions: list[TokenTransaction] = []
        self.credit_delay = 0.0
        self._lock = asyncio.Lock()

    def _record(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        balance_after: int,
        reference_id: str | None,
    ) -> None:
        self.transactions.append(
            TokenTransaction(
                id=uuid4(),
                user_id=user_id,
                amount=amount,
                type=type,
                reference_id=reference_id,
                description=description,
                balance_after=balance_after,
                created_at=datetime.now(UTC),
            )
        )

    def transactions_for(self, user_id: str, type: TransactionType | None = None) -> list[TokenTransaction]:
        return [t for t in self.transactions if t.user_id == user_id and (type is None or t.type is type)]

    async def get_balance(self, user_id: str) -> int | None:
        return self.balances.get(user_id)

    async def initialize_balance(self, user_id: str, amount: int = 0) -> bool:
        async with self._lock:
            if user_id in self.balances:
                return False
            self.balances[user_id] = amount
            return True

    async def grant_initial(self, user_id: str, amount: int, type: TransactionType, description: str) -> int | None:
        async with self._lock:
            if user_id in self.balances:
                return None
            self.balances[user_id] = amount
            self._record(user_id, amount, type, description, amount, None)
            return amount

    async def apply_debit(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        reference_id: str | None = None,
    ) -> int | None:
        async with self._lock:
            current = self.balances.get(user_id)
            if current is None or current < amount:
                return None
            self.balances[user_id] = current - amount
            self._record(user_id, -amount, type, description, current - amount, reference_id)
            return current - amount

    async def apply_credit(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        reference_id: str | None = None,
    ) -> int:
        if self.credit_delay:
            await asyncio.sleep(self.credit_delay)
        async with self._lock:
            balance = self.balances.get(user_id, 0) + amount
            self.balances[user_id] = balance
            self._record(user_id, amount, type, description, balance, reference_id)
            return balance

    async def list_transactions(self, user_id: str, limit: int, offset: int) -> tuple[list[TokenTransaction], int]:
        rows = list(reversed(self.transactions_for(user_id)))
        return rows[offset : offset + limit], len(rows)


class FakeConversationStore:
    """In-memory conversation store with owner checks."""

    def __init__(self) -> None:
        self.conversations: dict[UUID, Conversation] = {}
        self.messages: dict[UUID, list[Message]] = {}
        self.fail_on_add_role: str | None = None

    async def create(self, user_id: str | None, title: str) -> Conversation:
        now = datetime.now(UTC)
        conversation = Conversation(id=uuid4(), user_id=user_id, title=title, created_at=now, updated_at=now)
        self.conversations[conversation.id] = conversation
        self.messages[conversation.id] = []
        return conversation

    async def get_owned(self, user_id: str, conversation_id: UUID) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationError(code=ErrorCode.CONVERSATION_NOT_FOUND, message="Conversation not found")
        if conversation.user_id is not None and conversation.user_id != user_id:
            raise ConversationError(
                code=ErrorCode.ACCESS_DENIED, message="You do not have access to this conversation"
            )
        return conversation

    async def add_message(self, conversation_id: UUID, role: str, content: str) -> Message:
        if self.fail_on_add_role == role:
            raise RuntimeError(f"insert failed for {role} message")
        now = datetime.now(UTC)
        message = Message(
            id=uuid4(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=now,
            updated_at=now,
        )
        self.messages[conversation_id].append(message)
        return message

    async def get_messages(self, conversation_id: UUID, limit: int | None = None) -> list[Message]:
        messages = list(self.messages.get(conversation_id, []))
        return messages[-limit:] if limit else messages

    def all_messages(self) -> list[Message]:
        return [m for msgs in self.messages.values() for m in msgs]


class FakeRetriever:
    """Returns a canned retrieval result, or raises ``error``.

    ``hold`` keeps the lookup pending until the event is set.
    """

    def __init__(
        self,
        result: RetrievalResult | None = None,
        error: Exception | None = None,
        hold: asyncio.Event | None = None,
    ) -> None:
        self.result = result
        self.error = error
        self.hold = hold
        self.queries: list[str] = []
        self.started = asyncio.Event()

    async def retrieve(self, query: str) -> RetrievalResult:
        self.queries.append(query)
        self.started.set()
        if self.hold is not None:
            await self.hold.wait()
        if self.error is not None:
            raise self.error
        return self.result or RetrievalResult.empty(query)


class FakeCompletionBackend:
    """Streams the configured chunks through a real ``CompletionStream``.

    ``hold`` keeps the stream open after the last chunk until the event is set,
    ``error`` is raised after the chunks, and ``start_error`` fails before any
    stream exists.
    """

    provider = "fake"

    def __init__(
        self,
        chunks: list[str] | None = None,
        *,
        error: Exception | None = None,
        start_error: Exception | None = None,
        hold: asyncio.Event | None = None,
    ) -> None:
        self.chunks = chunks if chunks is not None else ["4", "!"]
        self.error = error
        self.start_error = start_error
        self.hold = hold
        self.calls: list[list[dict[str, str]]] = []
        self.streaming = asyncio.Event()

    async def start_completion(self, messages: ChatMessages, cancel_token: CancellationToken) -> CompletionStream:
        self.calls.append([dict(m) for m in messages])
        if self.start_error is not None:
            raise self.start_error
        return CompletionStream(self._iter(), provider=self.provider, cancel_token=cancel_token)

    async def _iter(self) -> AsyncIterator[str]:
        for chunk in self.chunks:
            yield chunk
        self.streaming.set()
        if self.hold is not None:
            await self.hold.wait()
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        return None


class EventRecorder:
    """Collects emitted turn events in order."""

    def __init__(self) -> None:
        self.events: list[WireModel] = []

    async def __call__(self, event: WireModel) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [str(e.to_wire()["type"]) for e in self.events]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e.to_wire() for e in self.events if e.to_wire()["type"] == event_type]


