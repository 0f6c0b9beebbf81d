"""
Chat turn orchestration.

One ``send_message`` becomes one turn:

    validating -> debiting -> resolving_conversation -> persisting_user_message
    -> retrieving_context -> streaming -> persisting_assistant_message -> done

Any failure after the debit emits ``stream_error`` and refunds the token. An
abort (or a disconnect, which the transports turn into an abort) stops the
stream and ends the turn without persisting or refunding. Events are
handed to a transport-supplied ``emit`` callable in the order they occur.
"""

from __future__ import annotations

import asyncio
import time

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from tokenchat.api.middleware.exception_handlers import AppException, CompletionError, LedgerError
from tokenchat.api.middleware.request_context import bind, open_turn_scope
from tokenchat.api.services.billing_service import BillingService
from tokenchat.api.services.conversation_service import ConversationStore, generate_title_from_message
from tokenchat.api.services.rag_service import Retriever, build_citations, format_context_for_prompt
from tokenchat.api.websocket.task_manager import ActiveStreamRegistry, CancellationToken, OperationCancelled
from tokenchat.core.constants import NEW_CONVERSATION_REFERENCE, REFUND_NOTICE, ROLE_ASSISTANT, ROLE_USER, Settings
from tokenchat.core.prompts import build_messages
from tokenchat.integrations.completion import CompletionBackend
from tokenchat.models.api_models import UserInfo
from tokenchat.models.chat_models import Conversation, SendMessageRequest, SourceCitation, WireModel
from tokenchat.models.error_models import ErrorCode
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
from tokenchat.utils import metrics
from tokenchat.utils.logger import ChatTurnRecord, logger

EmitFn = Callable[[WireModel], Awaitable[None]]

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"


@dataclass(frozen=True, slots=True)
class ConnectionContext:
    """Per-connection identity, resolved once at connect time and never mutated."""

    connection_id: str
    user: UserInfo
    client_ip: str | None = None

    @property
    def user_id(self) -> str:
        return self.user.id


class TurnState(str, Enum):
    VALIDATING = "validating"
    DEBITING = "debiting"
    RESOLVING_CONVERSATION = "resolving_conversation"
    PERSISTING_USER_MESSAGE = "persisting_user_message"
    RETRIEVING_CONTEXT = "retrieving_context"
    STREAMING = "streaming"
    PERSISTING_ASSISTANT_MESSAGE = "persisting_assistant_message"
    DONE = "done"
    ABORTED = "aborted"
    REFUNDING = "refunding"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Terminal summary of one turn, returned to the transport."""

    state: TurnState = TurnState.VALIDATING
    conversation_id: UUID | None = None
    remaining_balance: int | None = None
    error_code: ErrorCode | None = None
    refunded: bool = False
    response_text: str = ""
    sources: list[SourceCitation] = field(default_factory=list)

    @property
    def debited(self) -> bool:
        return self.remaining_balance is not None


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid message: {location}: {first['msg']}" if location else f"Invalid message: {first['msg']}"


class ChatService:
    """Runs chat turns against injected collaborators.

    The active-stream registry is owned by the application and shared by every
    connection, so ``abort`` from any handler reaches the turn streaming on
    that connection id.
    """

    def __init__(
        self,
        billing: BillingService,
        conversations: ConversationStore,
        retriever: Retriever | None,
        completion_backend: CompletionBackend,
        active_streams: ActiveStreamRegistry,
        settings: Settings,
    ):
        self.billing = billing
        self.conversations = conversations
        self.retriever = retriever
        self.completion_backend = completion_backend
        self.active_streams = active_streams
        self.settings = settings
        self._turns_in_flight: set[str] = set()

    def is_busy(self, connection_id: str) -> bool:
        return connection_id in self._turns_in_flight

    async def abort(self, connection_id: str) -> bool:
        """Cancel the stream running on ``connection_id``. No-op (False) before streaming starts."""
        return await self.active_streams.cancel(connection_id, reason="client abort")

    async def handle_send_message(
        self,
        ctx: ConnectionContext,
        payload: Mapping[str, Any] | SendMessageRequest,
        emit: EmitFn,
    ) -> TurnResult:
        """Run one turn to a terminal state.

        Errors are converted into terminal events. Task cancellation
        (``asyncio.CancelledError``) propagates; a refund already under way
        still completes.
        """
        if self.is_busy(ctx.connection_id):
            await emit(
                ErrorEvent(
                    code=ErrorCode.TURN_IN_PROGRESS.value,
                    message="A response is already streaming on this connection",
                )
            )
            metrics.chat_turns_total.labels(outcome="rejected").inc()
            return TurnResult(state=TurnState.FAILED, error_code=ErrorCode.TURN_IN_PROGRESS)

        self._turns_in_flight.add(ctx.connection_id)
        try:
            return await self._run_turn(ctx, payload, emit)
        finally:
            self._turns_in_flight.discard(ctx.connection_id)

    async def _run_turn(
        self,
        ctx: ConnectionContext,
        payload: Mapping[str, Any] | SendMessageRequest,
        emit: EmitFn,
    ) -> TurnResult:
        result = TurnResult()
        open_turn_scope(ctx.connection_id, ctx.user_id)

        # 1. Validate
        try:
            request = (
                payload if isinstance(payload, SendMessageRequest) else SendMessageRequest.model_validate(payload)
            )
        except ValidationError as e:
            return await self._reject(result, emit, ErrorCode.VALIDATION_ERROR, _validation_message(e))

        logger.info(
            "Chat turn started",
            has_conversation=request.conversation_id is not None,
            content_preview=logger.preview(request.content),
        )

        # 2. Debit
        result.state = TurnState.DEBITING
        reference = str(request.conversation_id) if request.conversation_id else NEW_CONVERSATION_REFERENCE
        try:
            result.remaining_balance = await self.billing.consume_token(ctx.user_id, reference)
        except AppException as e:
            return await self._reject(result, emit, e.code, e.message)
        except Exception as e:
            logger.error(f"Token debit failed: {e}", exc_info=True)
            return await self._reject(result, emit, ErrorCode.INTERNAL_UNEXPECTED, UNEXPECTED_ERROR_MESSAGE)

        started = time.monotonic()
        try:
            await self._run_debited_turn(ctx, request, result, emit)
        except asyncio.CancelledError:
            logger.info(
                "Chat turn task cancelled",
                conversation_id=str(result.conversation_id) if result.conversation_id else None,
            )
            metrics.chat_turns_total.labels(outcome="aborted").inc()
            raise
        except Exception as e:
            await self._fail_and_refund(ctx, result, emit, e, reference)

        metrics.chat_turn_duration_seconds.observe(time.monotonic() - started)
        metrics.chat_turns_total.labels(outcome=self._outcome_label(result.state)).inc()
        logger.log_chat_turn(
            ChatTurnRecord(
                user_input=request.content,
                response=result.response_text,
                outcome=result.state.value,
                conversation_id=str(result.conversation_id) if result.conversation_id else None,
                duration_ms=(time.monotonic() - started) * 1000,
                remaining_balance=result.remaining_balance,
                sources=len(result.sources),
            )
        )
        return result

    async def _run_debited_turn(
        self,
        ctx: ConnectionContext,
        request: SendMessageRequest,
        result: TurnResult,
        emit: EmitFn,
    ) -> None:
        # 3. Resolve conversation
        result.state = TurnState.RESOLVING_CONVERSATION
        conversation = await self._resolve_conversation(ctx, request, emit)
        result.conversation_id = conversation.id
        bind(conversation_id=str(conversation.id))
        await emit(TokenConsumedEvent(remaining_balance=result.remaining_balance or 0))

        # 4. Persist the user's message
        result.state = TurnState.PERSISTING_USER_MESSAGE
        await self.conversations.add_message(conversation.id, ROLE_USER, request.content)

        # 5. Load history
        window = self.settings.context_window
        history = await self.conversations.get_messages(conversation.id, limit=window)

        # 6. Best-effort retrieval
        result.state = TurnState.RETRIEVING_CONTEXT
        rag_context, result.sources = await self._retrieve_context(request.content)
        if result.sources:
            await emit(SourcesEvent(sources=result.sources))

        messages = build_messages(
            [{"role": m.role, "content": m.content} for m in history],
            rag_context,
            window=window,
        )

        # 7. Stream
        result.state = TurnState.STREAMING
        token = CancellationToken()
        await self.active_streams.register(ctx.connection_id, token)
        try:
            text = await self._stream_completion(messages, token, emit)
        finally:
            await self.active_streams.discard(ctx.connection_id, token)

        if text is None:
            logger.info("Chat turn aborted", reason=token.cancel_reason)
            result.state = TurnState.ABORTED
            await emit(StreamDoneEvent(saved=False))
            return

        # 8. Persist the answer
        result.state = TurnState.PERSISTING_ASSISTANT_MESSAGE
        await self.conversations.add_message(conversation.id, ROLE_ASSISTANT, text)
        result.response_text = text
        result.state = TurnState.DONE
        await emit(StreamDoneEvent(saved=True))

    async def _resolve_conversation(
        self,
        ctx: ConnectionContext,
        request: SendMessageRequest,
        emit: EmitFn,
    ) -> Conversation:
        if request.conversation_id is not None:
            return await self.conversations.get_owned(ctx.user_id, request.conversation_id)

        title = generate_title_from_message(request.content)
        conversation = await self.conversations.create(ctx.user_id, title)
        await emit(ConversationCreatedEvent(conversation_id=str(conversation.id), title=conversation.title))
        logger.info("Conversation created", conversation_id=str(conversation.id))
        return conversation

    async def _retrieve_context(self, query: str) -> tuple[str | None, list[SourceCitation]]:
        if self.retriever is None or not self.settings.rag_enabled:
            metrics.rag_retrievals_total.labels(outcome="disabled").inc()
            return None, []

        try:
            retrieval = await self.retriever.retrieve(query)
        except Exception as e:
            logger.warning(f"RAG retrieval failed, continuing without context: {e}")
            metrics.rag_retrievals_total.labels(outcome="error").inc()
            return None, []

        if not retrieval.chunks:
            metrics.rag_retrievals_total.labels(outcome="miss").inc()
            return None, []

        metrics.rag_retrievals_total.labels(outcome="hit").inc()
        logger.info("RAG context retrieved", chunk_count=len(retrieval.chunks))
        return format_context_for_prompt(retrieval.chunks), build_citations(retrieval.chunks)

    async def _stream_completion(
        self,
        messages: list[dict[str, str]],
        token: CancellationToken,
        emit: EmitFn,
    ) -> str | None:
        """Forward chunks as they arrive. Returns the full text, or None when the turn was aborted.

        Raises:
            CompletionError: upstream failure, or COMPLETION_TIMEOUT when the bound expires
        """
        provider = self.completion_backend.provider
        timeout = self.settings.completion_timeout_seconds
        requested_at = time.monotonic()
        first_chunk = True

        try:
            async with asyncio.timeout(timeout):
                try:
                    stream = await self.completion_backend.start_completion(messages, token)
                except OperationCancelled:
                    return None

                async for chunk in stream:
                    if first_chunk:
                        first_chunk = False
                        metrics.time_to_first_chunk_seconds.labels(provider=provider).observe(
                            time.monotonic() - requested_at
                        )
                    metrics.stream_chunks_total.labels(provider=provider).inc()
                    await emit(StreamChunkEvent(content=chunk.content))

                if stream.cancelled or token.is_cancelled:
                    return None
                return await stream.full_text
        except TimeoutError as e:
            raise CompletionError(
                code=ErrorCode.COMPLETION_TIMEOUT,
                message=f"Completion timed out after {timeout:g} seconds",
                details={"provider": provider},
                cause=e,
            ) from e

    async def _fail_and_refund(
        self,
        ctx: ConnectionContext,
        result: TurnResult,
        emit: EmitFn,
        error: Exception,
        debit_reference: str,
    ) -> None:
        # Tag the refund like the debit when no conversation was resolved
        conversation_ref = str(result.conversation_id) if result.conversation_id else debit_reference
        if isinstance(error, AppException):
            result.error_code = error.code
            message = error.message
            logger.error(
                f"Chat turn failed at {result.state.value}: {message}",
                error_code=error.code.value,
                conversation_id=conversation_ref,
            )
        else:
            result.error_code = ErrorCode.INTERNAL_UNEXPECTED
            message = UNEXPECTED_ERROR_MESSAGE
            logger.error(
                f"Chat turn failed at {result.state.value}: {error}",
                conversation_id=conversation_ref,
                exc_info=True,
            )

        await emit(StreamErrorEvent(message=message))

        result.state = TurnState.REFUNDING
        try:
            # A refund that has started completes even if the turn task is cancelled
            await asyncio.shield(self.billing.refund_token(ctx.user_id, conversation_ref))
        except Exception as refund_error:
            metrics.refund_failures_total.inc()
            logger.error(
                f"Token refund failed: {refund_error}",
                conversation_id=conversation_ref,
                exc_info=not isinstance(refund_error, LedgerError),
            )
        else:
            result.refunded = True
            logger.info("Token refunded", conversation_id=conversation_ref)
            await emit(TokenRefundedEvent(message=REFUND_NOTICE))

        result.state = TurnState.FAILED

    async def _reject(self, result: TurnResult, emit: EmitFn, code: ErrorCode, message: str) -> TurnResult:
        """Terminal failure before any debit: no refund needed."""
        logger.info(f"Chat turn rejected: {message}", error_code=code.value)
        result.state = TurnState.FAILED
        result.error_code = code
        await emit(ErrorEvent(code=code.value, message=message))
        metrics.chat_turns_total.labels(outcome="rejected").inc()
        return result

    @staticmethod
    def _outcome_label(state: TurnState) -> str:
        if state is TurnState.DONE:
            return "completed"
        if state is TurnState.ABORTED:
            return "aborted"
        return "failed"


__all__ = [
    "ChatService",
    "ConnectionContext",
    "EmitFn",
    "TurnResult",
    "TurnState",
]
