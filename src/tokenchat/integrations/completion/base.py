"""
Provider-neutral completion streaming.

Every backend turns its wire format into an async iterator of text fragments
and hands it to ``CompletionStream``, which owns the rest of the contract:

- lazy single-pass iteration yielding ``CompletionChunk`` objects
- ``full_text``: a future resolved with the concatenated text once the
  iterator is exhausted, rejected with ``CompletionError`` on failure and
  cancelled when the stream is aborted
- prompt reaction to the turn's ``CancellationToken``
"""

from __future__ import annotations

import asyncio

from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from tokenchat.api.middleware.exception_handlers import CompletionError
from tokenchat.api.websocket.task_manager import CancellationToken
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils.logger import logger

ChatMessages = Sequence[dict[str, str]]


@dataclass(frozen=True, slots=True)
class CompletionChunk:
    content: str


class _End:
    """Queue sentinel marking the end of the chunk sequence."""


_END = _End()


def _consume_outcome(future: asyncio.Future[str]) -> None:
    # Mark a rejected future as retrieved; the failure reaches callers through iteration
    if not future.cancelled():
        future.exception()


class CompletionStream:
    """Normalized completion stream shared by all backends.

    The underlying iterator runs in its own task so a cancellation can abort
    it at any await point, including while waiting for the first byte.

    Usage:
        stream = await backend.start_completion(messages, token)
        async for chunk in stream:
            await emit(chunk.content)
        if not stream.cancelled:
            text = await stream.full_text
    """

    def __init__(
        self,
        chunks: AsyncIterator[str],
        *,
        provider: str,
        cancel_token: CancellationToken | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.provider = provider
        self.full_text: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self.full_text.add_done_callback(_consume_outcome)
        self.cancelled = False

        self._chunks = chunks
        self._token = cancel_token or CancellationToken()
        self._on_close = on_close
        self._queue: asyncio.Queue[CompletionChunk | CompletionError | _End] = asyncio.Queue()
        self._parts: list[str] = []
        self._producer: asyncio.Task[None] | None = None
        self._started = False
        self._closed = False

    async def _produce(self) -> None:
        try:
            async for content in self._chunks:
                self._parts.append(content)
                self._queue.put_nowait(CompletionChunk(content))
        except CompletionError as e:
            self._fail(e)
        except Exception as e:
            self._fail(
                CompletionError(
                    code=ErrorCode.STREAM_ERROR,
                    message=f"Stream processing error: {e}",
                    details={"provider": self.provider},
                    cause=e,
                )
            )
        else:
            text = "".join(self._parts)
            if not self.full_text.done():
                self.full_text.set_result(text)
            logger.info(
                "Completion stream finished",
                response_length=len(text),
                provider=self.provider,
            )

    def _fail(self, error: CompletionError) -> None:
        logger.error(f"Completion stream failed: {error.message}", provider=self.provider)
        if not self.full_text.done():
            self.full_text.set_exception(error)
        self._queue.put_nowait(error)

    def _producer_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            self.cancelled = True
            if not self.full_text.done():
                self.full_text.cancel()
        self._queue.put_nowait(_END)

    def _abort_producer(self) -> None:
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()

    async def __aiter__(self) -> AsyncIterator[CompletionChunk]:
        if self._started:
            raise RuntimeError("CompletionStream can only be iterated once")
        self._started = True

        if self._token.is_cancelled:
            self.cancelled = True
            await self.aclose()
            return

        self._producer = asyncio.create_task(self._produce())
        self._producer.add_done_callback(self._producer_done)
        callback = self._token.on_cancel(self._abort_producer)
        try:
            while True:
                item = await self._queue.get()
                if self._token.is_cancelled:
                    self.cancelled = True
                    break
                if isinstance(item, _End):
                    break
                if isinstance(item, CompletionError):
                    raise item
                yield item
        finally:
            self._token.remove_callback(callback)
            await self.aclose()

    async def aclose(self) -> None:
        """Stop the producer and release the upstream response. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True

        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
            try:
                await self._producer
            except asyncio.CancelledError:
                pass

        if not self.full_text.done():
            self.cancelled = True
            self.full_text.cancel()

        try:
            closer = getattr(self._chunks, "aclose", None)
            if closer is not None:
                await closer()
            if self._on_close is not None:
                await self._on_close()
        except Exception as e:
            logger.warning(f"Error closing {self.provider} completion stream: {e}")


@runtime_checkable
class CompletionBackend(Protocol):
    """Capability interface implemented by every LLM backend.

    ``start_completion`` performs connection setup (raising ``CompletionError``
    for configuration, connection and HTTP failures, or ``OperationCancelled``
    if the token fires first) and returns the stream of the response.
    """

    provider: str

    async def start_completion(
        self,
        messages: ChatMessages,
        cancel_token: CancellationToken,
    ) -> CompletionStream: ...


__all__ = [
    "ChatMessages",
    "CompletionBackend",
    "CompletionChunk",
    "CompletionStream",
]
