"""
Cooperative cancellation for in-flight completions.

- ``CancellationToken``: one per streaming turn, signalled by an abort or a disconnect
- ``ActiveStreamRegistry``: connection id -> token map owned by the application
  lifespan and injected into the chat service, so an inbound abort can reach
  the turn that is streaming on the same connection
"""

from __future__ import annotations

import asyncio
import contextlib

from collections.abc import Awaitable, Callable
from typing import TypeVar

from tokenchat.utils import metrics
from tokenchat.utils.logger import logger

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when a ``CancellationToken`` fires while an operation is pending.

    Distinct from ``asyncio.CancelledError``: this is a user-level abort of one
    completion, not cancellation of the task running the turn.
    """

    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(reason or "Operation cancelled")


class CancellationToken:
    """Cooperative cancellation token.

    Usage:
        token = CancellationToken()

        # In the controller (abort handler):
        await token.cancel("client abort")

        # In the worker:
        response = await token.race(client.send(request, stream=True))
        token.check()  # Raises OperationCancelled if cancelled
    """

    __slots__ = ("_callbacks", "_cancel_reason", "_cancelled", "_lock")

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._cancel_reason: str | None = None
        self._lock = asyncio.Lock()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> str | None:
        return self._cancel_reason

    async def cancel(self, reason: str | None = None) -> None:
        """Request cancellation and notify all callbacks. Idempotent."""
        async with self._lock:
            if self._cancelled.is_set():
                return

            self._cancel_reason = reason
            self._cancelled.set()

            for callback in list(self._callbacks):
                self._invoke_callback(callback)

    def _invoke_callback(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.warning(f"Cancellation callback error: {e}")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback to run on cancellation; runs immediately if already cancelled."""
        if self._cancelled.is_set():
            self._invoke_callback(callback)
            return callback

        self._callbacks.append(callback)
        return callback

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(callback)

    def check(self) -> None:
        """Raise ``OperationCancelled`` if cancellation was requested."""
        if self.is_cancelled:
            raise OperationCancelled(self._cancel_reason)

    async def race(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token fires first.

        On cancellation the pending operation is cancelled (closing any
        in-flight network request it owns) and ``OperationCancelled`` is raised.
        A result that is already available wins over a simultaneous cancel.
        """
        self.check()

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Cancelled operation raised during teardown: {e}")
        raise OperationCancelled(self._cancel_reason)


class ActiveStreamRegistry:
    """Connection id -> cancellation handle for the completion streaming on it.

    Every mutation happens under one lock, so an abort racing stream
    completion either cancels the live token or finds nothing; it never
    cancels a token that a newer stream on the same connection registered.
    """

    def __init__(self) -> None:
        self._handles: dict[str, CancellationToken] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection_id: str, token: CancellationToken) -> None:
        async with self._lock:
            previous = self._handles.get(connection_id)
            self._handles[connection_id] = token
            metrics.active_streams.set(len(self._handles))

        if previous is not None and previous is not token:
            logger.warning("Replacing active stream handle", connection_id=connection_id)
            await previous.cancel("superseded")

    async def cancel(self, connection_id: str, reason: str = "aborted") -> bool:
        """Cancel and remove the handle for ``connection_id``. No-op (False) if none is registered."""
        async with self._lock:
            token = self._handles.pop(connection_id, None)
            metrics.active_streams.set(len(self._handles))

        if token is None:
            return False

        await token.cancel(reason)
        logger.info(f"Active stream cancelled ({reason})", connection_id=connection_id)
        return True

    async def discard(self, connection_id: str, token: CancellationToken) -> None:
        """Remove the handle only if it is still ``token``."""
        async with self._lock:
            if self._handles.get(connection_id) is token:
                del self._handles[connection_id]
            metrics.active_streams.set(len(self._handles))

    async def cancel_all(self, reason: str = "shutdown") -> int:
        async with self._lock:
            tokens = list(self._handles.values())
            self._handles.clear()
            metrics.active_streams.set(0)

        for token in tokens:
            await token.cancel(reason)
        return len(tokens)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)


__all__ = ["ActiveStreamRegistry", "CancellationToken", "OperationCancelled"]
