"""Tests for cancellation tokens and the active stream registry."""

from __future__ import annotations

import asyncio

from unittest.mock import Mock

import pytest

from tokenchat.api.websocket.task_manager import ActiveStreamRegistry, CancellationToken, OperationCancelled


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self) -> None:
        token = CancellationToken()
        callback = Mock()
        token.on_cancel(callback)

        await token.cancel("first")
        await token.cancel("second")

        assert token.is_cancelled
        assert token.cancel_reason == "first"
        callback.assert_called_once()

    @pytest.mark.asyncio
    async def test_callback_after_cancel_runs_immediately(self) -> None:
        token = CancellationToken()
        await token.cancel()
        callback = Mock()

        token.on_cancel(callback)

        callback.assert_called_once()

    @pytest.mark.asyncio
    async def test_removed_callback_not_called(self) -> None:
        token = CancellationToken()
        callback = Mock()
        token.on_cancel(callback)
        token.remove_callback(callback)
        token.remove_callback(callback)

        await token.cancel()

        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_others(self) -> None:
        token = CancellationToken()
        second = Mock()
        token.on_cancel(Mock(side_effect=RuntimeError("boom")))
        token.on_cancel(second)

        await token.cancel()

        second.assert_called_once()

    @pytest.mark.asyncio
    async def test_check(self) -> None:
        token = CancellationToken()
        token.check()
        await token.cancel("client abort")

        with pytest.raises(OperationCancelled, match="client abort"):
            token.check()

    @pytest.mark.asyncio
    async def test_race_returns_result(self) -> None:
        async def work() -> int:
            return 42

        assert await CancellationToken().race(work()) == 42

    @pytest.mark.asyncio
    async def test_race_cancels_pending_operation(self) -> None:
        token = CancellationToken()
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def slow() -> None:
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        racing = asyncio.create_task(token.race(slow()))
        await started.wait()
        await token.cancel("client abort")

        with pytest.raises(OperationCancelled):
            await racing
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_race_on_cancelled_token(self) -> None:
        token = CancellationToken()
        await token.cancel()

        async def work() -> int:
            return 1

        coro = work()
        with pytest.raises(OperationCancelled):
            await token.race(coro)
        coro.close()


class TestActiveStreamRegistry:
    @pytest.mark.asyncio
    async def test_cancel_registered(self) -> None:
        registry = ActiveStreamRegistry()
        token = CancellationToken()
        await registry.register("conn-1", token)

        assert "conn-1" in registry
        assert await registry.cancel("conn-1", reason="client abort") is True

        assert token.is_cancelled
        assert token.cancel_reason == "client abort"
        assert "conn-1" not in registry

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_noop(self) -> None:
        assert await ActiveStreamRegistry().cancel("conn-x") is False

    @pytest.mark.asyncio
    async def test_discard_only_matching_token(self) -> None:
        """Test that a finished stream cannot remove a newer stream's handle."""
        registry = ActiveStreamRegistry()
        old, new = CancellationToken(), CancellationToken()
        await registry.register("conn-1", old)
        await registry.register("conn-1", new)

        await registry.discard("conn-1", old)

        assert "conn-1" in registry
        assert old.is_cancelled
        assert old.cancel_reason == "superseded"
        assert not new.is_cancelled

        await registry.discard("conn-1", new)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_cancel_all(self) -> None:
        registry = ActiveStreamRegistry()
        tokens = [CancellationToken() for _ in range(3)]
        for i, token in enumerate(tokens):
            await registry.register(f"conn-{i}", token)

        assert await registry.cancel_all() == 3

        assert all(t.cancel_reason == "shutdown" for t in tokens)
        assert len(registry) == 0
