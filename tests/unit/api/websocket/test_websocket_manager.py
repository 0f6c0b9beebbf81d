"""Tests for WebSocket manager.

Tests connection limits, idle cleanup and graceful shutdown.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock, patch

import pytest

from tokenchat.api.websocket.manager import WebSocketManager


def _ws() -> Mock:
    ws = Mock()
    ws.accept = AsyncMock()
    ws.send_json = AsyncMock()
    ws.close = AsyncMock()
    return ws


class TestConnectionLifecycle:
    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self) -> None:
        manager = WebSocketManager()
        ws = _ws()

        assert await manager.connect(ws, "user-1") is True
        ws.accept.assert_awaited_once()
        assert manager.connection_count == 1

        await manager.disconnect(ws, "user-1")
        await manager.disconnect(ws, "user-1")

        assert manager.connection_count == 0
        assert manager.user_count == 0

    @pytest.mark.asyncio
    async def test_per_user_limit(self) -> None:
        manager = WebSocketManager(max_connections_per_user=2)

        assert await manager.connect(_ws(), "user-1")
        assert await manager.connect(_ws(), "user-1")
        rejected = _ws()
        assert await manager.connect(rejected, "user-1") is False
        assert await manager.connect(_ws(), "user-2") is True

        rejected.accept.assert_not_called()
        assert manager.user_count == 2

    @pytest.mark.asyncio
    async def test_total_limit(self) -> None:
        manager = WebSocketManager(max_connections=1)

        assert await manager.connect(_ws(), "user-1")
        assert await manager.connect(_ws(), "user-2") is False

    @pytest.mark.asyncio
    async def test_rejects_during_shutdown(self) -> None:
        manager = WebSocketManager()
        with patch("tokenchat.api.websocket.manager.asyncio.sleep", new=AsyncMock()):
            await manager.graceful_shutdown(timeout=1.0)

        assert await manager.connect(_ws(), "user-1") is False
        assert manager.is_shutting_down


class TestMessaging:
    @pytest.mark.asyncio
    async def test_send_reports_dead_peer(self) -> None:
        manager = WebSocketManager()
        ws = _ws()
        ws.send_json.side_effect = RuntimeError("gone")

        assert await manager.send(ws, {"type": "ping"}) is False

    @pytest.mark.asyncio
    async def test_keepalive_stops_when_peer_gone(self) -> None:
        manager = WebSocketManager()
        ws = _ws()
        ws.send_json.side_effect = [None, RuntimeError("gone")]

        with patch("tokenchat.api.websocket.manager.asyncio.sleep", new=AsyncMock()):
            await manager.keepalive(ws, interval=30.0)

        assert ws.send_json.await_count == 2
        ws.send_json.assert_any_await({"type": "ping"})


class TestIdleAndShutdown:
    @pytest.mark.asyncio
    async def test_idle_connections_closed(self) -> None:
        manager = WebSocketManager(idle_timeout_seconds=60.0)
        idle, active = _ws(), _ws()
        await manager.connect(idle, "user-1")
        await manager.connect(active, "user-2")
        manager.peers[idle].last_seen -= 120.0

        closed = await manager.close_idle()

        assert closed == 1
        idle.close.assert_awaited_once_with(code=4000, reason="Idle timeout")
        active.close.assert_not_called()
        assert manager.connection_count == 1

    @pytest.mark.asyncio
    async def test_touch_keeps_connection_alive(self) -> None:
        manager = WebSocketManager(idle_timeout_seconds=60.0)
        ws = _ws()
        await manager.connect(ws, "user-1")
        manager.peers[ws].last_seen -= 120.0

        await manager.touch(ws)
        closed = await manager.close_idle()

        ws.close.assert_not_called()
        assert closed == 0

    @pytest.mark.asyncio
    async def test_idle_checker_start_stop(self) -> None:
        manager = WebSocketManager()

        await manager.start_idle_checker()
        assert manager._reaper is not None
        await manager.stop_idle_checker()

        assert manager._reaper is None

    @pytest.mark.asyncio
    async def test_graceful_shutdown_notifies_and_closes(self) -> None:
        manager = WebSocketManager()
        ws = _ws()
        await manager.connect(ws, "user-1")

        with patch("tokenchat.api.websocket.manager.asyncio.sleep", new=AsyncMock()):
            await manager.graceful_shutdown(timeout=1.0)

        ws.send_json.assert_awaited_once_with({"type": "server_shutdown", "message": "Server is shutting down"})
        ws.close.assert_awaited_once_with(code=1001, reason="Server shutdown")
        assert manager.connection_count == 0

    def test_stats(self) -> None:
        stats = WebSocketManager(max_connections=7).get_stats()

        assert stats["max_connections"] == 7
        assert stats["total_connections"] == 0
        assert stats["shutting_down"] is False

    @pytest.mark.asyncio
    async def test_disconnect_frees_user_slot(self) -> None:
        manager = WebSocketManager(max_connections_per_user=1)
        first = _ws()
        await manager.connect(first, "user-1")
        assert await manager.connect(_ws(), "user-1") is False

        await manager.disconnect(first, "user-1")

        assert await manager.connect(_ws(), "user-1") is True
