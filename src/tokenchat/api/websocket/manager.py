"""Registry of open chat sockets: admission limits, idle reaping, keepalive and shutdown drain."""

from __future__ import annotations

import asyncio
import contextlib
import time

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket

from tokenchat.api.websocket.errors import WSCloseCode
from tokenchat.core.constants import MSG_TYPE_PING
from tokenchat.utils import metrics
from tokenchat.utils.logger import logger

SHUTDOWN_FRAME = {"type": "server_shutdown", "message": "Server is shutting down"}


@dataclass
class Peer:
    """One accepted chat socket and the user it authenticated as."""

    websocket: WebSocket
    user_id: str
    last_seen: float = field(default_factory=time.monotonic)


class WebSocketManager:
    """Admit, track and close chat sockets.

    A connection is refused (never accepted) when the server is draining, the
    global cap is reached, or the user already holds ``max_connections_per_user``
    sockets. Sockets silent for ``idle_timeout_seconds`` are closed with 4000.
    """

    def __init__(
        self,
        idle_timeout_seconds: float = 600.0,
        max_connections: int = 100,
        max_connections_per_user: int = 5,
    ) -> None:
        self.peers: dict[WebSocket, Peer] = {}
        self.idle_timeout = idle_timeout_seconds
        self.max_connections = max_connections
        self.max_connections_per_user = max_connections_per_user
        self._per_user: Counter[str] = Counter()
        self._lock = asyncio.Lock()
        self._reaper: asyncio.Task[None] | None = None
        self._shutting_down = False

    def _refusal(self, user_id: str) -> str | None:
        if self._shutting_down:
            return "server shutting down"
        if len(self.peers) >= self.max_connections:
            return f"server at {self.max_connections} connections"
        if self._per_user[user_id] >= self.max_connections_per_user:
            return f"user at {self.max_connections_per_user} connections"
        return None

    async def connect(self, websocket: WebSocket, user_id: str) -> bool:
        """Accept and register ``websocket``; False if it was refused and left unaccepted."""
        async with self._lock:
            if reason := self._refusal(user_id):
                logger.warning(f"Refusing chat socket: {reason}", user_id=user_id)
                return False

            await websocket.accept()
            self.peers[websocket] = Peer(websocket, user_id)
            self._per_user[user_id] += 1
            metrics.ws_connections_total.inc()
            metrics.ws_connections_active.set(len(self.peers))

        logger.info(f"Chat socket open ({self._per_user[user_id]} for user, {len(self.peers)} total)", user_id=user_id)
        return True

    async def disconnect(self, websocket: WebSocket, user_id: str) -> None:
        """Forget ``websocket``. Idempotent."""
        async with self._lock:
            if self.peers.pop(websocket, None) is not None:
                self._per_user[user_id] -= 1
                if self._per_user[user_id] <= 0:
                    del self._per_user[user_id]
            metrics.ws_connections_active.set(len(self.peers))

    async def touch(self, websocket: WebSocket) -> None:
        """Record inbound activity, postponing the idle close."""
        if peer := self.peers.get(websocket):
            peer.last_seen = time.monotonic()

    async def send(self, websocket: WebSocket, message: dict[str, Any]) -> bool:
        """Send one JSON frame. Returns False when the peer is already gone."""
        try:
            await websocket.send_json(message)
        except Exception as e:
            # Starlette raises RuntimeError or WebSocketDisconnect depending on close state
            logger.debug(f"Chat socket send failed: {e!r}")
            return False
        metrics.ws_messages_total.labels(direction="outbound").inc()
        return True

    async def keepalive(self, websocket: WebSocket, interval: float) -> None:
        """Ping every ``interval`` seconds until a send fails."""
        while True:
            await asyncio.sleep(interval)
            if not await self.send(websocket, {"type": MSG_TYPE_PING}):
                return

    async def start_idle_checker(self) -> None:
        if self._reaper is None:
            self._reaper = asyncio.create_task(self._reap_forever())
            logger.info(f"Idle socket reaper started (timeout: {self.idle_timeout}s)")

    async def stop_idle_checker(self) -> None:
        if self._reaper is None:
            return
        self._reaper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._reaper
        self._reaper = None

    async def _reap_forever(self) -> None:
        while True:
            await asyncio.sleep(min(60.0, self.idle_timeout / 2))
            await self.close_idle()

    async def close_idle(self) -> int:
        """Close every socket idle past the timeout; returns how many were closed."""
        cutoff = time.monotonic() - self.idle_timeout
        idle = [peer for peer in list(self.peers.values()) if peer.last_seen < cutoff]
        for peer in idle:
            logger.info("Closing idle chat socket", user_id=peer.user_id)
            await self._close(peer, WSCloseCode.IDLE_TIMEOUT, "Idle timeout")
        return len(idle)

    async def _close(self, peer: Peer, code: int, reason: str) -> None:
        with contextlib.suppress(Exception):
            await peer.websocket.close(code=code, reason=reason)
        await self.disconnect(peer.websocket, peer.user_id)

    async def graceful_shutdown(self, timeout: float = 10.0) -> None:
        """Refuse new sockets, announce ``server_shutdown`` to every peer, then close them all with 1001."""
        self._shutting_down = True
        await self.stop_idle_checker()

        peers = list(self.peers.values())
        logger.info(f"Draining {len(peers)} chat sockets (timeout: {timeout}s)")
        for peer in peers:
            await self.send(peer.websocket, SHUTDOWN_FRAME)
        if peers:
            # Let the announcement reach clients before the close frame
            await asyncio.sleep(0.5)

        try:
            async with asyncio.timeout(timeout):
                await asyncio.gather(*(self._close(peer, WSCloseCode.GOING_AWAY, "Server shutdown") for peer in peers))
        except TimeoutError:
            logger.warning(f"Timed out closing chat sockets; {len(self.peers)} still open")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def connection_count(self) -> int:
        return len(self.peers)

    @property
    def user_count(self) -> int:
        return len(self._per_user)

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_connections": self.connection_count,
            "total_users": self.user_count,
            "max_connections": self.max_connections,
            "max_per_user": self.max_connections_per_user,
            "idle_timeout": self.idle_timeout,
            "shutting_down": self._shutting_down,
        }
