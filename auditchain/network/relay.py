"""
Relay-mediated WebSocket transport.

Connects to a relay server, registers this peer and joins a room. Sync
messages are sent directly as pass-through types and the relay forwards
them to every other connected peer. While disconnected, outbound frames
are held in a bounded queue and flushed on the next successful connect.
"""

import asyncio
import json
import logging
from collections import deque
from typing import Any, Optional

import websockets

from ..exceptions import TransportError
from .messages import (
    PASS_THROUGH_TYPES,
    JoinRoomMessage,
    PeerLeftMessage,
    PeerListMessage,
    RegisterMessage,
    RelayMessage,
    WelcomeMessage,
    make_envelope,
)
from .transport import Transport

logger = logging.getLogger(__name__)


class RelayTransport(Transport):
    """
    WebSocket client for the relay server.

    Reconnects with capped exponential backoff, giving up after
    ``max_reconnect_attempts`` consecutive failures. ``reconnect()``
    restarts the cycle manually.

    Usage:
        relay = RelayTransport("ws://localhost:8080", peer_id)
        relay.subscribe("new-block", handler)
        await relay.start()
        await relay.wait_connected(5.0)
    """

    name = "relay"

    def __init__(
        self,
        url: str,
        peer_id: str,
        room_id: str = "default",
        reconnect_delay: float = 3.0,
        max_reconnect_delay: float = 30.0,
        max_reconnect_attempts: int = 10,
        max_queued: int = 1000,
    ) -> None:
        if not url.startswith(("ws://", "wss://")):
            raise TransportError(f"Relay URL must be ws:// or wss://, got {url!r}", peer_id)

        super().__init__(peer_id)
        self.url = url
        self.room_id = room_id
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts

        self._queue: deque[str] = deque(maxlen=max_queued)
        self._peers: set[str] = set()
        self._ws: Optional[Any] = None
        self._connected = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None
        self._running = False
        self._attempts = 0

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def peers(self) -> set[str]:
        return set(self._peers) if self.connected else set()

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._attempts = 0
        self._runner = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if not self._running and self._runner is None:
            return

        self._running = False

        if self._ws is not None:
            await self._ws.close()

        if self._runner:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None

        self._mark_disconnected()
        logger.info("[relay] Transport stopped")

    async def reconnect(self) -> None:
        """Reset the attempt counter and connect again."""
        logger.info("[relay] Manual reconnect requested")
        if self._runner is not None and not self._runner.done():
            self._attempts = 0
            if self._ws is not None:
                await self._ws.close()
            return

        self._running = False
        self._runner = None
        await self.start()

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until connected (and registered); False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def publish(self, msg_type: str, data: Any) -> bool:
        envelope = make_envelope(msg_type, data, self.peer_id)
        if msg_type in PASS_THROUGH_TYPES:
            frame = envelope
        else:
            frame = {"type": "broadcast", "data": envelope}
        return await self._send(json.dumps(frame))

    async def _send(self, frame: str) -> bool:
        if self.connected and self._ws is not None:
            try:
                await self._ws.send(frame)
                return True
            except websockets.ConnectionClosed:
                logger.warning("[relay] Connection closed while sending, queueing frame")

        if len(self._queue) == self._queue.maxlen:
            logger.warning("[relay] Outbound queue full, dropping oldest frame")
        self._queue.append(frame)
        return True

    async def _run(self) -> None:
        while self._running:
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    self._attempts = 0
                    await self._on_open(ws)
                    async for raw in ws:
                        await self._dispatch(raw)
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
                logger.warning(f"[relay] Connection to {self.url} failed: {e}")
            finally:
                self._mark_disconnected()

            if not self._running:
                break

            self._attempts += 1
            if self._attempts > self.max_reconnect_attempts:
                logger.error(
                    f"[relay] Giving up after {self.max_reconnect_attempts} reconnect attempts"
                )
                self._running = False
                break

            delay = min(
                self.reconnect_delay * (2 ** (self._attempts - 1)),
                self.max_reconnect_delay,
            )
            logger.info(
                f"[relay] Reconnecting in {delay:.1f}s "
                f"(attempt {self._attempts}/{self.max_reconnect_attempts})"
            )
            await asyncio.sleep(delay)

    async def _on_open(self, ws: Any) -> None:
        await ws.send(RegisterMessage(peer_id=self.peer_id).to_json())
        await ws.send(JoinRoomMessage(room_id=self.room_id).to_json())
        self._connected.set()
        logger.info(f"[relay] Connected to {self.url} as {self.peer_id[:16]}")

        flushed = 0
        while self._queue:
            frame = self._queue.popleft()
            try:
                await ws.send(frame)
            except websockets.ConnectionClosed:
                self._queue.appendleft(frame)
                raise
            flushed += 1
        if flushed:
            logger.info(f"[relay] Flushed {flushed} queued frame(s)")

    def _mark_disconnected(self) -> None:
        self._ws = None
        self._connected.clear()
        self._peers.clear()

    async def _on_message(self, message: RelayMessage) -> None:
        if isinstance(message, WelcomeMessage):
            logger.debug(f"[relay] {message.message or 'welcome'}")
            return
        if isinstance(message, PeerListMessage):
            self._peers = {p for p in message.peers if p != self.peer_id}
            logger.debug(f"[relay] {len(self._peers)} peer(s) online")
            return
        if isinstance(message, PeerLeftMessage):
            self._peers.discard(message.peer_id)
            logger.debug(f"[relay] Peer left: {message.peer_id[:16]}")
            return

        await super()._on_message(message)
