"""
Development relay server.

A minimal WebSocket relay for local networks and tests:
- Greets each connection with a welcome message
- Tracks registered peers and the rooms they join
- Forwards pass-through sync messages to every other peer verbatim
- Unwraps ``broadcast`` envelopes and forwards ``direct`` messages
- Announces the peer list on every registration and peer-left on close

It does not persist, authenticate or interpret chain data.
"""

import json
import logging
import time
from typing import Any, Optional

import websockets

from .messages import (
    PASS_THROUGH_TYPES,
    PeerLeftMessage,
    PeerListMessage,
    WelcomeMessage,
)

logger = logging.getLogger(__name__)


class RelayServer:
    """
    WebSocket relay between chain peers.

    Usage:
        server = RelayServer(port=0)
        await server.start()
        url = server.url
        ...
        await server.stop()
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 8080) -> None:
        self.host = host
        self.port = port

        self._server: Optional[Any] = None
        self._clients: dict[str, Any] = {}
        self._rooms: dict[str, set[str]] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def peers(self) -> list[str]:
        return list(self._clients.keys())

    @property
    def rooms(self) -> dict[str, set[str]]:
        return {room: set(members) for room, members in self._rooms.items()}

    async def start(self) -> None:
        """Start listening. Port 0 binds an ephemeral port."""
        if self._running:
            return

        self._server = await websockets.serve(
            self._handle_connection,
            self.host,
            self.port,
        )

        # Update port if it was 0 (ephemeral)
        if self.port == 0 and self._server.sockets:
            sock = list(self._server.sockets)[0]
            self.port = sock.getsockname()[1]

        self._running = True
        logger.info(f"Relay server started on {self.host}:{self.port}")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False

        for ws in list(self._clients.values()):
            await ws.close()
        self._clients.clear()
        self._rooms.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("Relay server stopped")

    async def _handle_connection(self, ws: Any) -> None:
        peer_id: Optional[str] = None

        try:
            await ws.send(WelcomeMessage(
                message="Connected to P2P relay",
                timestamp=int(time.time() * 1000),
            ).to_json())

            async for raw in ws:
                try:
                    data = json.loads(raw)
                except ValueError as e:
                    logger.error(f"Invalid frame from {peer_id or 'unregistered peer'}: {e}")
                    continue
                if not isinstance(data, dict):
                    logger.warning("Ignoring non-object frame")
                    continue

                try:
                    peer_id = await self._handle_message(data, peer_id, ws)
                except Exception as e:
                    logger.error(f"Error handling message: {e}")

        except websockets.ConnectionClosed:
            pass
        finally:
            if peer_id and self._clients.get(peer_id) is ws:
                await self._remove_peer(peer_id)

    async def _handle_message(
        self,
        data: dict[str, Any],
        peer_id: Optional[str],
        ws: Any,
    ) -> Optional[str]:
        """Route one client frame. Returns the (possibly new) peer id."""
        msg_type = data.get("type")

        if msg_type == "register":
            new_id = data.get("peerId")
            if not isinstance(new_id, str) or not new_id:
                logger.warning("Register without peerId ignored")
                return peer_id
            self._clients[new_id] = ws
            logger.info(f"Peer registered: {new_id[:16]} (total: {len(self._clients)})")
            await self._send_all(PeerListMessage(peers=self.peers).to_dict())
            return new_id

        if msg_type == "join-room":
            room_id = data.get("roomId") or "default"
            if peer_id:
                self._rooms.setdefault(room_id, set()).add(peer_id)
                logger.info(f"{peer_id[:16]} joined room: {room_id}")
            return peer_id

        if msg_type == "broadcast":
            inner = data.get("data")
            if isinstance(inner, dict):
                logger.debug(f"Broadcasting {inner.get('type', 'message')} from {peer_id}")
                await self._send_others(peer_id, inner)
            return peer_id

        if msg_type == "direct":
            target = self._clients.get(data.get("targetPeer"))
            if target is not None and isinstance(data.get("data"), dict):
                await self._send(target, data["data"])
            return peer_id

        if msg_type in PASS_THROUGH_TYPES:
            logger.debug(f"Forwarding {msg_type} from {peer_id}")
            await self._send_others(peer_id, data)
            return peer_id

        logger.warning(f"Unknown message type: {msg_type}")
        return peer_id

    async def _remove_peer(self, peer_id: str) -> None:
        self._clients.pop(peer_id, None)
        for room_id in list(self._rooms):
            self._rooms[room_id].discard(peer_id)
            if not self._rooms[room_id]:
                del self._rooms[room_id]

        logger.info(f"Peer disconnected: {peer_id[:16]} (total: {len(self._clients)})")
        await self._send_all(PeerLeftMessage(peer_id=peer_id).to_dict())

    async def _send(self, ws: Any, message: dict[str, Any]) -> bool:
        try:
            await ws.send(json.dumps(message))
            return True
        except websockets.ConnectionClosed:
            return False

    async def _send_all(self, message: dict[str, Any]) -> None:
        for ws in list(self._clients.values()):
            await self._send(ws, message)

    async def _send_others(self, exclude: Optional[str], message: dict[str, Any]) -> None:
        for client_id, ws in list(self._clients.items()):
            if client_id != exclude:
                await self._send(ws, message)
