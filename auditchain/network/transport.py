"""
Transport contract shared by every sync channel.

A transport moves sync messages between peers. It exposes the same
``subscribe(type, handler)`` / ``publish(type, data)`` surface whether it
is an in-process broadcast channel or a relay-mediated WebSocket, so the
sync coordinator treats messages from either one identically.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Coroutine, Union

from ..exceptions import MessageParseError
from .messages import (
    SYNC_TYPES,
    PassThroughMessage,
    RelayMessage,
    SyncMessage,
    parse_message,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[SyncMessage, "Transport"], Coroutine[Any, Any, None]]


class Transport(ABC):
    """Base class for sync transports."""

    name = "transport"

    def __init__(self, peer_id: str) -> None:
        self.peer_id = peer_id
        self._handlers: dict[str, list[MessageHandler]] = {}

    def subscribe(self, msg_type: str, handler: MessageHandler) -> None:
        """Register a coroutine handler for one message type."""
        self._handlers.setdefault(msg_type, []).append(handler)

    def unsubscribe_all(self) -> None:
        self._handlers.clear()

    @abstractmethod
    async def publish(self, msg_type: str, data: Any) -> bool:
        """
        Send a sync message to every other peer on this transport.

        Returns:
            True if delivered (or queued for delivery)
        """

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @property
    def peers(self) -> set[str]:
        """Ids of other live peers reachable through this transport."""
        return set()

    async def _dispatch(self, raw: Union[str, bytes, dict[str, Any]]) -> None:
        """
        Parse one inbound frame and hand it to subscribers.

        Malformed frames and handler failures are logged and dropped so
        that one bad message never stops delivery of the next.
        """
        try:
            message = parse_message(raw)
        except MessageParseError as e:
            logger.warning(f"[{self.name}] Discarding frame: {e.message}")
            return

        await self._on_message(message)

    async def _on_message(self, message: RelayMessage) -> None:
        """Deliver a parsed message to subscribers of its type."""
        if message.type not in SYNC_TYPES and not isinstance(message, PassThroughMessage):
            logger.debug(f"[{self.name}] Ignoring {message.type} frame")
            return

        if message.peer_id is not None and message.peer_id == self.peer_id:
            return

        for handler in list(self._handlers.get(message.type, [])):
            try:
                await handler(message, self)
            except Exception as e:
                logger.error(f"[{self.name}] Error handling {message.type}: {e}")
