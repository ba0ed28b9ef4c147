"""
Sync transports and the relay message protocol.

This package provides:
- Relay/sync message union and parser
- Transport contract (subscribe / publish)
- BroadcastChannelTransport: in-process channel between local instances
- RelayTransport: WebSocket client for the relay
- RelayServer: development relay
"""

from .messages import (
    NEW_BLOCK,
    NEW_EVENT,
    REQUEST_SYNC,
    SYNC_RESPONSE,
    make_envelope,
    parse_message,
)
from .transport import Transport
from .broadcast import BroadcastChannelTransport, BroadcastHub
from .relay import RelayTransport
from .relay_server import RelayServer

__all__ = [
    "NEW_BLOCK",
    "NEW_EVENT",
    "REQUEST_SYNC",
    "SYNC_RESPONSE",
    "make_envelope",
    "parse_message",
    "Transport",
    "BroadcastChannelTransport",
    "BroadcastHub",
    "RelayTransport",
    "RelayServer",
]
