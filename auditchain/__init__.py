"""
Audit Chain - tamper-evident per-device audit log with peer sync.

Every local action is minted into a signed, hash-linked block. Peers
exchange blocks and signed events over an in-process broadcast channel
and a relay-mediated WebSocket channel, admitting only what validates.

Quick Start:
    from auditchain import ChainNode, ChainConfig

    node = ChainNode(ChainConfig())
    await node.start()
    block, receipt = await node.record_action({"choice": "A"}, "vote")
    assert await node.validate_chain()
"""

from .config import ChainConfig
from .exceptions import (
    AuditChainError,
    BlockValidationError,
    ChainError,
    ChainNotInitializedError,
    MessageParseError,
    StorageError,
    TransportError,
    VoteRejectedError,
)
from .core import (
    ActionType,
    Block,
    ChainEngine,
    ChainHead,
    ChainLedger,
    Divergence,
    KeyCustodian,
    MemoryChainStore,
    Receipt,
    SignedEvent,
    SqliteChainStore,
    SyncCoordinator,
    SyncRound,
)
from .network import BroadcastChannelTransport, RelayServer, RelayTransport
from .audit import AuditClient
from .node import ChainNode

__version__ = "0.1.0"

__all__ = [
    "ChainConfig",
    "AuditChainError",
    "BlockValidationError",
    "ChainError",
    "ChainNotInitializedError",
    "MessageParseError",
    "StorageError",
    "TransportError",
    "VoteRejectedError",
    "ActionType",
    "Block",
    "ChainEngine",
    "ChainHead",
    "ChainLedger",
    "Divergence",
    "KeyCustodian",
    "MemoryChainStore",
    "Receipt",
    "SignedEvent",
    "SqliteChainStore",
    "SyncCoordinator",
    "SyncRound",
    "BroadcastChannelTransport",
    "RelayServer",
    "RelayTransport",
    "AuditClient",
    "ChainNode",
]
