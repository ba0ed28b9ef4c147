"""
Core chain and cryptography components.

This package provides:
- Signature Engine: hashing, Ed25519 signing and verification
- KeyCustodian: the device's persistent signing identity
- ChainEngine: genesis, minting, validation and divergence detection
- Event Codec: portable signed action records
- ChainStore / ChainLedger: durable storage and serialized mutation
- SyncCoordinator: peer synchronization over any transport
"""

from .canonical import canonical_json, canonical_json_bytes
from .crypto import (
    KeyCustodian,
    KeyPair,
    generate_signing_keypair,
    hash_data,
    sign_message,
    verify_signature,
)
from .blockchain import (
    GENESIS_PREVIOUS_HASH,
    ActionType,
    Block,
    ChainEngine,
    ChainHead,
    Divergence,
)
from .events import (
    EventKind,
    SignedEvent,
    UnsignedEvent,
    compute_event_id,
    create_poll_event,
    create_poll_update_event,
    create_post_event,
    create_vote_event,
    sign_event,
    verify_event,
)
from .receipts import Receipt, generate_mnemonic, validate_mnemonic
from .storage import ActionRecord, ChainStore, MemoryChainStore, SqliteChainStore
from .ledger import AdmitResult, ChainLedger

# Imported last: sync depends on the network message layer, which in
# turn depends on the block and event models above.
from .sync import SyncCoordinator, SyncRound

__all__ = [
    "canonical_json",
    "canonical_json_bytes",
    "KeyCustodian",
    "KeyPair",
    "generate_signing_keypair",
    "hash_data",
    "sign_message",
    "verify_signature",
    "GENESIS_PREVIOUS_HASH",
    "ActionType",
    "Block",
    "ChainEngine",
    "ChainHead",
    "Divergence",
    "EventKind",
    "SignedEvent",
    "UnsignedEvent",
    "compute_event_id",
    "create_poll_event",
    "create_poll_update_event",
    "create_post_event",
    "create_vote_event",
    "sign_event",
    "verify_event",
    "Receipt",
    "generate_mnemonic",
    "validate_mnemonic",
    "ActionRecord",
    "ChainStore",
    "MemoryChainStore",
    "SqliteChainStore",
    "AdmitResult",
    "ChainLedger",
    "SyncCoordinator",
    "SyncRound",
]
