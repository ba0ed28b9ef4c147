"""
Hash-chained, signed audit blocks.

This module provides:
- Block: one immutable entry of a device's append-only chain
- ChainHead: the {hash, index} of the highest accepted block
- ChainEngine: genesis construction, minting, validation and
  divergence (fork / rollback) detection

The engine holds no chain state of its own; the ledger owns the store
and serializes mutations.
"""

import logging
import time
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..exceptions import BlockValidationError
from .canonical import canonical_json_bytes
from .crypto import KeyCustodian, hash_canonical, verify_signature_hex

logger = logging.getLogger(__name__)

GENESIS_PREVIOUS_HASH = "0" * 64
HEX64_PATTERN = r"^[0-9a-f]{64}$"


class ActionType(str, Enum):
    """Well-known mutations recorded in blocks."""

    VOTE = "vote"
    COMMUNITY_CREATE = "community-create"
    POST_CREATE = "post-create"


class Divergence(str, Enum):
    """Classification of a remote chain head against the local one."""

    OK = "ok"
    FORK = "fork"
    ROLLBACK = "rollback"


class Block(BaseModel):
    """A single block in the audit chain.

    Attributes are snake_case; the wire form uses camelCase aliases.
    """

    index: int = Field(ge=0)
    timestamp: int
    previous_hash: str = Field(pattern=HEX64_PATTERN)
    payload_hash: str = Field(pattern=HEX64_PATTERN)
    signature: str
    current_hash: str = Field(pattern=HEX64_PATTERN)
    nonce: int = 0
    public_key: Optional[str] = None
    action_type: Optional[str] = None
    action_label: Optional[str] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    @property
    def is_genesis(self) -> bool:
        return self.index == 0

    @property
    def is_legacy(self) -> bool:
        """Legacy blocks carry no public key and are trusted on linkage alone."""
        return not self.public_key

    def signing_payload(self) -> dict[str, Any]:
        return signing_payload(self.index, self.timestamp, self.payload_hash, self.previous_hash)

    def calculate_hash(self) -> str:
        """Recompute this block's content address."""
        return calculate_block_hash(
            self.index, self.timestamp, self.previous_hash,
            self.payload_hash, self.signature, self.nonce,
        )

    @property
    def head(self) -> "ChainHead":
        return ChainHead(hash=self.current_hash, index=self.index)

    def to_dict(self) -> dict[str, Any]:
        """Wire representation (camelCase, optional fields omitted when unset)."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Block":
        return cls.model_validate(data)

    def __repr__(self) -> str:
        return f"Block(index={self.index}, hash={self.current_hash[:12]}...)"


class ChainHead(BaseModel):
    """Derived head of a chain: hash and index of its highest block."""

    hash: str
    index: int

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


def signing_payload(index: int, timestamp: int, payload_hash: str, previous_hash: str) -> dict[str, Any]:
    """Fields covered by a block signature.

    Genesis signs {index, timestamp}; every other block signs
    {index, payloadHash, previousHash}.
    """
    if index == 0:
        return {"index": index, "timestamp": timestamp}
    return {"index": index, "payloadHash": payload_hash, "previousHash": previous_hash}


def calculate_block_hash(
    index: int,
    timestamp: int,
    previous_hash: str,
    payload_hash: str,
    signature: str,
    nonce: int,
) -> str:
    """SHA-256 over the canonical form of the hashed block fields."""
    return hash_canonical({
        "index": index,
        "timestamp": timestamp,
        "previousHash": previous_hash,
        "payloadHash": payload_hash,
        "signature": signature,
        "nonce": nonce,
    })


def hash_payload(payload: Any) -> str:
    """Content hash of an action payload."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(by_alias=True)
    return hash_canonical(payload)


def now_ms() -> int:
    return int(time.time() * 1000)


class ChainEngine:
    """
    State machine over blocks.

    Builds genesis and successor blocks with the custodian's key and
    validates blocks from any source. Validation never raises; it
    returns False and logs the reason.
    """

    def __init__(self, custodian: Optional[KeyCustodian] = None) -> None:
        """
        Args:
            custodian: Signing identity. Required only for minting.
        """
        self.custodian = custodian

    def _require_custodian(self) -> KeyCustodian:
        if self.custodian is None:
            raise ValueError("ChainEngine needs a KeyCustodian to mint blocks")
        return self.custodian

    def create_genesis(self, timestamp: Optional[int] = None) -> Block:
        """Build block 0 over the all-zero sentinel."""
        custodian = self._require_custodian()
        timestamp = now_ms() if timestamp is None else timestamp

        signature = custodian.sign(canonical_json_bytes(
            signing_payload(0, timestamp, GENESIS_PREVIOUS_HASH, GENESIS_PREVIOUS_HASH)
        ))
        current_hash = calculate_block_hash(
            0, timestamp, GENESIS_PREVIOUS_HASH, GENESIS_PREVIOUS_HASH, signature, 0
        )

        return Block(
            index=0,
            timestamp=timestamp,
            previous_hash=GENESIS_PREVIOUS_HASH,
            payload_hash=GENESIS_PREVIOUS_HASH,
            signature=signature,
            current_hash=current_hash,
            nonce=0,
            public_key=custodian.public_key,
        )

    def mint(
        self,
        payload: Any,
        previous: Block,
        action_type: Optional[str] = None,
        action_label: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> Block:
        """
        Build the successor of ``previous`` recording ``payload``.

        ``previous`` must be the true current head; callers serialize
        mint-and-append per store (see ChainLedger).
        """
        custodian = self._require_custodian()
        timestamp = now_ms() if timestamp is None else timestamp
        if isinstance(action_type, ActionType):
            action_type = action_type.value

        index = previous.index + 1
        payload_hash = hash_payload(payload)
        previous_hash = previous.current_hash

        signature = custodian.sign(canonical_json_bytes(
            signing_payload(index, timestamp, payload_hash, previous_hash)
        ))
        current_hash = calculate_block_hash(
            index, timestamp, previous_hash, payload_hash, signature, 0
        )

        return Block(
            index=index,
            timestamp=timestamp,
            previous_hash=previous_hash,
            payload_hash=payload_hash,
            signature=signature,
            current_hash=current_hash,
            nonce=0,
            public_key=custodian.public_key,
            action_type=action_type,
            action_label=action_label,
        )

    @staticmethod
    def _verify_block_signature(block: Block) -> bool:
        if block.is_legacy:
            return True
        return verify_signature_hex(
            canonical_json_bytes(block.signing_payload()),
            block.signature,
            block.public_key,
        )

    def validate_genesis(self, block: Block) -> bool:
        """Check that ``block`` is a well-formed, self-consistent genesis."""
        if block.index != 0 or block.previous_hash != GENESIS_PREVIOUS_HASH:
            logger.warning("Invalid genesis block")
            return False

        if block.current_hash != block.calculate_hash():
            logger.warning("Genesis hash mismatch")
            return False

        if not self._verify_block_signature(block):
            logger.warning("Genesis signature invalid")
            return False

        return True

    def validate(self, block: Block, previous: Block) -> bool:
        """
        Validate ``block`` as the direct successor of ``previous``.

        Returns:
            True if index, linkage, content hash and (when a public key is
            present) signature all check out
        """
        if block.index != previous.index + 1:
            logger.warning(f"Invalid block index {block.index} after {previous.index}")
            return False

        if block.previous_hash != previous.current_hash:
            logger.warning(f"Block {block.index} previous hash mismatch")
            return False

        if block.current_hash != block.calculate_hash():
            logger.warning(f"Block {block.index} hash mismatch")
            return False

        if not self._verify_block_signature(block):
            logger.warning(f"Block {block.index} signature invalid")
            return False

        return True

    def validate_full_chain(self, blocks: Iterable[Block]) -> bool:
        """
        Validate a whole chain.

        Blocks are sorted by index; block 0 must be a valid genesis and every
        adjacent pair must pass ``validate``. Any failure invalidates the chain.
        """
        try:
            self.check_full_chain(blocks)
        except BlockValidationError as e:
            logger.error(e.message)
            return False
        return True

    def check_full_chain(self, blocks: Iterable[Block]) -> None:
        """
        Like ``validate_full_chain`` but reports where the chain breaks.

        Raises:
            BlockValidationError: naming the first invalid block
        """
        ordered = sorted(blocks, key=lambda b: b.index)
        if not ordered:
            raise BlockValidationError("Chain has no blocks")

        if not self.validate_genesis(ordered[0]):
            raise BlockValidationError(
                "Invalid genesis block", ordered[0].current_hash, ordered[0].index
            )

        for i in range(1, len(ordered)):
            if not self.validate(ordered[i], ordered[i - 1]):
                raise BlockValidationError(
                    f"Invalid block at position {i}", ordered[i].current_hash, ordered[i].index
                )

    @staticmethod
    def detect_divergence(
        local_head: Optional[ChainHead],
        remote_hash: str,
        remote_index: int,
    ) -> Divergence:
        """
        Classify a remote head announcement against the local head.

        This is a detection signal only; nothing is reconciled here.
        """
        if local_head is None:
            return Divergence.OK

        if remote_index < local_head.index:
            logger.warning(
                f"Chain rollback detected: remote {remote_index} < local {local_head.index}"
            )
            return Divergence.ROLLBACK

        if remote_index == local_head.index and remote_hash != local_head.hash:
            logger.warning(f"Chain fork detected at index {remote_index}")
            return Divergence.FORK

        return Divergence.OK
