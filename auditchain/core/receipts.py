"""
Receipts for a user's own chain mutations.

A receipt is keyed by a BIP-39 recovery phrase. The phrase is generated
independently of the block, so it is a lookup handle rather than a
cryptographic proof of the block.
"""

import hashlib
from typing import Any, Optional

from mnemonic import Mnemonic
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

_mnemo = Mnemonic("english")


class Receipt(BaseModel):
    """Locally retained proof of a local mutation."""

    block_index: int
    payload_hash: str
    chain_head_hash: str
    mnemonic: str
    timestamp: int
    correlation_id: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @property
    def receipt_id(self) -> str:
        return mnemonic_to_receipt_id(self.mnemonic)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Receipt":
        return cls.model_validate(data)


def generate_mnemonic(strength: int = 128) -> str:
    """Generate a BIP-39 phrase (12 words at the default 128 bits)."""
    return _mnemo.generate(strength=strength)


def validate_mnemonic(phrase: str) -> bool:
    """Check word list membership and checksum."""
    try:
        return _mnemo.check(phrase)
    except (ValueError, LookupError):
        return False


def mnemonic_to_receipt_id(phrase: str) -> str:
    """Short stable identifier derived from the phrase's BIP-39 seed."""
    seed = Mnemonic.to_seed(phrase)
    return hashlib.sha256(seed).hexdigest()[:32]
