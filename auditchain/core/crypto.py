"""
Cryptographic primitives for the audit chain.

This module provides:
- SHA-256 hashing of raw bytes and canonical structures
- Ed25519 key pair generation, signing and verification
- KeyCustodian: the per-device signing identity
"""

import base64
import hashlib
import logging
from typing import TYPE_CHECKING, Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from pydantic import BaseModel, ConfigDict, field_serializer, field_validator

from .canonical import canonical_json_bytes

if TYPE_CHECKING:
    from .storage import ChainStore

logger = logging.getLogger(__name__)

DEVICE_KEYPAIR_KEY = "device-keypair"


class KeyPair(BaseModel):
    """Container for an Ed25519 key pair."""

    private_key: bytes
    public_key: bytes

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_serializer("private_key", "public_key")
    def serialize_bytes(self, v: bytes, _info):
        """Serialize bytes to base64 string."""
        return base64.b64encode(v).decode()

    @field_validator("private_key", "public_key", mode="before")
    @classmethod
    def validate_bytes(cls, v: Any) -> bytes:
        """Decode base64 string to bytes if needed."""
        if isinstance(v, str):
            return base64.b64decode(v)
        return v

    @property
    def public_key_hex(self) -> str:
        """Get public key as hex string (for display/sharing)."""
        return self.public_key.hex()

    @property
    def public_key_short(self) -> str:
        """Get shortened public key for display."""
        hex_key = self.public_key_hex
        return f"{hex_key[:8]}...{hex_key[-8:]}"


def generate_signing_keypair() -> KeyPair:
    """
    Generate an Ed25519 key pair for digital signatures.

    Returns:
        KeyPair with private and public signing keys
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()

    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )
    public_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )

    return KeyPair(private_key=private_bytes, public_key=public_bytes)


def sign_message(message: bytes, private_key: bytes) -> bytes:
    """
    Sign a message using Ed25519.

    Args:
        message: The message to sign
        private_key: Ed25519 private key bytes

    Returns:
        64-byte signature
    """
    key = Ed25519PrivateKey.from_private_bytes(private_key)
    return key.sign(message)


def verify_signature(message: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        message: The original message
        signature: The signature to verify
        public_key: Ed25519 public key bytes

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        key = Ed25519PublicKey.from_public_bytes(public_key)
        key.verify(signature, message)
        return True
    except Exception:
        return False


def verify_signature_hex(message: bytes, signature_hex: str, public_key_hex: str) -> bool:
    """Verify a hex-encoded signature against a hex-encoded public key.

    Malformed hex is reported as an invalid signature.
    """
    try:
        signature = bytes.fromhex(signature_hex)
        public_key = bytes.fromhex(public_key_hex)
    except (TypeError, ValueError):
        return False
    return verify_signature(message, signature, public_key)


def hash_data(data: bytes) -> str:
    """
    Calculate SHA-256 hash of data.

    Args:
        data: Data to hash

    Returns:
        Hex-encoded hash string
    """
    return hashlib.sha256(data).hexdigest()


def hash_string(text: str) -> str:
    """Calculate SHA-256 hash of a string."""
    return hash_data(text.encode())


def hash_canonical(obj: Any) -> str:
    """Hash the canonical JSON form of a structure."""
    return hash_data(canonical_json_bytes(obj))


class KeyCustodian:
    """
    Owns the persistent signing key pair of one device.

    The private key never leaves the custodian except to sign.

    Usage:
        custodian = await KeyCustodian.load_or_create(store)
        signature = custodian.sign(b"...")
        print(custodian.public_key)
    """

    def __init__(self, keys: KeyPair) -> None:
        self._keys = keys

    @classmethod
    def generate(cls) -> "KeyCustodian":
        """Create a custodian with a fresh, unpersisted key pair."""
        return cls(generate_signing_keypair())

    @classmethod
    async def load_or_create(cls, store: "ChainStore") -> "KeyCustodian":
        """
        Load the device key pair from the store's metadata table.

        A new key pair is generated and persisted when none exists.
        """
        stored = await store.get_metadata(DEVICE_KEYPAIR_KEY)
        if stored:
            custodian = cls(KeyPair.model_validate(stored))
            logger.debug(f"Loaded device key {custodian.public_key_short}")
            return custodian

        custodian = cls.generate()
        await store.set_metadata(DEVICE_KEYPAIR_KEY, custodian._keys.model_dump())
        logger.info(f"Created device key {custodian.public_key_short}")
        return custodian

    @property
    def public_key(self) -> str:
        """Public key as 64 hex characters."""
        return self._keys.public_key_hex

    @property
    def public_key_short(self) -> str:
        return self._keys.public_key_short

    def sign(self, message: bytes) -> str:
        """Sign bytes, returning the signature as 128 hex characters."""
        return sign_message(message, self._keys.private_key).hex()

    def __repr__(self) -> str:
        return f"KeyCustodian(public_key={self.public_key_short})"
