"""
Audit chain exceptions.

All exceptions inherit from AuditChainError for easy catching.
"""

from typing import Optional


class AuditChainError(Exception):
    """Base exception for all audit chain errors."""

    def __init__(self, message: str, code: str = "AUDITCHAIN_ERROR"):
        super().__init__(message)
        self.code = code
        self.message = message


class ChainError(AuditChainError):
    """Chain state or integrity error."""

    def __init__(self, message: str, block_hash: Optional[str] = None):
        super().__init__(message, "CHAIN_ERROR")
        self.block_hash = block_hash


class ChainNotInitializedError(ChainError):
    """The local chain has no genesis block yet."""

    def __init__(self, message: str = "Chain not initialized"):
        super().__init__(message)
        self.code = "CHAIN_NOT_INITIALIZED"


class BlockValidationError(ChainError):
    """A block failed validation where the caller required it to pass."""

    def __init__(self, message: str, block_hash: Optional[str] = None, index: Optional[int] = None):
        super().__init__(message, block_hash)
        self.code = "BLOCK_VALIDATION_ERROR"
        self.index = index


class StorageError(AuditChainError):
    """Durable store read/write failed."""

    def __init__(self, message: str):
        super().__init__(message, "STORAGE_ERROR")


class MessageParseError(AuditChainError):
    """A transport frame did not parse into a known message variant."""

    def __init__(self, message: str, raw_type: Optional[str] = None):
        super().__init__(message, "MESSAGE_PARSE_ERROR")
        self.raw_type = raw_type


class TransportError(AuditChainError):
    """Transport could not deliver or connect."""

    def __init__(self, message: str, peer_id: Optional[str] = None):
        super().__init__(message, "TRANSPORT_ERROR")
        self.peer_id = peer_id


class VoteRejectedError(AuditChainError):
    """The relay's double-vote check refused this vote."""

    def __init__(self, message: str, poll_id: Optional[str] = None):
        super().__init__(message, "VOTE_REJECTED")
        self.poll_id = poll_id
