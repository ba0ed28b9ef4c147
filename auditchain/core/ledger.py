"""
Single serialization point for one local chain store.

Local mints and remote admissions both go through the same
validate-then-append path under one lock, so two concurrent local
mutations can never compute the same next index.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from ..exceptions import ChainError, ChainNotInitializedError
from .blockchain import Block, ChainEngine, ChainHead, Divergence
from .receipts import Receipt, generate_mnemonic
from .storage import ActionRecord, ChainStore

logger = logging.getLogger(__name__)


class AdmitResult(Enum):
    """Outcome of offering a block to the ledger."""

    ADMITTED = "admitted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    GAP = "gap"


class ChainLedger:
    """
    Owns the authoritative head of one local store.

    Usage:
        ledger = ChainLedger(ChainEngine(custodian), store)
        await ledger.initialize()
        block, receipt = await ledger.append_local({"choice": "A"}, "vote")
    """

    def __init__(self, engine: ChainEngine, store: ChainStore) -> None:
        self.engine = engine
        self.store = store
        self._lock = asyncio.Lock()

    async def initialize(self, seed_genesis: bool = True) -> Optional[Block]:
        """
        Seed a genesis block if the store is empty.

        Returns:
            The newly created genesis, or None if the store already had one
            or seeding was not requested
        """
        async with self._lock:
            if await self.store.get_latest_block() is not None:
                return None
            if not seed_genesis:
                return None

            genesis = self.engine.create_genesis()
            await self.store.save_block(genesis)
            logger.info(f"Genesis block created: {genesis.current_hash[:16]}...")
            return genesis

    async def head(self) -> Optional[ChainHead]:
        latest = await self.store.get_latest_block()
        return latest.head if latest else None

    async def blocks(self) -> list[Block]:
        return await self.store.get_all_blocks()

    async def is_empty(self) -> bool:
        return await self.store.get_latest_block() is None

    async def append_local(
        self,
        payload: Any,
        action_type: Optional[str] = None,
        action_label: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> tuple[Block, Receipt]:
        """
        Mint a block over the current head and append it.

        Also records the action payload and a receipt for the mutation.

        Raises:
            ChainNotInitializedError: if there is no genesis block yet
        """
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(by_alias=True)

        async with self._lock:
            previous = await self.store.get_latest_block()
            if previous is None:
                raise ChainNotInitializedError()

            block = self.engine.mint(payload, previous, action_type, action_label)
            action = ActionRecord(
                action_type=block.action_type,
                action_label=action_label,
                payload=payload,
                block_index=block.index,
                timestamp=block.timestamp,
            )
            receipt = Receipt(
                block_index=block.index,
                payload_hash=block.payload_hash,
                chain_head_hash=block.current_hash,
                mnemonic=generate_mnemonic(),
                timestamp=block.timestamp,
                correlation_id=correlation_id,
            )
            if not await self.store.append(block, action, receipt):
                raise ChainError(f"Block #{block.index} already stored", block.current_hash)

        logger.info(f"Block #{block.index} created ({block.action_type or 'action'})")
        return block, receipt

    async def admit(self, block: Block) -> AdmitResult:
        """
        Offer a remote block.

        Duplicates (by index) are no-ops. A block is admitted only if it
        extends the current head, or is a valid genesis for an empty store.
        """
        async with self._lock:
            if await self.store.get_block(block.index) is not None:
                return AdmitResult.DUPLICATE

            latest = await self.store.get_latest_block()

            if latest is None:
                if block.index != 0:
                    return AdmitResult.GAP
                if not self.engine.validate_genesis(block):
                    return AdmitResult.REJECTED
            elif block.index == latest.index + 1:
                if not self.engine.validate(block, latest):
                    return AdmitResult.REJECTED
            else:
                return AdmitResult.GAP

            await self.store.save_block(block)

        logger.info(f"Admitted remote block #{block.index}")
        return AdmitResult.ADMITTED

    async def validate_chain(self) -> bool:
        """Validate every stored block; an empty store is valid."""
        blocks = await self.store.get_all_blocks()
        if not blocks:
            return True
        return self.engine.validate_full_chain(blocks)

    async def check_chain(self) -> None:
        """
        Validate the stored chain, stopping at the first failure.

        Raises:
            BlockValidationError: naming the first invalid stored block
        """
        blocks = await self.store.get_all_blocks()
        if blocks:
            self.engine.check_full_chain(blocks)

    async def detect_divergence(self, remote_hash: str, remote_index: int) -> Divergence:
        return self.engine.detect_divergence(await self.head(), remote_hash, remote_index)

    async def get_receipt(self, mnemonic: str) -> Optional[Receipt]:
        return await self.store.get_receipt(mnemonic)

    async def reset(self) -> Block:
        """Clear chain, actions and receipts atomically and reseed genesis."""
        async with self._lock:
            genesis = self.engine.create_genesis()
            await self.store.reset(genesis)

        logger.info("Chain reset: new genesis block created")
        return genesis
