"""
Durable storage for the audit chain.

This module provides:
- ChainStore: the async store contract consumed by the ledger
- MemoryChainStore: dict-backed store for tests and ephemeral nodes
- SqliteChainStore: SQLite-backed store (WAL, 0600 file permissions)

Tables:
- blocks: keyed by index, secondary lookup by currentHash
- actions: the payloads recorded by local mutations
- receipts: keyed by mnemonic, secondary lookup by blockIndex
- metadata: small opaque key-value table (device identity, ...)
"""

import asyncio
import json
import logging
import os
import sqlite3
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..exceptions import StorageError
from .blockchain import Block
from .receipts import Receipt

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"


class ActionRecord(BaseModel):
    """The payload of one local mutation, linked to the block recording it."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    action_type: Optional[str] = None
    action_label: Optional[str] = None
    payload: Any = None
    block_index: int
    timestamp: int

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ChainStore(ABC):
    """
    Async store contract.

    Every method is a suspension point. ``reset`` must clear blocks,
    actions and receipts and insert the new genesis as one atomic unit.
    ``append`` stores a local block with its action and receipt the same way.
    """

    @abstractmethod
    async def save_block(self, block: Block) -> bool:
        """Insert a block; returns False if the index is already taken."""

    @abstractmethod
    async def get_block(self, index: int) -> Optional[Block]:
        ...

    @abstractmethod
    async def get_block_by_hash(self, block_hash: str) -> Optional[Block]:
        ...

    @abstractmethod
    async def get_latest_block(self) -> Optional[Block]:
        ...

    @abstractmethod
    async def get_all_blocks(self) -> list[Block]:
        """All blocks, ascending by index."""

    @abstractmethod
    async def get_blocks_range(self, start: int, end: int) -> list[Block]:
        """Blocks with ``start <= index < end``, ascending."""

    @abstractmethod
    async def count_blocks(self) -> int:
        ...

    @abstractmethod
    async def save_action(self, action: ActionRecord) -> None:
        ...

    @abstractmethod
    async def get_actions(self, action_type: Optional[str] = None) -> list[ActionRecord]:
        ...

    @abstractmethod
    async def save_receipt(self, receipt: Receipt) -> None:
        ...

    @abstractmethod
    async def get_receipt(self, mnemonic: str) -> Optional[Receipt]:
        ...

    @abstractmethod
    async def get_receipts_by_block(self, block_index: int) -> list[Receipt]:
        ...

    @abstractmethod
    async def get_all_receipts(self) -> list[Receipt]:
        ...

    @abstractmethod
    async def set_metadata(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def get_metadata(self, key: str) -> Any:
        ...

    @abstractmethod
    async def append(self, block: Block, action: ActionRecord, receipt: Receipt) -> bool:
        """
        Atomically store a locally minted block with its action and receipt.

        Returns:
            False (and stores nothing) if a block already holds that index
        """

    @abstractmethod
    async def reset(self, genesis: Block) -> None:
        """Atomically clear blocks, actions and receipts, then store ``genesis``."""

    async def close(self) -> None:
        """Release resources held by the store."""


class MemoryChainStore(ChainStore):
    """
    In-memory chain store.

    Nothing survives the process; used for tests and throwaway peers.
    """

    def __init__(self) -> None:
        self.blocks: dict[int, Block] = {}
        self.actions: dict[str, ActionRecord] = {}
        self.receipts: dict[str, Receipt] = {}
        self.metadata: dict[str, Any] = {}

    async def save_block(self, block: Block) -> bool:
        if block.index in self.blocks:
            return False
        self.blocks[block.index] = block
        return True

    async def get_block(self, index: int) -> Optional[Block]:
        return self.blocks.get(index)

    async def get_block_by_hash(self, block_hash: str) -> Optional[Block]:
        for block in self.blocks.values():
            if block.current_hash == block_hash:
                return block
        return None

    async def get_latest_block(self) -> Optional[Block]:
        if not self.blocks:
            return None
        return self.blocks[max(self.blocks)]

    async def get_all_blocks(self) -> list[Block]:
        return [self.blocks[i] for i in sorted(self.blocks)]

    async def get_blocks_range(self, start: int, end: int) -> list[Block]:
        return [self.blocks[i] for i in sorted(self.blocks) if start <= i < end]

    async def count_blocks(self) -> int:
        return len(self.blocks)

    async def save_action(self, action: ActionRecord) -> None:
        self.actions[action.id] = action

    async def get_actions(self, action_type: Optional[str] = None) -> list[ActionRecord]:
        actions = sorted(self.actions.values(), key=lambda a: (a.block_index, a.timestamp))
        if action_type is None:
            return actions
        return [a for a in actions if a.action_type == action_type]

    async def save_receipt(self, receipt: Receipt) -> None:
        self.receipts[receipt.mnemonic] = receipt

    async def get_receipt(self, mnemonic: str) -> Optional[Receipt]:
        return self.receipts.get(mnemonic)

    async def get_receipts_by_block(self, block_index: int) -> list[Receipt]:
        return [r for r in self.receipts.values() if r.block_index == block_index]

    async def get_all_receipts(self) -> list[Receipt]:
        return sorted(self.receipts.values(), key=lambda r: r.block_index)

    async def set_metadata(self, key: str, value: Any) -> None:
        self.metadata[key] = value

    async def get_metadata(self, key: str) -> Any:
        return self.metadata.get(key)

    async def append(self, block: Block, action: ActionRecord, receipt: Receipt) -> bool:
        if block.index in self.blocks:
            return False
        self.blocks[block.index] = block
        self.actions[action.id] = action
        self.receipts[receipt.mnemonic] = receipt
        return True

    async def reset(self, genesis: Block) -> None:
        self.blocks = {genesis.index: genesis}
        self.actions = {}
        self.receipts = {}


class SqliteChainStore(ChainStore):
    """
    SQLite chain store.

    Blocking sqlite calls run on a dedicated single-thread executor so the
    event loop is never blocked and writes are applied in submission order.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = str(db_path)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chainstore_io")
        self._init_db()

    def _init_db(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            if not os.path.exists(self.db_path):
                open(self.db_path, "a").close()
                os.chmod(self.db_path, 0o600)

        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")

        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_versions (
                version TEXT PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS blocks (
                idx INTEGER PRIMARY KEY,
                current_hash TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS blocks_by_hash ON blocks (current_hash);
            CREATE TABLE IF NOT EXISTS actions (
                id TEXT PRIMARY KEY,
                action_type TEXT,
                block_index INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS receipts (
                mnemonic TEXT PRIMARY KEY,
                block_index INTEGER NOT NULL,
                data TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS receipts_by_block ON receipts (block_index);
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
        """)
        self.conn.execute(
            "INSERT OR IGNORE INTO schema_versions (version, applied_at) "
            "VALUES (?, strftime('%s','now'))",
            (SCHEMA_VERSION,)
        )
        self.conn.commit()
        logger.debug(f"Opened chain store at {self.db_path}")

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn, *args)
        except sqlite3.Error as e:
            raise StorageError(f"Chain store operation failed: {e}") from e

    # Blocks

    def _insert_block(self, block: Block) -> None:
        self.conn.execute(
            "INSERT INTO blocks (idx, current_hash, data) VALUES (?, ?, ?)",
            (block.index, block.current_hash, json.dumps(block.to_dict()))
        )

    def _save_block_sync(self, block: Block) -> bool:
        try:
            with self.conn:
                self._insert_block(block)
            return True
        except sqlite3.IntegrityError:
            return False

    async def save_block(self, block: Block) -> bool:
        return await self._run(self._save_block_sync, block)

    def _fetch_blocks(self, sql: str, params: tuple = ()) -> list[Block]:
        rows = self.conn.execute(sql, params).fetchall()
        return [Block.from_dict(json.loads(row["data"])) for row in rows]

    def _fetch_block(self, sql: str, params: tuple = ()) -> Optional[Block]:
        blocks = self._fetch_blocks(sql, params)
        return blocks[0] if blocks else None

    async def get_block(self, index: int) -> Optional[Block]:
        return await self._run(self._fetch_block, "SELECT data FROM blocks WHERE idx = ?", (index,))

    async def get_block_by_hash(self, block_hash: str) -> Optional[Block]:
        return await self._run(
            self._fetch_block, "SELECT data FROM blocks WHERE current_hash = ? LIMIT 1", (block_hash,)
        )

    async def get_latest_block(self) -> Optional[Block]:
        return await self._run(self._fetch_block, "SELECT data FROM blocks ORDER BY idx DESC LIMIT 1")

    async def get_all_blocks(self) -> list[Block]:
        return await self._run(self._fetch_blocks, "SELECT data FROM blocks ORDER BY idx ASC")

    async def get_blocks_range(self, start: int, end: int) -> list[Block]:
        return await self._run(
            self._fetch_blocks,
            "SELECT data FROM blocks WHERE idx >= ? AND idx < ? ORDER BY idx ASC",
            (start, end)
        )

    def _count_blocks_sync(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM blocks").fetchone()[0]

    async def count_blocks(self) -> int:
        return await self._run(self._count_blocks_sync)

    # Actions

    def _insert_action(self, action: ActionRecord) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO actions (id, action_type, block_index, timestamp, data) "
            "VALUES (?, ?, ?, ?, ?)",
            (action.id, action.action_type, action.block_index, action.timestamp,
             json.dumps(action.to_dict()))
        )

    def _save_action_sync(self, action: ActionRecord) -> None:
        with self.conn:
            self._insert_action(action)

    async def save_action(self, action: ActionRecord) -> None:
        await self._run(self._save_action_sync, action)

    def _get_actions_sync(self, action_type: Optional[str]) -> list[ActionRecord]:
        if action_type is None:
            rows = self.conn.execute(
                "SELECT data FROM actions ORDER BY block_index, timestamp"
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT data FROM actions WHERE action_type = ? ORDER BY block_index, timestamp",
                (action_type,)
            ).fetchall()
        return [ActionRecord.model_validate(json.loads(row["data"])) for row in rows]

    async def get_actions(self, action_type: Optional[str] = None) -> list[ActionRecord]:
        return await self._run(self._get_actions_sync, action_type)

    # Receipts

    def _insert_receipt(self, receipt: Receipt) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO receipts (mnemonic, block_index, data) VALUES (?, ?, ?)",
            (receipt.mnemonic, receipt.block_index, json.dumps(receipt.to_dict()))
        )

    def _save_receipt_sync(self, receipt: Receipt) -> None:
        with self.conn:
            self._insert_receipt(receipt)

    async def save_receipt(self, receipt: Receipt) -> None:
        await self._run(self._save_receipt_sync, receipt)

    def _fetch_receipts(self, sql: str, params: tuple = ()) -> list[Receipt]:
        rows = self.conn.execute(sql, params).fetchall()
        return [Receipt.from_dict(json.loads(row["data"])) for row in rows]

    async def get_receipt(self, mnemonic: str) -> Optional[Receipt]:
        receipts = await self._run(
            self._fetch_receipts, "SELECT data FROM receipts WHERE mnemonic = ?", (mnemonic,)
        )
        return receipts[0] if receipts else None

    async def get_receipts_by_block(self, block_index: int) -> list[Receipt]:
        return await self._run(
            self._fetch_receipts, "SELECT data FROM receipts WHERE block_index = ?", (block_index,)
        )

    async def get_all_receipts(self) -> list[Receipt]:
        return await self._run(
            self._fetch_receipts, "SELECT data FROM receipts ORDER BY block_index ASC"
        )

    # Metadata

    def _set_metadata_sync(self, key: str, value: Any) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (key, json.dumps(value))
            )

    async def set_metadata(self, key: str, value: Any) -> None:
        await self._run(self._set_metadata_sync, key, value)

    def _get_metadata_sync(self, key: str) -> Any:
        row = self.conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else None

    async def get_metadata(self, key: str) -> Any:
        return await self._run(self._get_metadata_sync, key)

    # Local mutation

    def _append_sync(self, block: Block, action: ActionRecord, receipt: Receipt) -> bool:
        try:
            with self.conn:
                self._insert_block(block)
                self._insert_action(action)
                self._insert_receipt(receipt)
            return True
        except sqlite3.IntegrityError:
            return False

    async def append(self, block: Block, action: ActionRecord, receipt: Receipt) -> bool:
        return await self._run(self._append_sync, block, action, receipt)

    # Reset

    def _reset_sync(self, genesis: Block) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM blocks")
            self.conn.execute("DELETE FROM actions")
            self.conn.execute("DELETE FROM receipts")
            self._insert_block(genesis)

    async def reset(self, genesis: Block) -> None:
        await self._run(self._reset_sync, genesis)
        logger.info("Chain store reset")

    async def close(self) -> None:
        await self._run(self.conn.close)
        self._executor.shutdown(wait=True)
