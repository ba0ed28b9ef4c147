"""
Chain node: the owned services of one audit chain instance.

This module provides:
- ChainNode: wires store, key custodian, engine, ledger, transports,
  sync coordinator and the optional HTTP side-channel together
"""

import logging
import uuid
from typing import Any, Optional, Sequence, Union

from .audit import AuditClient
from .config import ChainConfig
from .core.blockchain import ActionType, Block, ChainEngine, ChainHead, Divergence
from .core.crypto import KeyCustodian
from .core.events import SignedEvent, create_vote_event
from .core.ledger import ChainLedger
from .core.receipts import Receipt
from .core.storage import ChainStore, SqliteChainStore
from .core.sync import SyncCoordinator, SyncRound
from .exceptions import AuditChainError, VoteRejectedError
from .network.broadcast import BroadcastChannelTransport
from .network.relay import RelayTransport
from .network.transport import Transport

logger = logging.getLogger(__name__)


class ChainNode:
    """
    One audit chain instance.

    Manages:
    - Chain store and device key (loaded on start)
    - Local mutations (mint, append, receipt, publish)
    - Remote admission via the sync coordinator
    - Vote authorization and receipt mirroring over HTTP

    Usage:
        node = ChainNode(config, transports=[relay])
        await node.start()
        block, receipt = await node.record_action({"choice": "A"}, "vote")
        await node.stop()
    """

    def __init__(
        self,
        config: Optional[ChainConfig] = None,
        store: Optional[ChainStore] = None,
        transports: Optional[Sequence[Transport]] = None,
        custodian: Optional[KeyCustodian] = None,
        audit: Optional[AuditClient] = None,
        peer_id: Optional[str] = None,
    ) -> None:
        """
        Initialize node.

        Args:
            config: Node configuration (defaults apply when omitted)
            store: Chain store; a SqliteChainStore at ``config.db_path`` if omitted
            transports: Sync transports; none means the node runs offline
            custodian: Signing identity; loaded from the store if omitted
            audit: HTTP side-channel; votes are not checked when omitted
            peer_id: Id of this instance on the transports
        """
        self.config = config or ChainConfig()
        self.peer_id = peer_id or uuid.uuid4().hex
        self.transports = list(transports or [])
        self.audit = audit

        self._store = store
        self._owns_store = store is None
        self._custodian = custodian

        self._ledger: Optional[ChainLedger] = None
        self._coordinator: Optional[SyncCoordinator] = None
        self._running = False

    @classmethod
    def from_config(
        cls,
        config: ChainConfig,
        relay: bool = True,
        broadcast: bool = True,
    ) -> "ChainNode":
        """
        Build a node with durable storage and its configured transports.

        Args:
            config: Node configuration
            relay: Join the relay at ``config.relay_url`` and use its audit API
            broadcast: Join ``config.channel_name`` on the in-process hub, so
                nodes sharing a process sync without a relay
        """
        peer_id = uuid.uuid4().hex
        transports: list[Transport] = []
        if broadcast:
            transports.append(BroadcastChannelTransport(config.channel_name, peer_id))
        if relay:
            transports.append(RelayTransport(
                config.relay_url,
                peer_id,
                room_id=config.room_id,
                reconnect_delay=config.reconnect_delay,
                max_reconnect_delay=config.max_reconnect_delay,
                max_reconnect_attempts=config.max_reconnect_attempts,
                max_queued=config.max_queued_messages,
            ))
        audit = AuditClient(config.api_url, timeout=config.http_timeout) if relay else None
        return cls(config, transports=transports, audit=audit, peer_id=peer_id)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def store(self) -> ChainStore:
        if self._store is None:
            raise AuditChainError("Node has no store until started", "NODE_NOT_STARTED")
        return self._store

    @property
    def custodian(self) -> KeyCustodian:
        if self._custodian is None:
            raise AuditChainError("Node has no key until started", "NODE_NOT_STARTED")
        return self._custodian

    @property
    def ledger(self) -> ChainLedger:
        if self._ledger is None:
            raise AuditChainError("Node not started", "NODE_NOT_STARTED")
        return self._ledger

    @property
    def coordinator(self) -> SyncCoordinator:
        if self._coordinator is None:
            raise AuditChainError("Node not started", "NODE_NOT_STARTED")
        return self._coordinator

    async def start(self, bootstrap: bool = True) -> None:
        """
        Open the store, load the device key and join the transports.

        Args:
            bootstrap: When the store is empty, run one resync round before
                seeding a fresh genesis, so an existing chain is adopted
        """
        if self._running:
            return

        if self._store is None:
            self.config.ensure_directories()
            self._store = SqliteChainStore(self.config.db_path)

        if self._custodian is None:
            self._custodian = await KeyCustodian.load_or_create(self._store)

        self._ledger = ChainLedger(ChainEngine(self._custodian), self._store)
        self._coordinator = SyncCoordinator(
            self._ledger,
            self.transports,
            self.peer_id,
            sync_wait=self.config.sync_wait,
        )
        self._coordinator.start()

        for transport in self.transports:
            await transport.start()
            if isinstance(transport, RelayTransport):
                await transport.wait_connected(self.config.sync_wait)

        if await self._ledger.is_empty():
            if bootstrap and self.transports:
                await self._coordinator.request_sync()
            await self._ledger.initialize()

        self._running = True

        head = await self._ledger.head()
        logger.info(
            f"Node {self.peer_id[:8]} started with key {self._custodian.public_key_short}, "
            f"head #{head.index if head else '-'}"
        )

    async def stop(self) -> None:
        """Leave the transports and release owned resources; ``start`` may follow."""
        for transport in self.transports:
            await transport.stop()
            transport.unsubscribe_all()

        if self.audit is not None:
            await self.audit.aclose()

        if self._owns_store and self._store is not None:
            await self._store.close()
            self._store = None

        self._ledger = None
        self._coordinator = None
        self._running = False
        logger.info(f"Node {self.peer_id[:8]} stopped")

    async def record_action(
        self,
        payload: Any,
        action_type: Union[ActionType, str],
        action_label: Optional[str] = None,
        correlation_id: Optional[str] = None,
        event: Optional[SignedEvent] = None,
    ) -> tuple[Block, Receipt]:
        """
        Append a local mutation and propagate it.

        The block (and event, when given) is published on every transport
        and the receipt mirrored to the audit log. Neither step can fail
        the mutation.

        Returns:
            The new block and its receipt
        """
        block, receipt = await self.ledger.append_local(
            payload, action_type, action_label, correlation_id
        )

        await self.coordinator.publish_local(block, event)

        if self.audit is not None:
            await self.audit.log_receipt(block.action_type or "action", receipt.to_dict())

        return block, receipt

    async def record_vote(
        self,
        poll_id: str,
        choice: str,
        device_id: str,
        option_id: Optional[str] = None,
    ) -> tuple[Block, Receipt]:
        """
        Record a vote with its signed VOTE_CAST event.

        Raises:
            VoteRejectedError: if the relay reports a double vote
        """
        if self.audit is not None and not await self.audit.authorize_vote(poll_id, device_id):
            reason = self.audit.last_reason or "not allowed"
            raise VoteRejectedError(f"Vote on poll {poll_id} rejected: {reason}", poll_id)

        event = create_vote_event(self.custodian, poll_id, choice, device_id, option_id)
        payload: dict[str, Any] = {"pollId": poll_id, "choice": choice, "deviceId": device_id}
        if option_id:
            payload["optionId"] = option_id

        return await self.record_action(
            payload,
            ActionType.VOTE,
            action_label=f"Vote on {poll_id}",
            event=event,
        )

    async def head(self) -> Optional[ChainHead]:
        return await self.ledger.head()

    async def blocks(self) -> list[Block]:
        return await self.ledger.blocks()

    async def get_receipt(self, mnemonic: str) -> Optional[Receipt]:
        return await self.ledger.get_receipt(mnemonic)

    async def validate_chain(self) -> bool:
        valid = await self.ledger.validate_chain()
        if not valid:
            logger.error("Local chain failed validation")
        return valid

    async def detect_divergence(self, remote_hash: str, remote_index: int) -> Divergence:
        return await self.ledger.detect_divergence(remote_hash, remote_index)

    async def reset_chain(self) -> Block:
        """Clear blocks, actions and receipts and start over from a new genesis."""
        return await self.ledger.reset()

    async def request_sync(self, wait: Optional[float] = None) -> SyncRound:
        return await self.coordinator.request_sync(wait)
