"""
Chain synchronization between peers.

This module provides:
- SyncCoordinator: admits remote blocks/events and republishes local ones
- SyncRound: one correlated request-sync round and its outcome
- Divergence signalling (fork / rollback) to registered handlers

The coordinator is transport-agnostic. It subscribes to the same four
message types on every transport it is given and treats messages from
any of them identically.
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from typing import Any, Callable, Coroutine, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..network.messages import (
    NEW_BLOCK,
    NEW_EVENT,
    REQUEST_SYNC,
    SYNC_RESPONSE,
    NewBlockMessage,
    NewEventMessage,
    RequestSyncMessage,
    SyncRequestData,
    SyncResponseData,
    SyncResponseMessage,
)
from ..network.transport import Transport
from .blockchain import Block, ChainHead, Divergence
from .events import SignedEvent, verify_event
from .ledger import AdmitResult, ChainLedger

logger = logging.getLogger(__name__)

__all__ = ["AdmitResult", "SyncCoordinator", "SyncRound"]

EventHandler = Callable[[SignedEvent], Coroutine[Any, Any, None]]
DivergenceHandler = Callable[[Divergence, ChainHead, Optional[str]], Coroutine[Any, Any, None]]


class SyncRound(BaseModel):
    """Outcome of one request-sync round."""

    request_id: str
    expected: set[str] = Field(default_factory=set)
    responders: set[str] = Field(default_factory=set)
    admitted: int = 0
    started_at: float = Field(default_factory=time.time)
    completed: bool = False
    timed_out: bool = False

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def missing(self) -> set[str]:
        """Expected peers that did not answer."""
        return self.expected - self.responders

    @property
    def all_answered(self) -> bool:
        return bool(self.expected) and self.expected <= self.responders


class SyncCoordinator:
    """
    Propagates local blocks/events and admits validated remote state.

    Features:
    - Idempotent admission (duplicates by index are no-ops)
    - Bounded buffer for out-of-order new-block messages
    - Correlated resync rounds bounded by a deadline
    - Fork / rollback detection on every sync response
    """

    MAX_BUFFERED = 256   # Out-of-order blocks held per coordinator
    MAX_EVENTS = 1000    # Verified events kept in memory

    def __init__(
        self,
        ledger: ChainLedger,
        transports: Sequence[Transport],
        peer_id: str,
        sync_wait: float = 1.0,
        max_buffered: int = MAX_BUFFERED,
        max_events: int = MAX_EVENTS,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            ledger: Serialized access to the local chain store
            transports: Transports to subscribe to and publish on
            peer_id: This peer's id (own frames are ignored)
            sync_wait: Default deadline of a resync round, in seconds
            max_buffered: Maximum out-of-order blocks held for later
            max_events: Maximum verified events kept in memory
        """
        self.ledger = ledger
        self.transports = list(transports)
        self.peer_id = peer_id
        self.sync_wait = sync_wait
        self.max_buffered = max_buffered
        self.max_events = max_events

        self._buffer: dict[str, Block] = {}
        self._events: OrderedDict[str, SignedEvent] = OrderedDict()
        self._rounds: dict[str, tuple[SyncRound, asyncio.Event]] = {}

        self._event_handlers: list[EventHandler] = []
        self._divergence_handlers: list[DivergenceHandler] = []
        self._started = False

    @property
    def events(self) -> list[SignedEvent]:
        """Verified events received so far, oldest first."""
        return list(self._events.values())

    @property
    def buffered(self) -> list[int]:
        """Indices of blocks waiting for their predecessor."""
        return sorted(block.index for block in self._buffer.values())

    @property
    def peers(self) -> set[str]:
        """Live peers across all transports."""
        peers: set[str] = set()
        for transport in self.transports:
            peers |= transport.peers
        peers.discard(self.peer_id)
        return peers

    def on_event(self, handler: EventHandler) -> None:
        """Register a handler for verified remote events."""
        self._event_handlers.append(handler)

    def on_divergence(self, handler: DivergenceHandler) -> None:
        """Register a handler for fork / rollback signals."""
        self._divergence_handlers.append(handler)

    def start(self) -> None:
        """Subscribe to sync messages on every transport."""
        if self._started:
            return

        for transport in self.transports:
            transport.subscribe(NEW_BLOCK, self._handle_new_block)
            transport.subscribe(NEW_EVENT, self._handle_new_event)
            transport.subscribe(REQUEST_SYNC, self._handle_request_sync)
            transport.subscribe(SYNC_RESPONSE, self._handle_sync_response)

        self._started = True

    async def publish_local(self, block: Block, event: Optional[SignedEvent] = None) -> bool:
        """
        Publish a locally minted block (and its event) on every transport.

        Returns:
            True if every transport accepted the messages
        """
        delivered = True
        for transport in self.transports:
            delivered &= await transport.publish(NEW_BLOCK, block)
            if event is not None:
                delivered &= await transport.publish(NEW_EVENT, event)
        return delivered

    async def request_sync(self, wait: Optional[float] = None) -> SyncRound:
        """
        Run one resync round.

        Broadcasts request-sync with a fresh correlation id and collects
        responses until every expected peer answered or the deadline
        elapses. When no live peers are known the round always runs to
        its deadline, since responders cannot be anticipated.

        Args:
            wait: Deadline in seconds (defaults to ``sync_wait``)

        Returns:
            The completed SyncRound
        """
        wait = self.sync_wait if wait is None else wait
        sync_round = SyncRound(request_id=uuid.uuid4().hex, expected=self.peers)
        done = asyncio.Event()
        self._rounds[sync_round.request_id] = (sync_round, done)

        request = SyncRequestData(peer_id=self.peer_id, request_id=sync_round.request_id)
        logger.info(
            f"Requesting sync {sync_round.request_id[:8]} "
            f"from {len(sync_round.expected)} known peer(s)"
        )

        try:
            for transport in self.transports:
                await transport.publish(REQUEST_SYNC, request)

            try:
                await asyncio.wait_for(done.wait(), timeout=wait)
            except asyncio.TimeoutError:
                sync_round.timed_out = True
        finally:
            self._rounds.pop(sync_round.request_id, None)

        sync_round.completed = True
        if sync_round.timed_out and sync_round.missing:
            logger.info(
                f"Sync {sync_round.request_id[:8]} deadline reached, "
                f"{len(sync_round.missing)} peer(s) silent"
            )
        logger.info(
            f"Sync {sync_round.request_id[:8]} complete: "
            f"{len(sync_round.responders)} response(s), {sync_round.admitted} block(s) admitted"
        )
        return sync_round

    async def offer_block(self, block: Block) -> AdmitResult:
        """
        Admit a block, buffering it if its predecessor is missing.

        Returns:
            The ledger's admission result
        """
        result = await self.ledger.admit(block)

        if result == AdmitResult.ADMITTED:
            await self._drain_buffer()
        elif result == AdmitResult.GAP:
            head = await self.ledger.head()
            self._buffer_block(block, head.index if head else -1)
        elif result == AdmitResult.REJECTED:
            logger.warning(f"Rejected block #{block.index} ({block.current_hash[:16]}...)")

        return result

    def _buffer_block(self, block: Block, head_index: int) -> None:
        """
        Hold a block whose predecessor is missing.

        Blocks more than ``max_buffered`` past the head are refused. When
        the buffer is full, the furthest block makes room for a nearer one.
        """
        if block.index > head_index + self.max_buffered:
            logger.warning(
                f"Refusing block #{block.index}, too far past head #{head_index}"
            )
            return
        if block.current_hash in self._buffer:
            return

        if len(self._buffer) >= self.max_buffered:
            furthest = max(self._buffer.values(), key=lambda b: b.index)
            if furthest.index <= block.index:
                logger.warning(f"Sync buffer full, dropping block #{block.index}")
                return
            del self._buffer[furthest.current_hash]
            logger.debug(f"Sync buffer full, evicted block #{furthest.index}")

        self._buffer[block.current_hash] = block
        logger.debug(f"Buffered out-of-order block #{block.index}")

    async def _drain_buffer(self) -> int:
        """Admit buffered blocks that now extend the head."""
        drained = 0
        while self._buffer:
            head = await self.ledger.head()
            next_index = head.index + 1 if head else 0

            for key in [k for k, b in self._buffer.items() if b.index < next_index]:
                del self._buffer[key]

            # Competing blocks may share an index; the first that links wins
            candidates = [b for b in self._buffer.values() if b.index == next_index]
            progressed = False
            for block in candidates:
                del self._buffer[block.current_hash]
                result = await self.ledger.admit(block)
                if result == AdmitResult.REJECTED:
                    logger.warning(f"Discarding buffered block #{block.index}, it does not link")
                    continue
                if result == AdmitResult.ADMITTED:
                    drained += 1
                progressed = True
                break

            if not progressed:
                break

        return drained

    async def _handle_new_block(self, message: NewBlockMessage, transport: Transport) -> None:
        await self.offer_block(message.data)

    async def _handle_new_event(self, message: NewEventMessage, transport: Transport) -> None:
        event = message.data

        if not verify_event(event):
            logger.warning(f"Discarding event with invalid id or signature: {event.id[:16]}...")
            return

        if event.id in self._events:
            logger.debug(f"Duplicate event {event.id[:16]}...")
            return

        self._events[event.id] = event
        while len(self._events) > self.max_events:
            self._events.popitem(last=False)

        for handler in list(self._event_handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Event handler error: {e}")

    async def _handle_request_sync(self, message: RequestSyncMessage, transport: Transport) -> None:
        blocks = await self.ledger.blocks()
        response = SyncResponseData(
            peer_id=self.peer_id,
            request_id=message.data.request_id,
            blocks=blocks,
        )
        logger.debug(f"Answering sync request from {message.data.peer_id[:16]} with {len(blocks)} block(s)")
        await transport.publish(SYNC_RESPONSE, response)

    async def _handle_sync_response(self, message: SyncResponseMessage, transport: Transport) -> None:
        data = message.data
        sender = data.peer_id or message.peer_id
        blocks = sorted(data.blocks, key=lambda b: b.index)

        # Each block only goes in if its predecessor is already present
        admitted = 0
        for block in blocks:
            result = await self.ledger.admit(block)
            if result == AdmitResult.ADMITTED:
                admitted += 1
            elif result == AdmitResult.REJECTED:
                logger.warning(
                    f"Rejected block #{block.index} in sync response from {sender or 'unknown peer'}"
                )

        if admitted:
            await self._drain_buffer()
            logger.info(f"Admitted {admitted} block(s) from {sender or 'unknown peer'}")

        if blocks:
            await self._check_divergence(blocks[-1], sender)

        if data.request_id and data.request_id in self._rounds:
            sync_round, done = self._rounds[data.request_id]
            if sender:
                sync_round.responders.add(sender)
            sync_round.admitted += admitted
            if sync_round.all_answered:
                done.set()

    async def _check_divergence(self, remote: Block, peer_id: Optional[str]) -> None:
        divergence = await self.ledger.detect_divergence(remote.current_hash, remote.index)
        if divergence == Divergence.OK:
            return

        logger.warning(
            f"Chain {divergence.value} detected against {peer_id or 'unknown peer'}: "
            f"remote head #{remote.index} {remote.current_hash[:16]}..."
        )
        for handler in list(self._divergence_handlers):
            try:
                await handler(divergence, remote.head, peer_id)
            except Exception as e:
                logger.error(f"Divergence handler error: {e}")
