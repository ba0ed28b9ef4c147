"""
In-process broadcast channel transport.

Peers that share a process (for example several nodes in one test or one
service) join a named channel on a hub. A publish is delivered to every
other member of the channel, never back to the sender. Each member reads
its frames from its own inbox in order, so delivery is asynchronous but
FIFO per receiver.
"""

import asyncio
import json
import logging
from typing import Any, Optional

from .messages import make_envelope
from .transport import Transport

logger = logging.getLogger(__name__)


class BroadcastHub:
    """Routes frames between members of named channels."""

    def __init__(self) -> None:
        self._channels: dict[str, list["BroadcastChannelTransport"]] = {}

    def join(self, member: "BroadcastChannelTransport") -> None:
        members = self._channels.setdefault(member.channel_name, [])
        if member not in members:
            members.append(member)

    def leave(self, member: "BroadcastChannelTransport") -> None:
        members = self._channels.get(member.channel_name, [])
        if member in members:
            members.remove(member)
        if not members:
            self._channels.pop(member.channel_name, None)

    def members(self, channel_name: str) -> list["BroadcastChannelTransport"]:
        return list(self._channels.get(channel_name, []))

    def deliver(self, sender: "BroadcastChannelTransport", frame: str) -> int:
        """Queue a frame for every member except the sender."""
        count = 0
        for member in self.members(sender.channel_name):
            if member is sender:
                continue
            member._enqueue(frame)
            count += 1
        return count

    async def flush(self, channel_name: Optional[str] = None) -> None:
        """
        Wait until every queued frame has been handled.

        Handlers may publish further frames; flushing continues until all
        inboxes are idle.
        """
        while True:
            if channel_name is None:
                members = [m for ms in self._channels.values() for m in ms]
            else:
                members = self.members(channel_name)

            for member in members:
                await member._inbox.join()

            if all(member._pending == 0 for member in members):
                return


_default_hub = BroadcastHub()


def default_hub() -> BroadcastHub:
    """Hub shared by all transports that do not bring their own."""
    return _default_hub


class BroadcastChannelTransport(Transport):
    """
    Transport over a named in-process channel.

    Usage:
        hub = BroadcastHub()
        a = BroadcastChannelTransport("auditchain-sync", "peer-a", hub)
        b = BroadcastChannelTransport("auditchain-sync", "peer-b", hub)
        await a.start(); await b.start()
        await a.publish("request-sync", {"peerId": "peer-a"})
    """

    name = "broadcast"

    def __init__(
        self,
        channel_name: str,
        peer_id: str,
        hub: Optional[BroadcastHub] = None,
    ) -> None:
        super().__init__(peer_id)
        self.channel_name = channel_name
        self.hub = hub or default_hub()
        self._inbox: asyncio.Queue[str] = asyncio.Queue()
        self._pending = 0
        self._reader: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def peers(self) -> set[str]:
        if not self._running:
            return set()
        return {
            m.peer_id
            for m in self.hub.members(self.channel_name)
            if m is not self and m.peer_id != self.peer_id
        }

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self.hub.join(self)
        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"[broadcast] Joined channel {self.channel_name} as {self.peer_id[:16]}")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        self.hub.leave(self)

        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        # Drop frames that will never be read
        while not self._inbox.empty():
            self._inbox.get_nowait()
            self._inbox.task_done()
        self._pending = 0

        logger.info(f"[broadcast] Left channel {self.channel_name}")

    async def publish(self, msg_type: str, data: Any) -> bool:
        if not self._running:
            logger.warning(f"[broadcast] Cannot publish {msg_type}: channel not joined")
            return False

        frame = json.dumps(make_envelope(msg_type, data, self.peer_id))
        self.hub.deliver(self, frame)
        return True

    def _enqueue(self, frame: str) -> None:
        if not self._running:
            return
        self._pending += 1
        self._inbox.put_nowait(frame)

    async def _read_loop(self) -> None:
        while True:
            frame = await self._inbox.get()
            try:
                await self._dispatch(frame)
            finally:
                self._pending -= 1
                self._inbox.task_done()
