"""
Relay and sync message definitions.

Every frame crossing a transport is parsed into one variant of a closed
union, discriminated by ``type``. Anything else is rejected here, before
it can reach chain logic.

Sync messages (peer to peer, forwarded verbatim by the relay):
- new-block, new-event, request-sync, sync-response
- new-poll, peer-addresses, server-list (opaque, not handled here)

Relay to client: welcome, peer-list, peer-left
Client to relay: register, join-room, broadcast, direct
"""

import json
import time
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from ..core.blockchain import Block
from ..core.events import SignedEvent
from ..exceptions import MessageParseError

NEW_BLOCK = "new-block"
NEW_EVENT = "new-event"
REQUEST_SYNC = "request-sync"
SYNC_RESPONSE = "sync-response"

SYNC_TYPES = frozenset({NEW_BLOCK, NEW_EVENT, REQUEST_SYNC, SYNC_RESPONSE})

# Types the relay forwards to all other peers without unwrapping
PASS_THROUGH_TYPES = frozenset({
    "new-poll",
    NEW_BLOCK,
    REQUEST_SYNC,
    SYNC_RESPONSE,
    NEW_EVENT,
    "peer-addresses",
    "server-list",
})


class _Message(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class _SyncMessage(_Message):
    """Common envelope of peer-to-peer messages."""

    peer_id: Optional[str] = None
    timestamp: Optional[float] = None


class SyncRequestData(_Message):
    peer_id: str
    request_id: Optional[str] = None


class SyncResponseData(_Message):
    peer_id: Optional[str] = None
    request_id: Optional[str] = None
    blocks: list[Block] = Field(default_factory=list)


class NewBlockMessage(_SyncMessage):
    type: Literal["new-block"] = NEW_BLOCK
    data: Block


class NewEventMessage(_SyncMessage):
    type: Literal["new-event"] = NEW_EVENT
    data: SignedEvent


class RequestSyncMessage(_SyncMessage):
    type: Literal["request-sync"] = REQUEST_SYNC
    data: SyncRequestData


class SyncResponseMessage(_SyncMessage):
    type: Literal["sync-response"] = SYNC_RESPONSE
    data: SyncResponseData


class PassThroughMessage(_SyncMessage):
    """Application messages the chain core carries but does not interpret."""

    type: Literal["new-poll", "peer-addresses", "server-list"]
    data: Any = None


class WelcomeMessage(_Message):
    type: Literal["welcome"] = "welcome"
    message: str = ""
    timestamp: Optional[float] = None


class PeerListMessage(_Message):
    type: Literal["peer-list"] = "peer-list"
    peers: list[str] = Field(default_factory=list)


class PeerLeftMessage(_Message):
    type: Literal["peer-left"] = "peer-left"
    peer_id: str


class RegisterMessage(_Message):
    type: Literal["register"] = "register"
    peer_id: str


class JoinRoomMessage(_Message):
    type: Literal["join-room"] = "join-room"
    room_id: str = "default"


class BroadcastMessage(_Message):
    type: Literal["broadcast"] = "broadcast"
    data: dict[str, Any]


class DirectMessage(_Message):
    type: Literal["direct"] = "direct"
    target_peer: str
    data: dict[str, Any]


SyncMessage = Union[
    NewBlockMessage,
    NewEventMessage,
    RequestSyncMessage,
    SyncResponseMessage,
    PassThroughMessage,
]

RelayMessage = Annotated[
    Union[
        NewBlockMessage,
        NewEventMessage,
        RequestSyncMessage,
        SyncResponseMessage,
        PassThroughMessage,
        WelcomeMessage,
        PeerListMessage,
        PeerLeftMessage,
        RegisterMessage,
        JoinRoomMessage,
        BroadcastMessage,
        DirectMessage,
    ],
    Field(discriminator="type"),
]

_relay_adapter: TypeAdapter = TypeAdapter(RelayMessage)


def parse_message(raw: Union[str, bytes, dict[str, Any]]) -> RelayMessage:
    """
    Parse a frame into its message variant.

    Raises:
        MessageParseError: for invalid JSON, unknown types or missing fields
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MessageParseError(f"Invalid JSON frame: {e}") from e

    if not isinstance(raw, dict):
        raise MessageParseError("Frame is not a JSON object")

    raw_type = raw.get("type")
    try:
        return _relay_adapter.validate_python(raw)
    except ValidationError as e:
        raise MessageParseError(
            f"Invalid {raw_type or 'untyped'} message: {e.error_count()} error(s)",
            raw_type=raw_type if isinstance(raw_type, str) else None,
        ) from e


def make_envelope(msg_type: str, data: Any, peer_id: Optional[str]) -> dict[str, Any]:
    """
    Build the JSON form of a sync message for publishing.

    ``data`` may be a model (Block, SignedEvent, ...) or plain JSON data.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True, exclude_none=True)
    envelope: dict[str, Any] = {
        "type": msg_type,
        "data": data,
        "timestamp": int(time.time() * 1000),
    }
    if peer_id is not None:
        envelope["peerId"] = peer_id
    return envelope
