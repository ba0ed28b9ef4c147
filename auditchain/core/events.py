"""
Portable signed action records.

Events are verifiable on their own, without access to any chain:
the id is the SHA-256 of the canonical tuple
``[0, pubkey, created_at, kind, tags, content]`` and the signature
covers the id. The leading 0 is a format-version discriminator.
"""

import logging
import time
from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .canonical import canonical_json
from .crypto import KeyCustodian, hash_data, verify_signature_hex

logger = logging.getLogger(__name__)

EVENT_FORMAT_VERSION = 0


class EventKind(IntEnum):
    """Action-type codes carried in ``kind``."""

    POLL_CREATION = 100
    VOTE_CAST = 101
    POLL_UPDATE = 102
    POST_CREATION = 103


class UnsignedEvent(BaseModel):
    """An event before id computation and signing."""

    pubkey: str
    created_at: int
    kind: int = Field(gt=0)
    tags: list[list[str]] = Field(default_factory=list)
    content: str = ""

    model_config = ConfigDict(frozen=True)


class SignedEvent(UnsignedEvent):
    """A complete event: id and signature attached."""

    id: str
    sig: str

    def unsigned(self) -> UnsignedEvent:
        return UnsignedEvent(
            pubkey=self.pubkey,
            created_at=self.created_at,
            kind=self.kind,
            tags=self.tags,
            content=self.content,
        )

    def tag(self, name: str) -> Optional[str]:
        """First value of the named tag, if any."""
        for tag in self.tags:
            if tag and tag[0] == name and len(tag) > 1:
                return tag[1]
        return None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignedEvent":
        return cls.model_validate(data)


def serialize_event(event: UnsignedEvent) -> str:
    """Canonical serialization hashed into the event id."""
    return canonical_json([
        EVENT_FORMAT_VERSION,
        event.pubkey,
        event.created_at,
        event.kind,
        event.tags,
        event.content,
    ])


def compute_event_id(event: UnsignedEvent) -> str:
    """Event id: SHA-256 of the canonical serialization (hex)."""
    return hash_data(serialize_event(event).encode("utf-8"))


def sign_event(unsigned: UnsignedEvent, custodian: KeyCustodian) -> SignedEvent:
    """
    Compute the id and sign it.

    Args:
        unsigned: Event template; its pubkey must be the custodian's
        custodian: Signing identity

    Returns:
        The complete signed event
    """
    if unsigned.pubkey != custodian.public_key:
        raise ValueError("Event pubkey does not match the signing key")

    event_id = compute_event_id(unsigned)
    sig = custodian.sign(bytes.fromhex(event_id))
    return SignedEvent(**unsigned.model_dump(), id=event_id, sig=sig)


def verify_event_id(event: SignedEvent) -> bool:
    return compute_event_id(event.unsigned()) == event.id


def verify_event_signature(event: SignedEvent) -> bool:
    try:
        message = bytes.fromhex(event.id)
    except ValueError:
        return False
    return verify_signature_hex(message, event.sig, event.pubkey)


def verify_event(event: SignedEvent) -> bool:
    """
    Full verification: id integrity, then signature.

    A mismatched id short-circuits without any signature work.
    """
    if not verify_event_id(event):
        logger.debug(f"Event id mismatch for {event.id[:12]}...")
        return False
    return verify_event_signature(event)


def _build(
    custodian: KeyCustodian,
    kind: EventKind,
    tags: list[list[str]],
    content: dict[str, Any],
) -> SignedEvent:
    unsigned = UnsignedEvent(
        pubkey=custodian.public_key,
        created_at=int(time.time()),
        kind=int(kind),
        tags=tags,
        content=canonical_json(content),
    )
    return sign_event(unsigned, custodian)


def create_poll_event(
    custodian: KeyCustodian,
    poll_id: str,
    community_id: str,
    question: str,
    options: list[str],
    description: str = "",
    duration_days: int = 7,
    allow_multiple_choices: bool = False,
    show_results_before_voting: bool = False,
    require_login: bool = False,
    is_private: bool = False,
) -> SignedEvent:
    """Poll creation event (kind 100)."""
    return _build(
        custodian,
        EventKind.POLL_CREATION,
        [["poll_id", poll_id], ["community", community_id]],
        {
            "question": question,
            "description": description,
            "options": options,
            "durationDays": duration_days,
            "allowMultipleChoices": allow_multiple_choices,
            "showResultsBeforeVoting": show_results_before_voting,
            "requireLogin": require_login,
            "isPrivate": is_private,
        },
    )


def create_vote_event(
    custodian: KeyCustodian,
    poll_id: str,
    choice: str,
    device_id: str,
    option_id: Optional[str] = None,
) -> SignedEvent:
    """Vote cast event (kind 101)."""
    tags = [["poll_id", poll_id]]
    if option_id:
        tags.append(["option", option_id])
    return _build(
        custodian,
        EventKind.VOTE_CAST,
        tags,
        {"choice": choice, "deviceId": device_id},
    )


def create_poll_update_event(
    custodian: KeyCustodian,
    poll_id: str,
    updates: dict[str, Any],
) -> SignedEvent:
    """Poll update event (kind 102)."""
    return _build(custodian, EventKind.POLL_UPDATE, [["poll_id", poll_id]], updates)


def create_post_event(
    custodian: KeyCustodian,
    post_id: str,
    community_id: str,
    title: str,
    content: str,
    image_ipfs: str = "",
) -> SignedEvent:
    """Post creation event (kind 103)."""
    return _build(
        custodian,
        EventKind.POST_CREATION,
        [["post_id", post_id], ["community", community_id]],
        {"title": title, "content": content, "imageIPFS": image_ipfs},
    )
