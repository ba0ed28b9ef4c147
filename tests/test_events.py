"""
Tests for the event codec.
"""

import json

import pytest

from auditchain.core.canonical import canonical_json
from auditchain.core.crypto import KeyCustodian
from auditchain.core.events import (
    EventKind,
    SignedEvent,
    UnsignedEvent,
    compute_event_id,
    create_poll_event,
    create_poll_update_event,
    create_post_event,
    create_vote_event,
    serialize_event,
    sign_event,
    verify_event,
    verify_event_id,
)


@pytest.fixture
def unsigned(custodian) -> UnsignedEvent:
    return UnsignedEvent(
        pubkey=custodian.public_key,
        created_at=1700000000,
        kind=EventKind.VOTE_CAST,
        tags=[["poll_id", "p1"]],
        content='{"choice":"A"}',
    )


class TestEventId:
    """Tests for id computation."""

    def test_serialization_has_version_prefix(self, unsigned):
        serialized = json.loads(serialize_event(unsigned))
        assert serialized[0] == 0
        assert serialized[1:] == [
            unsigned.pubkey, 1700000000, 101, [["poll_id", "p1"]], '{"choice":"A"}'
        ]

    def test_id_deterministic(self, unsigned):
        assert compute_event_id(unsigned) == compute_event_id(unsigned.model_copy())
        assert len(compute_event_id(unsigned)) == 64

    def test_id_covers_tags(self, unsigned):
        other = unsigned.model_copy(update={"tags": [["poll_id", "p2"]]})
        assert compute_event_id(other) != compute_event_id(unsigned)


class TestSignVerify:
    """Tests for signing and verification."""

    def test_round_trip(self, unsigned, custodian):
        """verify(sign(E)) holds."""
        event = sign_event(unsigned, custodian)
        assert event.id == compute_event_id(unsigned)
        assert verify_event(event)

    def test_content_mutation_fails(self, unsigned, custodian):
        event = sign_event(unsigned, custodian)
        tampered = event.model_copy(update={"content": '{"choice":"B"}'})
        assert not verify_event(tampered)

    def test_mismatched_id_short_circuits(self, unsigned, custodian, monkeypatch):
        """No signature work is done for a tampered id."""
        event = sign_event(unsigned, custodian)
        tampered = event.model_copy(update={"created_at": event.created_at + 1})

        calls = []
        monkeypatch.setattr(
            "auditchain.core.events.verify_event_signature",
            lambda e: calls.append(e) or True,
        )
        assert not verify_event(tampered)
        assert calls == []

    def test_recomputed_id_with_foreign_signature(self, unsigned, custodian):
        """A consistent id still needs a valid signature."""
        event = sign_event(unsigned, custodian)
        other = KeyCustodian.generate()
        forged = event.model_copy(update={"sig": other.sign(bytes.fromhex(event.id))})
        assert verify_event_id(forged)
        assert not verify_event(forged)

    def test_malformed_hex_is_false(self, unsigned, custodian):
        event = sign_event(unsigned, custodian)
        assert not verify_event(event.model_copy(update={"sig": "xyz"}))
        assert not verify_event(event.model_copy(update={"id": "not-hex"}))

    def test_pubkey_must_match_custodian(self, unsigned):
        with pytest.raises(ValueError):
            sign_event(unsigned, KeyCustodian.generate())

    def test_wire_round_trip(self, unsigned, custodian):
        event = sign_event(unsigned, custodian)
        restored = SignedEvent.from_dict(json.loads(json.dumps(event.to_dict())))
        assert restored == event
        assert verify_event(restored)


class TestFactories:
    """Tests for the well-known event shapes."""

    def test_poll_event(self, custodian):
        event = create_poll_event(custodian, "p1", "c1", "Lunch?", ["Pizza", "Soup"])
        assert event.kind == EventKind.POLL_CREATION
        assert event.tag("poll_id") == "p1"
        assert event.tag("community") == "c1"
        content = json.loads(event.content)
        assert content["options"] == ["Pizza", "Soup"]
        assert content["durationDays"] == 7
        assert verify_event(event)

    def test_vote_event(self, custodian):
        event = create_vote_event(custodian, "p1", "Pizza", "device-1", option_id="o1")
        assert event.kind == EventKind.VOTE_CAST
        assert event.tag("option") == "o1"
        assert event.content == canonical_json({"choice": "Pizza", "deviceId": "device-1"})
        assert verify_event(event)

    def test_vote_event_without_option(self, custodian):
        event = create_vote_event(custodian, "p1", "Pizza", "device-1")
        assert event.tag("option") is None

    def test_poll_update_event(self, custodian):
        event = create_poll_update_event(custodian, "p1", {"isPrivate": True})
        assert event.kind == EventKind.POLL_UPDATE
        assert json.loads(event.content) == {"isPrivate": True}
        assert verify_event(event)

    def test_post_event(self, custodian):
        event = create_post_event(custodian, "post-1", "c1", "Hello", "First post")
        assert event.kind == EventKind.POST_CREATION
        assert event.tag("post_id") == "post-1"
        assert json.loads(event.content)["imageIPFS"] == ""
        assert verify_event(event)

    def test_created_at_whole_seconds(self, custodian):
        event = create_vote_event(custodian, "p1", "A", "d")
        assert isinstance(event.created_at, int)
        assert event.created_at < 10_000_000_000
