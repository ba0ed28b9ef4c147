"""
Tests for blocks and the chain engine.

These tests cover:
- Genesis construction and validation
- Minting successors and pairwise validation
- Whole-chain validation and single-byte tampering
- Legacy (unsigned) trust tier
- Fork / rollback classification
"""

import json

import pytest
from pydantic import ValidationError

from auditchain.core.blockchain import (
    GENESIS_PREVIOUS_HASH,
    ActionType,
    Block,
    ChainEngine,
    ChainHead,
    Divergence,
    calculate_block_hash,
    hash_payload,
)
from auditchain.core.crypto import KeyCustodian


def flip(hex_value: str, position: int = 10) -> str:
    """Change one hex digit."""
    replacement = "1" if hex_value[position] == "0" else "0"
    return hex_value[:position] + replacement + hex_value[position + 1:]


class TestGenesis:
    """Tests for genesis blocks."""

    def test_genesis_shape(self, genesis, custodian):
        assert genesis.index == 0
        assert genesis.previous_hash == GENESIS_PREVIOUS_HASH
        assert genesis.payload_hash == GENESIS_PREVIOUS_HASH
        assert genesis.nonce == 0
        assert genesis.public_key == custodian.public_key
        assert genesis.is_genesis

    def test_genesis_valid(self, engine, genesis):
        assert engine.validate_genesis(genesis)

    def test_genesis_hash_recomputes(self, genesis):
        assert genesis.calculate_hash() == genesis.current_hash

    def test_genesis_wrong_sentinel(self, engine, genesis):
        tampered = genesis.model_copy(update={"previous_hash": "1" * 64})
        assert not engine.validate_genesis(tampered)

    def test_genesis_timestamp_tamper(self, engine, genesis):
        """Timestamp is covered by the genesis hash and signature."""
        tampered = genesis.model_copy(update={"timestamp": genesis.timestamp + 1})
        assert not engine.validate_genesis(tampered)

    def test_mint_without_custodian(self):
        with pytest.raises(ValueError):
            ChainEngine().create_genesis()


class TestMint:
    """Tests for minting successor blocks."""

    def test_successor_fields(self, engine, genesis):
        block = engine.mint({"choice": "A"}, genesis, ActionType.VOTE, "Vote on p1")
        assert block.index == 1
        assert block.previous_hash == genesis.current_hash
        assert block.payload_hash == hash_payload({"choice": "A"})
        assert block.action_type == "vote"
        assert block.action_label == "Vote on p1"

    def test_payload_key_order_irrelevant(self, engine, genesis):
        a = engine.mint({"a": 1, "b": 2}, genesis, timestamp=1)
        b = engine.mint({"b": 2, "a": 1}, genesis, timestamp=1)
        assert a.payload_hash == b.payload_hash

    def test_successor_validates(self, engine, genesis):
        block = engine.mint({"choice": "A"}, genesis)
        assert engine.validate(block, genesis)

    def test_non_sequential_index(self, engine, chain):
        assert not engine.validate(chain[3], chain[1])

    def test_wrong_predecessor(self, engine, chain):
        skipped = chain[2].model_copy(update={"index": 3})
        assert not engine.validate(skipped, chain[2])

    def test_validator_needs_no_key(self, chain):
        """Validation works without a custodian."""
        assert ChainEngine().validate_full_chain(chain)

    def test_signature_by_other_key_rejected(self, engine, genesis):
        block = engine.mint({"choice": "A"}, genesis)
        other = KeyCustodian.generate()
        forged = block.model_copy(update={"public_key": other.public_key})
        assert not engine.validate(forged, genesis)


class TestFullChain:
    """Tests for whole-chain validation."""

    def test_valid_chain(self, engine, chain):
        assert engine.validate_full_chain(chain)

    def test_unsorted_input(self, engine, chain):
        """Blocks are sorted by index before validation."""
        assert engine.validate_full_chain(list(reversed(chain)))

    def test_empty_chain_invalid(self, engine):
        assert not engine.validate_full_chain([])

    def test_missing_genesis(self, engine, chain):
        assert not engine.validate_full_chain(chain[1:])

    def test_gap_invalidates(self, engine, chain):
        assert not engine.validate_full_chain(chain[:2] + chain[3:])

    @pytest.mark.parametrize("field", ["payload_hash", "previous_hash", "signature", "current_hash"])
    @pytest.mark.parametrize("position", [0, 2, 4])
    def test_single_digit_flip_invalidates(self, engine, chain, field, position):
        """Flipping any hash field of any block breaks the chain."""
        tampered = list(chain)
        block = tampered[position]
        tampered[position] = block.model_copy(update={field: flip(getattr(block, field))})
        assert not engine.validate_full_chain(tampered)


class TestLegacyBlocks:
    """Tests for blocks without a public key."""

    def _legacy_successor(self, previous: Block, signature: str, public_key=None) -> Block:
        payload_hash = hash_payload({"choice": "B"})
        index = previous.index + 1
        timestamp = previous.timestamp + 1
        return Block(
            index=index,
            timestamp=timestamp,
            previous_hash=previous.current_hash,
            payload_hash=payload_hash,
            signature=signature,
            current_hash=calculate_block_hash(
                index, timestamp, previous.current_hash, payload_hash, signature, 0
            ),
            public_key=public_key,
        )

    def test_legacy_accepted_on_linkage(self, engine, genesis):
        legacy = self._legacy_successor(genesis, "legacy-signature")
        assert legacy.is_legacy
        assert engine.validate(legacy, genesis)

    def test_wrong_signature_with_key_rejected(self, engine, genesis, custodian):
        signed = self._legacy_successor(genesis, "ab" * 64, public_key=custodian.public_key)
        assert not signed.is_legacy
        assert not engine.validate(signed, genesis)

    def test_legacy_hash_still_checked(self, engine, genesis):
        legacy = self._legacy_successor(genesis, "legacy-signature")
        tampered = legacy.model_copy(update={"payload_hash": flip(legacy.payload_hash)})
        assert not engine.validate(tampered, genesis)


class TestDivergence:
    """Tests for fork / rollback detection."""

    HEAD = ChainHead(hash="a" * 64, index=5)

    def test_rollback(self):
        assert ChainEngine.detect_divergence(self.HEAD, "a" * 64, 3) == Divergence.ROLLBACK

    def test_fork(self):
        assert ChainEngine.detect_divergence(self.HEAD, "b" * 64, 5) == Divergence.FORK

    def test_same_head_ok(self):
        assert ChainEngine.detect_divergence(self.HEAD, "a" * 64, 5) == Divergence.OK

    def test_remote_ahead_ok(self):
        assert ChainEngine.detect_divergence(self.HEAD, "c" * 64, 9) == Divergence.OK

    def test_no_local_head(self):
        assert ChainEngine.detect_divergence(None, "c" * 64, 0) == Divergence.OK


class TestWireForm:
    """Tests for block serialization."""

    def test_camel_case_keys(self, chain):
        data = chain[1].to_dict()
        assert set(data) >= {
            "index", "timestamp", "previousHash", "payloadHash",
            "signature", "currentHash", "nonce", "publicKey", "actionType",
        }

    def test_optional_fields_omitted(self, genesis):
        assert "actionType" not in genesis.to_dict()

    def test_parse_either_naming(self, chain):
        block = chain[1]
        assert Block.from_dict(block.to_dict()) == block
        assert Block.model_validate(block.model_dump()) == block

    def test_malformed_hash_rejected(self, chain):
        data = chain[1].to_dict()
        data["previousHash"] = "not-a-hash"
        with pytest.raises(ValidationError):
            Block.from_dict(data)

    def test_negative_index_rejected(self, chain):
        data = chain[1].to_dict()
        data["index"] = -1
        with pytest.raises(ValidationError):
            Block.from_dict(data)

    def test_blocks_immutable(self, genesis):
        with pytest.raises(ValidationError):
            genesis.index = 7


class TestEndToEnd:
    """Genesis, one vote, serialize, validate, corrupt."""

    def test_vote_chain_round_trip(self, engine):
        genesis = engine.create_genesis()
        block1 = engine.mint({"choice": "A"}, genesis)

        wire = json.dumps([genesis.to_dict(), block1.to_dict()])
        restored = [Block.from_dict(d) for d in json.loads(wire)]
        assert engine.validate_full_chain(restored)

        corrupted = restored[1].model_copy(update={"previous_hash": flip(restored[1].previous_hash)})
        assert not engine.validate_full_chain([restored[0], corrupted])
