"""Shared fixtures for the audit chain tests."""

import pytest

from auditchain.core.blockchain import Block, ChainEngine
from auditchain.core.crypto import KeyCustodian


@pytest.fixture
def custodian() -> KeyCustodian:
    return KeyCustodian.generate()


@pytest.fixture
def engine(custodian) -> ChainEngine:
    return ChainEngine(custodian)


@pytest.fixture
def genesis(engine) -> Block:
    return engine.create_genesis()


@pytest.fixture
def chain(engine, genesis) -> list[Block]:
    """Genesis plus four blocks."""
    blocks = [genesis]
    for i in range(4):
        blocks.append(engine.mint({"choice": f"option-{i}"}, blocks[-1], "vote", f"Vote {i}"))
    return blocks
