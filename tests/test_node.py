"""
Tests for the chain node facade.
"""

import httpx
import pytest

from auditchain.audit import AuditClient
from auditchain.config import ChainConfig
from auditchain.core.storage import MemoryChainStore
from auditchain.exceptions import AuditChainError, VoteRejectedError
from auditchain.network.broadcast import BroadcastChannelTransport, BroadcastHub
from auditchain.node import ChainNode


@pytest.fixture
def config(tmp_path, monkeypatch) -> ChainConfig:
    monkeypatch.delenv("AUDITCHAIN_SYNC_WAIT", raising=False)
    monkeypatch.delenv("AUDITCHAIN_DATA_DIR", raising=False)
    return ChainConfig(data_dir=tmp_path, sync_wait=0.1)


def hub_node(config, hub, name, audit=None) -> ChainNode:
    transport = BroadcastChannelTransport(config.channel_name, name, hub)
    return ChainNode(
        config,
        store=MemoryChainStore(),
        transports=[transport],
        audit=audit,
        peer_id=name,
    )


def audit_client(allowed=True, receipts=None) -> AuditClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/vote-authorize":
            return httpx.Response(200, json={"allowed": allowed, "reason": "duplicate vote"})
        if receipts is not None:
            receipts.append(request.read())
        return httpx.Response(200)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AuditClient("http://relay.test", http=http)


class TestLifecycle:
    """Tests for start / stop."""

    @pytest.mark.asyncio
    async def test_not_started(self, config):
        node = ChainNode(config, store=MemoryChainStore())
        with pytest.raises(AuditChainError) as exc:
            node.ledger
        assert exc.value.code == "NODE_NOT_STARTED"

    @pytest.mark.asyncio
    async def test_offline_node_seeds_genesis(self, config):
        node = ChainNode(config, store=MemoryChainStore())
        await node.start()
        try:
            head = await node.head()
            assert head.index == 0
            assert await node.validate_chain()
        finally:
            await node.stop()

    @pytest.mark.asyncio
    async def test_key_and_chain_persist(self, config):
        node = ChainNode(config)
        await node.start()
        block, receipt = await node.record_action({"choice": "A"}, "vote")
        key = node.custodian.public_key
        await node.stop()

        assert config.db_path.exists()

        again = ChainNode(config)
        await again.start()
        try:
            assert again.custodian.public_key == key
            assert (await again.head()).hash == block.current_hash
            assert await again.get_receipt(receipt.mnemonic) == receipt
        finally:
            await again.stop()

    @pytest.mark.asyncio
    async def test_bootstrap_adopts_existing_chain(self, config):
        hub = BroadcastHub()
        a = hub_node(config, hub, "a")
        await a.start()
        await a.record_action({"choice": "A"}, "vote")

        b = hub_node(config, hub, "b")
        await b.start()
        try:
            assert await b.blocks() == await a.blocks()
        finally:
            await a.stop()
            await b.stop()

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, config):
        node = ChainNode(config)
        await node.start()
        await node.record_action({"choice": "A"}, "vote")
        await node.stop()

        with pytest.raises(AuditChainError):
            node.store

        await node.start()
        try:
            block, _ = await node.record_action({"choice": "B"}, "vote")
            assert block.index == 2
            assert (await node.head()).index == 2
            assert await node.validate_chain()
        finally:
            await node.stop()

    @pytest.mark.asyncio
    async def test_restart_does_not_double_subscribe(self, config):
        hub = BroadcastHub()
        a = hub_node(config, hub, "a")
        b = hub_node(config, hub, "b")
        await a.start()
        await b.start()
        await b.stop()
        await b.start()
        try:
            await a.record_action({"choice": "A"}, "vote")
            await hub.flush()

            assert await b.blocks() == await a.blocks()
            assert len(b.transports[0]._handlers["new-block"]) == 1
        finally:
            await a.stop()
            await b.stop()

    @pytest.mark.asyncio
    async def test_from_config_nodes_share_channel(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AUDITCHAIN_SYNC_WAIT", raising=False)
        monkeypatch.delenv("AUDITCHAIN_DATA_DIR", raising=False)
        monkeypatch.delenv("AUDITCHAIN_CHANNEL_NAME", raising=False)
        channel = f"test-{tmp_path.name}"
        a = ChainNode.from_config(
            ChainConfig(data_dir=tmp_path / "a", sync_wait=0.5, channel_name=channel), relay=False
        )
        b = ChainNode.from_config(
            ChainConfig(data_dir=tmp_path / "b", sync_wait=0.5, channel_name=channel), relay=False
        )
        assert [t.name for t in a.transports] == ["broadcast"]
        assert a.audit is None

        await a.start()
        await a.record_action({"choice": "A"}, "vote")
        await b.start()
        try:
            assert await b.blocks() == await a.blocks()
        finally:
            await a.stop()
            await b.stop()


class TestRecording:
    """Tests for local mutations through the node."""

    @pytest.mark.asyncio
    async def test_record_action_propagates(self, config):
        hub = BroadcastHub()
        a = hub_node(config, hub, "a")
        b = hub_node(config, hub, "b")
        await a.start()
        await b.start()
        try:
            block, receipt = await a.record_action(
                {"title": "hello"}, "post-create", action_label="New post", correlation_id="c1"
            )
            await hub.flush()

            assert receipt.correlation_id == "c1"
            assert (await b.head()).hash == block.current_hash
            assert await b.validate_chain()
        finally:
            await a.stop()
            await b.stop()

    @pytest.mark.asyncio
    async def test_record_vote(self, config):
        hub = BroadcastHub()
        receipts = []
        a = hub_node(config, hub, "a", audit=audit_client(receipts=receipts))
        b = hub_node(config, hub, "b")
        await a.start()
        await b.start()
        try:
            block, receipt = await a.record_vote("poll-1", "yes", "device-a", option_id="opt-1")
            await hub.flush()

            assert block.action_type == "vote"
            assert block.action_label == "Vote on poll-1"
            actions = await a.store.get_actions("vote")
            assert actions[-1].payload == {
                "pollId": "poll-1", "choice": "yes", "deviceId": "device-a", "optionId": "opt-1",
            }
            assert len(receipts) == 1

            events = b.coordinator.events
            assert len(events) == 1
            assert events[0].tag("poll_id") == "poll-1"
            assert events[0].pubkey == a.custodian.public_key
        finally:
            await a.stop()
            await b.stop()

    @pytest.mark.asyncio
    async def test_rejected_vote_leaves_chain_untouched(self, config):
        node = ChainNode(config, store=MemoryChainStore(), audit=audit_client(allowed=False))
        await node.start()
        try:
            before = await node.blocks()
            with pytest.raises(VoteRejectedError) as exc:
                await node.record_vote("poll-1", "yes", "device-a")
            assert exc.value.poll_id == "poll-1"
            assert "duplicate vote" in str(exc.value)
            assert await node.blocks() == before
        finally:
            await node.stop()


class TestChainMaintenance:
    """Tests for reset and divergence queries."""

    @pytest.mark.asyncio
    async def test_reset_chain(self, config):
        node = ChainNode(config, store=MemoryChainStore())
        await node.start()
        try:
            _, receipt = await node.record_action({"choice": "A"}, "vote")
            genesis = await node.reset_chain()

            assert await node.blocks() == [genesis]
            assert await node.get_receipt(receipt.mnemonic) is None
        finally:
            await node.stop()

    @pytest.mark.asyncio
    async def test_detect_divergence(self, config):
        node = ChainNode(config, store=MemoryChainStore())
        await node.start()
        try:
            genesis = (await node.blocks())[0]
            block, _ = await node.record_action({"choice": "A"}, "vote")

            assert (await node.detect_divergence(block.current_hash, 1)).value == "ok"
            assert (await node.detect_divergence(genesis.current_hash, 0)).value == "rollback"
            assert (await node.detect_divergence("a" * 64, 1)).value == "fork"
        finally:
            await node.stop()
