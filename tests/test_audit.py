"""
Tests for the HTTP audit side-channel.
"""

import json

import httpx
import pytest

from auditchain.audit import AuditClient


def make_client(handler) -> AuditClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AuditClient("http://relay.test/", http=http)


class TestAuthorizeVote:
    """Vote authorization is advisory and fails open."""

    @pytest.mark.asyncio
    async def test_allowed(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"allowed": True})

        audit = make_client(handler)
        assert await audit.authorize_vote("p1", "d1")
        assert seen == [("/api/vote-authorize", {"pollId": "p1", "deviceId": "d1"})]

    @pytest.mark.asyncio
    async def test_denied_with_reason(self):
        def handler(request):
            return httpx.Response(200, json={"allowed": False, "reason": "already voted"})

        audit = make_client(handler)
        assert not await audit.authorize_vote("p1", "d1")
        assert audit.last_reason == "already voted"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500, json={"allowed": False}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"reason": "missing allowed"}),
    ])
    async def test_unexpected_answers_allow(self, response):
        audit = make_client(lambda request: response)
        assert await audit.authorize_vote("p1", "d1")
        assert audit.last_reason is None

    @pytest.mark.asyncio
    async def test_unreachable_allows(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        audit = make_client(handler)
        assert await audit.authorize_vote("p1", "d1")


class TestLogReceipt:
    """Receipt mirroring never raises."""

    @pytest.mark.asyncio
    async def test_posted(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(201)

        audit = make_client(handler)
        assert await audit.log_receipt("vote", {"blockIndex": 1})
        assert seen == [("/api/receipts", {"type": "vote", "payload": {"blockIndex": 1}})]

    @pytest.mark.asyncio
    async def test_failures_return_false(self):
        def refused(request):
            raise httpx.ConnectError("refused", request=request)

        assert not await make_client(refused).log_receipt("vote", {})
        assert not await make_client(lambda r: httpx.Response(503)).log_receipt("vote", {})


class TestLifecycle:
    """Tests for client ownership."""

    @pytest.mark.asyncio
    async def test_borrowed_client_left_open(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        audit = AuditClient("http://relay.test", http=http)
        await audit.aclose()
        assert not http.is_closed
        await http.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        audit = AuditClient("http://relay.test")
        http = audit._client()
        await audit.aclose()
        assert http.is_closed

    @pytest.mark.asyncio
    async def test_usable_after_close(self):
        """A closed owned client is replaced on next use, so a node can restart."""
        audit = AuditClient("http://relay.test")
        first = audit._client()
        await audit.aclose()

        second = audit._client()
        assert second is not first
        assert not second.is_closed
        await audit.aclose()
