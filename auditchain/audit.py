"""Best-effort HTTP side-channel to the relay server."""

import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class VoteAuthorizeResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class AuditClient:
    """HTTP client for the relay's audit endpoints.

    Neither call is authoritative. When the server is unreachable or
    answers unexpectedly, votes are allowed and receipts are dropped so
    the chain keeps working offline.

    Usage:
        audit = AuditClient("http://localhost:8080")
        try:
            if await audit.authorize_vote(poll_id, device_id):
                ...
        finally:
            await audit.aclose()
    """

    def __init__(
        self,
        api_url: str,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ):
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._http: Optional[httpx.AsyncClient] = http
        self._owns_http = http is None
        self.last_reason: Optional[str] = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def aclose(self) -> None:
        """Close the HTTP client if owned. A later call opens a new one."""
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def authorize_vote(self, poll_id: str, device_id: str) -> bool:
        """Ask the relay whether this device may vote on a poll."""
        self.last_reason = None
        try:
            resp = await self._client().post(
                f"{self._api_url}/api/vote-authorize",
                json={"pollId": poll_id, "deviceId": device_id},
            )
        except httpx.HTTPError as e:
            logger.debug(f"Vote authorization unavailable, allowing: {e}")
            return True

        if not resp.is_success:
            logger.debug(f"Vote authorization returned {resp.status_code}, allowing")
            return True

        try:
            result = VoteAuthorizeResponse.model_validate(resp.json())
        except (ValueError, ValidationError):
            logger.debug("Malformed vote authorization response, allowing")
            return True

        self.last_reason = result.reason
        return result.allowed

    async def log_receipt(self, kind: str, payload: Any) -> bool:
        """Mirror a receipt to the server-side log. Never raises."""
        try:
            resp = await self._client().post(
                f"{self._api_url}/api/receipts",
                json={"type": kind, "payload": payload},
            )
        except httpx.HTTPError as e:
            logger.debug(f"Receipt log unavailable: {e}")
            return False

        if not resp.is_success:
            logger.debug(f"Receipt log returned {resp.status_code}")
            return False
        return True
