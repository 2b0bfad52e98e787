"""Mailbox provider (Gmail REST API) client with status-aware error handling."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from subscan import metrics
from subscan.config import settings
from subscan.ingest.rate_limiter import SlidingWindowRateLimiter, mailbox_rate_limiter

logger = logging.getLogger(__name__)

# Transport errors that surface as MailboxError
TRANSPORT_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
)


class MailboxError(RuntimeError):
    """Raised when a mailbox call fails (non-2xx or transport error)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TokenInvalidError(MailboxError):
    """Raised when the provider rejects the access token (401/403)."""
    pass


class MailboxRateLimitedError(MailboxError):
    """Raised when the provider or the local limiter refuses the call."""

    def __init__(self, retry_after: Optional[float] = None):
        super().__init__("Mailbox rate limited", status_code=429)
        self.retry_after = retry_after


def _retry_after(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class MailboxClient:
    """
    Thin async client for the three mailbox calls the ingestion worker needs.

    Every call is metered by the mailbox rate limiter keyed on ``user_id``.
    Pass ``client`` to reuse an existing ``httpx.AsyncClient``; otherwise one
    is created and closed with the context manager.
    """

    def __init__(
        self,
        access_token: str,
        user_id: str,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self.access_token = access_token
        self.user_id = user_id
        self.base_url = (base_url or settings.mailbox_api_base_url).rstrip("/")
        self.limiter = limiter or mailbox_rate_limiter
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.mailbox_timeout_seconds)
        )

    async def __aenter__(self) -> "MailboxClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(
        self,
        operation: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        if not await self.limiter.wait_for_slot(self.user_id, settings.mailbox_max_wait_seconds):
            metrics.record_mailbox_request(operation, "throttled")
            raise MailboxRateLimitedError(retry_after=self.limiter.get_time_until_reset(self.user_id))

        try:
            resp = await self._client.get(
                f"{self.base_url}{path}",
                params=params,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Accept": "application/json",
                },
            )
        except TRANSPORT_EXC as e:
            metrics.record_mailbox_request(operation, "transport_error")
            raise MailboxError(f"{operation}: {type(e).__name__}: {e}") from e

        metrics.record_mailbox_request(operation, str(resp.status_code))
        return resp

    async def probe(self) -> dict[str, Any]:
        """
        Validate the access token with the cheap profile call.

        Raises:
            TokenInvalidError: If the provider answers 401 or 403
            MailboxError: On any other failure
        """
        resp = await self._get("profile", "/profile")
        if resp.status_code in (401, 403):
            raise TokenInvalidError(
                f"Mailbox token rejected ({resp.status_code})", status_code=resp.status_code
            )
        if resp.status_code == 429:
            raise MailboxRateLimitedError(retry_after=_retry_after(resp))
        if not resp.is_success:
            raise MailboxError(f"Profile check failed ({resp.status_code})", status_code=resp.status_code)
        return resp.json()

    async def search(self, query: str, max_results: int) -> list[str]:
        """
        List message ids matching ``query``.

        A non-2xx answer is logged and treated as an empty result.
        """
        resp = await self._get(
            "search",
            "/messages",
            params={"q": query, "maxResults": max_results},
        )
        if not resp.is_success:
            logger.warning(
                f"Mailbox search returned {resp.status_code} for user {self.user_id}; "
                f"treating as no messages"
            )
            return []

        messages = resp.json().get("messages") or []
        return [m["id"] for m in messages[:max_results] if m.get("id")]

    async def get_message(self, message_id: str) -> dict[str, Any]:
        """
        Fetch one message in full format.

        Raises:
            MailboxRateLimitedError: On 429
            MailboxError: On any other non-2xx answer
        """
        resp = await self._get("get_message", f"/messages/{message_id}", params={"format": "full"})
        if resp.status_code == 429:
            raise MailboxRateLimitedError(retry_after=_retry_after(resp))
        if not resp.is_success:
            raise MailboxError(
                f"Fetching message {message_id} failed ({resp.status_code})",
                status_code=resp.status_code,
            )
        return resp.json()
