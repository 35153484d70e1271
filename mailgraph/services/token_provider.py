"""Access-token supply for linked mailboxes.

Credential issuance lives outside this service; we only hold the refresh
token stored at link time and trade it for short-lived access tokens.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import httpx

from mailgraph.core.config import settings
from mailgraph.core.errors import AuthExpiredError, RateLimitedError, TransientError
from mailgraph.db.models import Account
from mailgraph.utils.time import parse_retry_after, utcnow

logger = logging.getLogger(__name__)

# Refresh a little before Google's stated expiry.
EXPIRY_SKEW = timedelta(minutes=1)


class TokenProvider(Protocol):
    async def get_valid_token(self, account: Account) -> str:
        """Return a usable access token or raise AuthExpiredError."""


@dataclass
class _CachedToken:
    access_token: str
    expires_at: datetime


class GoogleOAuthTokenProvider:
    """Refreshes Gmail access tokens against Google's OAuth token endpoint."""

    def __init__(self, *, http_client: httpx.AsyncClient | None = None):
        self._client = http_client
        self._cache: dict[str, _CachedToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get_valid_token(self, account: Account) -> str:
        key = str(account.id)
        cached = self._cache.get(key)
        if cached and cached.expires_at - EXPIRY_SKEW > utcnow():
            return cached.access_token

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._cache.get(key)
            if cached and cached.expires_at - EXPIRY_SKEW > utcnow():
                return cached.access_token
            token = await self._refresh(account)
            self._cache[key] = token
            return token.access_token

    def invalidate(self, account: Account) -> None:
        """Drop the cached token (e.g. after a 401)."""
        self._cache.pop(str(account.id), None)

    async def _refresh(self, account: Account) -> _CachedToken:
        if not account.refresh_token:
            raise AuthExpiredError("Account has no refresh token; reconnect required")

        data = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "refresh_token": account.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            if self._client is not None:
                response = await self._client.post(settings.GOOGLE_TOKEN_URL, data=data)
            else:
                async with httpx.AsyncClient(timeout=settings.GMAIL_HTTP_TIMEOUT_SECONDS) as client:
                    response = await client.post(settings.GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise TransientError(f"Gmail token refresh failed: {type(exc).__name__}") from exc

        if response.status_code == 429:
            raise RateLimitedError(
                parse_retry_after(response.headers.get("Retry-After")),
                "Gmail token refresh throttled",
            )
        if response.status_code >= 500 or response.status_code == 408:
            raise TransientError(f"Gmail token refresh failed: HTTP {response.status_code}")
        if response.status_code >= 400:
            error = _error_code(response)
            logger.warning(
                "Gmail token refresh rejected for account %s: %s", account.id, error
            )
            raise AuthExpiredError(f"Gmail token refresh rejected: {error}")

        payload = response.json()
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthExpiredError("Gmail refresh did not return access_token")
        expires_in = int(payload.get("expires_in") or 3600)
        return _CachedToken(
            access_token=access_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )


def _error_code(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        return str(payload.get("error") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"
