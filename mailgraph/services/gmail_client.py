"""Gmail REST client for mailbox sync.

Wraps the list/get/history/watch calls used by the sync pipeline. Every call
passes through a per-account token bucket, carries its own HTTP timeout, and
maps provider failures onto the error taxonomy in ``mailgraph.core.errors``:

- 429, 403 rateLimitExceeded -> RateLimitedError(retry_after)
- 5xx, timeouts, network errors -> TransientError
- 401 (after one token refresh) -> AuthExpiredError
- 404 on history.list -> CursorExpiredError
- other 4xx -> PermanentError
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import httpx

from mailgraph.core.config import settings
from mailgraph.core.errors import (
    AuthExpiredError,
    CursorExpiredError,
    PermanentError,
    RateLimitedError,
    SyncError,
    TransientError,
)
from mailgraph.core.rate_limit import TokenBucketRegistry
from mailgraph.db.models import Account
from mailgraph.jobs.payloads import MailboxQuery
from mailgraph.services.token_provider import GoogleOAuthTokenProvider, TokenProvider
from mailgraph.utils.time import from_epoch_ms, parse_retry_after

logger = logging.getLogger(__name__)

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


@dataclass
class MessagePage:
    ids: list[str]
    next_page_token: str | None = None
    # history.list only: mailbox's current history id, and the newest record on this page.
    history_id: int | None = None
    max_record_history_id: int | None = None


@dataclass
class FetchResult:
    messages: list[dict] = field(default_factory=list)
    failures: dict[str, SyncError] = field(default_factory=dict)

    @property
    def retry_after(self) -> float | None:
        """Longest provider delay among throttled ids, or None if none were throttled."""
        delays = [e.retry_after for e in self.failures.values() if isinstance(e, RateLimitedError)]
        return max(delays) if delays else None


@dataclass
class WatchResult:
    history_id: int | None
    expires_at: datetime | None


@dataclass
class MailboxProfile:
    email_address: str | None
    history_id: int | None


class MailboxClient(Protocol):
    async def list_message_ids(
        self, account: Account, query: MailboxQuery, page_token: str | None = None
    ) -> MessagePage: ...

    async def get_messages(self, account: Account, ids: list[str]) -> FetchResult: ...

    async def get_message(self, account: Account, message_id: str) -> dict: ...

    async def get_profile(self, account: Account) -> MailboxProfile: ...

    async def watch(self, account: Account) -> WatchResult: ...

    async def stop_watch(self, account: Account) -> None: ...


def _to_int(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _error_detail(response: httpx.Response) -> tuple[str | None, set[str]]:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or None, set()
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None, set()
    reasons = {
        str(item.get("reason"))
        for item in error.get("errors") or []
        if isinstance(item, dict) and item.get("reason")
    }
    return error.get("message"), reasons


def map_error_response(response: httpx.Response, *, is_history: bool = False) -> SyncError:
    """Classify a Gmail error response."""
    status = response.status_code
    detail, reasons = _error_detail(response)
    message = f"Gmail API error {status}: {detail or 'unknown error'}"

    if status == 429 or (status == 403 and reasons & _RATE_LIMIT_REASONS):
        return RateLimitedError(parse_retry_after(response.headers.get("Retry-After")), message)
    if status >= 500:
        return TransientError(message)
    if status == 401:
        return AuthExpiredError(message)
    if status == 404 and is_history:
        return CursorExpiredError(message)
    return PermanentError(message)


class GmailClient:
    """Async Gmail API client (one per worker process)."""

    def __init__(
        self,
        *,
        token_provider: TokenProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        buckets: TokenBucketRegistry | None = None,
        base_url: str | None = None,
    ):
        self.token_provider = token_provider or GoogleOAuthTokenProvider()
        self.base_url = (base_url or settings.GMAIL_API_BASE_URL).rstrip("/")
        self.buckets = buckets or TokenBucketRegistry()
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.GMAIL_HTTP_TIMEOUT_SECONDS)
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        account: Account,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        is_history: bool = False,
    ) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        for attempt in (1, 2):
            await self.buckets.acquire(str(account.id))
            access_token = await self.token_provider.get_valid_token(account)
            try:
                response = await self.client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except httpx.TimeoutException as exc:
                raise TransientError(f"Gmail request timed out: {path}") from exc
            except httpx.TransportError as exc:
                raise TransientError(f"Gmail transport error: {type(exc).__name__}") from exc

            if response.status_code == 401 and attempt == 1:
                invalidate = getattr(self.token_provider, "invalidate", None)
                if invalidate is not None:
                    invalidate(account)
                    continue
            if response.status_code >= 400:
                raise map_error_response(response, is_history=is_history)
            if not response.content:
                return {}
            result = response.json()
            if not isinstance(result, dict):
                raise PermanentError("Gmail response was not an object")
            return result
        raise AuthExpiredError("Gmail rejected a freshly refreshed token")

    async def list_message_ids(
        self, account: Account, query: MailboxQuery, page_token: str | None = None
    ) -> MessagePage:
        if query.start_history_id is not None:
            payload = await self._request(
                account,
                "GET",
                "history",
                params={
                    "startHistoryId": str(query.start_history_id),
                    "historyTypes": "messageAdded",
                    "maxResults": settings.SYNC_PAGE_SIZE,
                    **({"pageToken": page_token} if page_token else {}),
                },
                is_history=True,
            )
            ids: list[str] = []
            max_record = None
            for record in payload.get("history") or []:
                record_id = _to_int(record.get("id"))
                if record_id is not None and (max_record is None or record_id > max_record):
                    max_record = record_id
                for added in record.get("messagesAdded") or []:
                    message_id = (added.get("message") or {}).get("id")
                    if message_id and message_id not in ids:
                        ids.append(str(message_id))
            return MessagePage(
                ids=ids,
                next_page_token=payload.get("nextPageToken") or None,
                history_id=_to_int(payload.get("historyId")),
                max_record_history_id=max_record,
            )

        terms = []
        if query.after is not None:
            terms.append(f"after:{int(query.after.timestamp())}")
        if query.before is not None:
            terms.append(f"before:{int(query.before.timestamp())}")
        payload = await self._request(
            account,
            "GET",
            "messages",
            params={
                "q": " ".join(terms),
                "maxResults": settings.SYNC_PAGE_SIZE,
                **({"pageToken": page_token} if page_token else {}),
            },
        )
        messages = payload.get("messages") or []
        return MessagePage(
            ids=[str(item["id"]) for item in messages if item.get("id")],
            next_page_token=payload.get("nextPageToken") or None,
        )

    async def get_message(self, account: Account, message_id: str) -> dict:
        return await self._request(
            account, "GET", f"messages/{message_id}", params={"format": "raw"}
        )

    async def get_messages(self, account: Account, ids: list[str]) -> FetchResult:
        """
        Fetch full messages concurrently.

        Per-message failures, throttling included, are collected so the caller
        can keep the successes; an auth failure aborts the batch.
        """
        semaphore = asyncio.Semaphore(max(1, settings.GMAIL_FETCH_CONCURRENCY))

        async def _one(message_id: str):
            async with semaphore:
                return await self.get_message(account, message_id)

        results = await asyncio.gather(*(_one(mid) for mid in ids), return_exceptions=True)

        fetched = FetchResult()
        for message_id, result in zip(ids, results):
            if isinstance(result, AuthExpiredError):
                raise result
            if isinstance(result, SyncError):
                fetched.failures[message_id] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                fetched.messages.append(result)
        return fetched

    async def get_profile(self, account: Account) -> MailboxProfile:
        payload = await self._request(account, "GET", "profile")
        return MailboxProfile(
            email_address=payload.get("emailAddress"),
            history_id=_to_int(payload.get("historyId")),
        )

    async def watch(self, account: Account) -> WatchResult:
        if not settings.GMAIL_PUSH_TOPIC:
            raise PermanentError("GMAIL_PUSH_TOPIC not configured")
        body: dict[str, object] = {"topicName": settings.GMAIL_PUSH_TOPIC}
        label_ids = settings.gmail_push_label_ids
        if label_ids:
            body["labelIds"] = label_ids
            body["labelFilterBehavior"] = "INCLUDE"
        payload = await self._request(account, "POST", "watch", json=body)
        return WatchResult(
            history_id=_to_int(payload.get("historyId")),
            expires_at=from_epoch_ms(payload.get("expiration")),
        )

    async def stop_watch(self, account: Account) -> None:
        await self._request(account, "POST", "stop")


_mailbox_client: MailboxClient | None = None


def get_mailbox_client() -> MailboxClient:
    """Process-wide client shared by job handlers."""
    global _mailbox_client
    if _mailbox_client is None:
        _mailbox_client = GmailClient()
    return _mailbox_client


def set_mailbox_client(client: MailboxClient | None) -> None:
    global _mailbox_client
    _mailbox_client = client
