"""Tests for the Gmail REST client, error mapping and token refresh."""
import json
import uuid
from datetime import timedelta
from email.utils import format_datetime
from types import SimpleNamespace

import httpx
import pytest

from mailgraph.core.errors import (
    AuthExpiredError,
    CursorExpiredError,
    PermanentError,
    RateLimitedError,
    TransientError,
)
from mailgraph.jobs.payloads import MailboxQuery
from mailgraph.services.gmail_client import GmailClient, map_error_response
from mailgraph.services.token_provider import GoogleOAuthTokenProvider
from mailgraph.utils.time import parse_retry_after, utcnow

BASE = "https://gmail.test/gmail/v1/users/me"


def _account(refresh_token="refresh-token"):
    return SimpleNamespace(id=uuid.uuid4(), refresh_token=refresh_token)


def _error(status, message="nope", reason=None, headers=None):
    body = {"error": {"code": status, "message": message}}
    if reason:
        body["error"]["errors"] = [{"reason": reason}]
    return httpx.Response(status, json=body, headers=headers)


class StaticTokens:
    def __init__(self):
        self.issued = 0
        self.invalidated = 0

    async def get_valid_token(self, account):
        self.issued += 1
        return f"token-{self.issued}"

    def invalidate(self, account):
        self.invalidated += 1


def _client(handler, tokens=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GmailClient(token_provider=tokens or StaticTokens(), http_client=http, base_url=BASE)


# =============================================================================
# Error mapping
# =============================================================================


@pytest.mark.parametrize(
    "response,is_history,expected",
    [
        (_error(429, headers={"Retry-After": "12"}), False, RateLimitedError),
        (_error(403, reason="userRateLimitExceeded"), False, RateLimitedError),
        (_error(403, reason="forbidden"), False, PermanentError),
        (_error(500), False, TransientError),
        (_error(503), True, TransientError),
        (_error(401), False, AuthExpiredError),
        (_error(404), True, CursorExpiredError),
        (_error(404), False, PermanentError),
        (_error(400), False, PermanentError),
        (httpx.Response(502, text="<html>bad gateway</html>"), False, TransientError),
    ],
)
def test_map_error_response(response, is_history, expected):
    error = map_error_response(response, is_history=is_history)
    assert type(error) is expected


def test_rate_limit_carries_retry_after():
    error = map_error_response(_error(429, headers={"Retry-After": "12"}))
    assert error.retry_after == 12.0


def test_parse_retry_after():
    assert parse_retry_after("30") == 30.0
    assert parse_retry_after("-5") == 0.0
    assert parse_retry_after(None, default=7) == 7.0
    assert parse_retry_after("whenever", default=7) == 7.0

    in_a_minute = format_datetime(utcnow() + timedelta(seconds=60), usegmt=True)
    assert 55 <= parse_retry_after(in_a_minute) <= 61


# =============================================================================
# Client
# =============================================================================


@pytest.mark.asyncio
async def test_history_listing():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(
            200,
            json={
                "historyId": "120",
                "nextPageToken": "p2",
                "history": [
                    {"id": "103", "messagesAdded": [{"message": {"id": "m1"}}]},
                    {"id": "101", "messagesAdded": [{"message": {"id": "m0"}}, {"message": {"id": "m1"}}]},
                    {"id": "105", "labelsAdded": [{"message": {"id": "m9"}}]},
                ],
            },
        )

    client = _client(handler)
    page = await client.list_message_ids(_account(), MailboxQuery(start_history_id=100))

    assert page.ids == ["m1", "m0"]
    assert page.history_id == 120
    assert page.max_record_history_id == 105
    assert page.next_page_token == "p2"
    assert seen["path"].endswith("/history")
    assert seen["params"]["startHistoryId"] == "100"
    assert seen["params"]["historyTypes"] == "messageAdded"
    assert seen["auth"] == "Bearer token-1"


@pytest.mark.asyncio
async def test_window_listing_builds_search_query():
    seen = {}

    def handler(request):
        seen["q"] = request.url.params["q"]
        seen["pageToken"] = request.url.params.get("pageToken")
        return httpx.Response(200, json={"messages": [{"id": "a", "threadId": "t"}, {"id": "b"}]})

    after = utcnow() - timedelta(days=30)
    before = utcnow()
    page = await _client(handler).list_message_ids(
        _account(), MailboxQuery(after=after, before=before), page_token="tok"
    )

    assert page.ids == ["a", "b"]
    assert page.next_page_token is None
    assert page.history_id is None
    assert seen["q"] == f"after:{int(after.timestamp())} before:{int(before.timestamp())}"
    assert seen["pageToken"] == "tok"


@pytest.mark.asyncio
async def test_expired_history_cursor():
    client = _client(lambda request: _error(404, "Requested entity was not found."))

    with pytest.raises(CursorExpiredError):
        await client.list_message_ids(_account(), MailboxQuery(start_history_id=1))


@pytest.mark.asyncio
async def test_unauthorized_refreshes_token_once():
    tokens = StaticTokens()
    auth_headers = []

    def handler(request):
        auth_headers.append(request.headers["Authorization"])
        if len(auth_headers) == 1:
            return _error(401, "Invalid Credentials")
        return httpx.Response(200, json={"emailAddress": "owner@mycompany.com", "historyId": "42"})

    profile = await _client(handler, tokens).get_profile(_account())

    assert profile.history_id == 42
    assert auth_headers == ["Bearer token-1", "Bearer token-2"]
    assert tokens.invalidated == 1


@pytest.mark.asyncio
async def test_repeated_unauthorized_is_auth_expired():
    tokens = StaticTokens()
    client = _client(lambda request: _error(401, "Invalid Credentials"), tokens)

    with pytest.raises(AuthExpiredError):
        await client.get_profile(_account())
    assert tokens.issued == 2


@pytest.mark.asyncio
async def test_network_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientError):
        await _client(handler).get_message(_account(), "m1")


@pytest.mark.asyncio
async def test_get_messages_collects_per_message_failures():
    def handler(request):
        message_id = request.url.path.rsplit("/", 1)[-1]
        if message_id == "gone":
            return _error(404)
        if message_id == "flaky":
            return _error(500)
        return httpx.Response(200, json={"id": message_id, "raw": ""})

    result = await _client(handler).get_messages(_account(), ["ok", "gone", "flaky"])

    assert [message["id"] for message in result.messages] == ["ok"]
    assert isinstance(result.failures["gone"], PermanentError)
    assert isinstance(result.failures["flaky"], TransientError)


@pytest.mark.asyncio
async def test_get_messages_keeps_successes_when_a_sibling_is_throttled():
    def handler(request):
        if request.url.path.endswith("/slow"):
            return _error(429, headers={"Retry-After": "5"})
        if request.url.path.endswith("/slower"):
            return _error(429, headers={"Retry-After": "40"})
        return httpx.Response(200, json={"id": "ok"})

    result = await _client(handler).get_messages(_account(), ["ok", "slow", "slower"])

    assert [message["id"] for message in result.messages] == ["ok"]
    assert isinstance(result.failures["slow"], RateLimitedError)
    assert result.retry_after == 40.0


@pytest.mark.asyncio
async def test_get_messages_aborts_on_auth_failure():
    def handler(request):
        if request.url.path.endswith("/locked"):
            return _error(401)
        return httpx.Response(200, json={"id": "ok"})

    with pytest.raises(AuthExpiredError):
        await _client(handler).get_messages(_account(), ["ok", "locked"])


@pytest.mark.asyncio
async def test_watch(monkeypatch):
    from mailgraph.core.config import settings

    monkeypatch.setattr(settings, "GMAIL_PUSH_TOPIC", "projects/p/topics/gmail")
    bodies = []
    expires = utcnow() + timedelta(days=7)

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200, json={"historyId": "900", "expiration": str(int(expires.timestamp() * 1000))}
        )

    result = await _client(handler).watch(_account())

    assert bodies[0]["topicName"] == "projects/p/topics/gmail"
    assert result.history_id == 900
    assert abs((result.expires_at - expires).total_seconds()) < 1


@pytest.mark.asyncio
async def test_watch_requires_topic():
    with pytest.raises(PermanentError):
        await _client(lambda request: httpx.Response(200, json={})).watch(_account())


# =============================================================================
# Token refresh
# =============================================================================


@pytest.mark.asyncio
async def test_token_provider_caches_until_invalidated():
    calls = []

    def handler(request):
        calls.append(request.content.decode())
        return httpx.Response(200, json={"access_token": f"at-{len(calls)}", "expires_in": 3600})

    provider = GoogleOAuthTokenProvider(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    account = _account()

    assert await provider.get_valid_token(account) == "at-1"
    assert await provider.get_valid_token(account) == "at-1"
    provider.invalidate(account)
    assert await provider.get_valid_token(account) == "at-2"
    assert "grant_type=refresh_token" in calls[0]


@pytest.mark.asyncio
async def test_token_provider_rejected_grant():
    provider = GoogleOAuthTokenProvider(
        http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(400, json={"error": "invalid_grant"})
            )
        )
    )

    with pytest.raises(AuthExpiredError, match="invalid_grant"):
        await provider.get_valid_token(_account())


@pytest.mark.asyncio
async def test_token_provider_without_refresh_token():
    provider = GoogleOAuthTokenProvider()
    with pytest.raises(AuthExpiredError):
        await provider.get_valid_token(_account(refresh_token=None))


@pytest.mark.asyncio
async def test_token_provider_server_error_is_transient():
    provider = GoogleOAuthTokenProvider(
        http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
    )
    with pytest.raises(TransientError):
        await provider.get_valid_token(_account())


@pytest.mark.asyncio
async def test_token_provider_request_timeout_is_transient():
    provider = GoogleOAuthTokenProvider(
        http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(408))
        )
    )
    with pytest.raises(TransientError):
        await provider.get_valid_token(_account())


@pytest.mark.asyncio
async def test_token_provider_throttling_is_not_an_auth_failure():
    provider = GoogleOAuthTokenProvider(
        http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(
                    429, json={"error": "rate_limit_exceeded"}, headers={"Retry-After": "12"}
                )
            )
        )
    )

    with pytest.raises(RateLimitedError) as excinfo:
        await provider.get_valid_token(_account())
    assert excinfo.value.retry_after == 12.0
