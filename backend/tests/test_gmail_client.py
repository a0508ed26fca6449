"""Tests for the Gmail REST client (httpx.MockTransport, no network)."""

import httpx
import pytest

from app.exceptions import GmailAPIError, GmailAuthError
from app.services.gmail import GmailClient

BASE_URL = "https://gmail.test/gmail/v1/users/me"
TOKEN_URL = "https://oauth.test/token"


def make_client(handler, client_id="cid", client_secret="secret") -> GmailClient:
    return GmailClient(
        base_url=BASE_URL,
        token_url=TOKEN_URL,
        client_id=client_id,
        client_secret=client_secret,
        transport=httpx.MockTransport(handler),
    )


async def test_list_message_ids_sends_query_and_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"messages": [{"id": "m2", "threadId": "t"}, {"id": "m1", "threadId": "t"}]})

    async with make_client(handler) as gmail:
        ids = await gmail.list_message_ids("tok", "after:100 in:inbox", 50)

    assert ids == ["m2", "m1"]
    assert seen["auth"] == "Bearer tok"
    assert seen["url"].path == "/gmail/v1/users/me/messages"
    assert seen["url"].params["q"] == "after:100 in:inbox"
    assert seen["url"].params["maxResults"] == "50"


async def test_list_message_ids_empty_mailbox():
    async with make_client(lambda request: httpx.Response(200, json={"resultSizeEstimate": 0})) as gmail:
        assert await gmail.list_message_ids("tok", "in:inbox", 50) == []


async def test_unauthorized_raises_auth_error():
    async with make_client(lambda request: httpx.Response(401)) as gmail:
        with pytest.raises(GmailAuthError):
            await gmail.list_message_ids("expired", "in:inbox", 50)


async def test_server_error_raises_api_error():
    async with make_client(lambda request: httpx.Response(503)) as gmail:
        with pytest.raises(GmailAPIError) as exc_info:
            await gmail.get_message("tok", "m1")

    assert not isinstance(exc_info.value, GmailAuthError)
    assert exc_info.value.status_code == 503


async def test_get_message():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/messages/m1")
        return httpx.Response(200, json={"id": "m1", "threadId": "t1"})

    async with make_client(handler) as gmail:
        assert await gmail.get_message("tok", "m1") == {"id": "m1", "threadId": "t1"}


async def test_refresh_access_token_posts_refresh_grant():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = dict(httpx.QueryParams(request.content.decode()))
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3599})

    async with make_client(handler) as gmail:
        token = await gmail.refresh_access_token("refresh-1")

    assert token == "fresh"
    assert seen["url"] == TOKEN_URL
    assert seen["body"] == {
        "client_id": "cid",
        "client_secret": "secret",
        "refresh_token": "refresh-1",
        "grant_type": "refresh_token",
    }


async def test_refresh_impossible_without_credentials():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("token endpoint must not be called")

    async with make_client(handler, client_id=None, client_secret=None) as gmail:
        assert await gmail.refresh_access_token("refresh-1") is None

    async with make_client(handler) as gmail:
        assert await gmail.refresh_access_token(None) is None


async def test_refresh_rejected_returns_none():
    async with make_client(lambda request: httpx.Response(400, json={"error": "invalid_grant"})) as gmail:
        assert await gmail.refresh_access_token("revoked") is None


async def test_refresh_network_error_returns_none():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    async with make_client(handler) as gmail:
        assert await gmail.refresh_access_token("refresh-1") is None
