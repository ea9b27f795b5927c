"""
Token manager and credential exchange tests.
"""

import asyncio
import json

import httpx
import pytest
from tenacity import wait_none

from ordsync_auth import (
    TokenGrant,
    TokenManager,
    authorize_by_application,
    refresh_books_token,
)
from ordsync_db import TokenCache


def make_manager(tmp_path, fetch, **kw):
    cache = TokenCache(str(tmp_path / "tokens.sqlite3"))
    return TokenManager("test", fetch, cache, "t:token", "t:data", **kw)


class CountingFetch:
    def __init__(self, ttl=1800, fail_first=0, exc=RuntimeError):
        self.calls = 0
        self.ttl = ttl
        self.fail_first = fail_first
        self.exc = exc

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0.01)
        if self.calls <= self.fail_first:
            raise self.exc("auth endpoint down")
        return TokenGrant(token=f"token-{self.calls}", ttl=self.ttl, data={"Server": "eu"})


def test_concurrent_callers_share_one_refresh(tmp_path):
    fetch = CountingFetch()
    manager = make_manager(tmp_path, fetch)

    async def go():
        return await asyncio.gather(*(manager.get_valid_token() for _ in range(10)))

    tokens = asyncio.run(go())

    assert fetch.calls == 1
    assert tokens == ["token-1"] * 10


def test_cached_token_is_reused(tmp_path):
    fetch = CountingFetch()
    manager = make_manager(tmp_path, fetch)

    async def go():
        first = await manager.get_valid_token()
        second = await manager.get_valid_token()
        return first, second

    assert asyncio.run(go()) == ("token-1", "token-1")
    assert fetch.calls == 1


def test_cache_entry_expires_before_the_token(tmp_path):
    manager = make_manager(tmp_path, CountingFetch(ttl=1800), refresh_buffer=300, min_ttl=60)
    asyncio.run(manager.get_valid_token())

    remaining = manager.cache.ttl("t:token")
    assert 1490 <= remaining <= 1500
    assert manager.cache.ttl("t:data") == pytest.approx(remaining, abs=1)


def test_short_lived_token_uses_minimum_cache_ttl(tmp_path):
    manager = make_manager(tmp_path, CountingFetch(ttl=100), refresh_buffer=300, min_ttl=60)
    asyncio.run(manager.get_valid_token())

    assert 55 <= manager.cache.ttl("t:token") <= 60


def test_failed_refresh_is_not_cached(tmp_path):
    fetch = CountingFetch(fail_first=1)
    manager = make_manager(tmp_path, fetch)

    with pytest.raises(RuntimeError):
        asyncio.run(manager.get_valid_token())
    assert manager.cache.get("t:token") is None

    assert asyncio.run(manager.get_valid_token()) == "token-2"
    assert fetch.calls == 2


def test_unexpected_fetch_error_becomes_runtime_error(tmp_path):
    manager = make_manager(tmp_path, CountingFetch(fail_first=1, exc=ValueError))

    with pytest.raises(RuntimeError, match="token refresh failed"):
        asyncio.run(manager.get_valid_token())


def test_concurrent_callers_all_see_the_failure(tmp_path):
    fetch = CountingFetch(fail_first=1)
    manager = make_manager(tmp_path, fetch)

    async def go():
        return await asyncio.gather(*(manager.get_valid_token() for _ in range(3)), return_exceptions=True)

    results = asyncio.run(go())

    assert fetch.calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)


def test_clear_token_cache_forces_refresh(tmp_path):
    fetch = CountingFetch()
    manager = make_manager(tmp_path, fetch)

    async def go():
        await manager.get_valid_token()
        await manager.clear_token_cache()
        status = manager.get_token_status()
        token = await manager.get_valid_token()
        return status, token

    status, token = asyncio.run(go())

    assert status.has_token is False
    assert status.expires_in == 0
    assert status.auth_data is None
    assert token == "token-2"


def test_token_status_reports_auth_data(tmp_path):
    manager = make_manager(tmp_path, CountingFetch())
    asyncio.run(manager.get_valid_token())

    status = manager.get_token_status()
    assert status.has_token is True
    assert status.expires_in > 0
    assert status.auth_data == {"Server": "eu"}


def test_authorize_by_application_posts_credentials():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"Token": "abc", "TTL": 1800, "Server": "https://eu-ext"})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await authorize_by_application(http, "https://auth.test/api", "id", "secret", "install")

    grant = asyncio.run(go())

    assert grant.token == "abc"
    assert grant.ttl == 1800
    assert str(seen[0].url) == "https://auth.test/api/Auth/AuthorizeByApplication"
    assert json.loads(seen[0].content) == {
        "applicationId": "id",
        "applicationSecret": "secret",
        "token": "install",
    }


def test_authorize_by_application_requires_credentials():
    def handler(request):
        raise AssertionError("no request expected")

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await authorize_by_application(http, "https://auth.test/api", "id", None, "install")

    with pytest.raises(RuntimeError, match="Missing OMS authentication credentials"):
        asyncio.run(go())


def test_authorize_without_token_in_response():
    def handler(request):
        return httpx.Response(200, json={"TTL": 1800})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await authorize_by_application(http, "https://auth.test/api", "id", "s", "t")

    with pytest.raises(RuntimeError, match="No token"):
        asyncio.run(go())


def test_books_refresh_sends_form_and_strips_token_from_data():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"access_token": "zoho", "expires_in": 3600, "api_domain": "eu"})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await refresh_books_token(http, "https://auth.test/token", "cid", "csecret", "rt")

    grant = asyncio.run(go())

    body = seen[0].content.decode()
    assert "grant_type=refresh_token" in body
    assert "refresh_token=rt" in body
    assert grant.token == "zoho"
    assert grant.data == {"expires_in": 3600, "api_domain": "eu"}


def test_books_refresh_error_body_fails():
    def handler(request):
        return httpx.Response(200, json={"error": "invalid_code"})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await refresh_books_token(http, "https://auth.test/token", "cid", "cs", "rt")

    with pytest.raises(RuntimeError, match="authentication failed"):
        asyncio.run(go())


def test_books_refresh_retries_server_errors():
    responses = [httpx.Response(503), httpx.Response(200, json={"access_token": "ok", "expires_in": 3600})]

    def handler(request):
        return responses.pop(0)

    fast = refresh_books_token.retry_with(wait=wait_none())

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await fast(http, "https://auth.test/token", "cid", "cs", "rt")

    assert asyncio.run(go()).token == "ok"
