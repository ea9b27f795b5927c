from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, cast

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ordsync_db import TokenCache

logger = structlog.get_logger()

OMS_TOKEN_KEY = "oms:auth:token"
OMS_AUTH_DATA_KEY = "oms:auth:data"
BOOKS_TOKEN_KEY = "books:auth:token"
BOOKS_AUTH_DATA_KEY = "books:auth:data"


class TokenGrant(BaseModel):
    token: str = Field(min_length=1)
    ttl: int
    data: dict[str, Any] = Field(default_factory=dict)


class TokenStatus(BaseModel):
    has_token: bool
    expires_in: int
    auth_data: dict[str, Any] | None = None


class _RetryableAuthError(Exception):
    """429/5xx from an auth endpoint; retried by tenacity."""


def _check_auth_response(r: httpx.Response, system: str) -> dict[str, Any]:
    if r.status_code == 429 or r.status_code >= 500:
        logger.warning(
            f"{system} auth endpoint unavailable, backing off", status_code=r.status_code
        )
        raise _RetryableAuthError(f"{system} auth -> {r.status_code}")
    try:
        body = r.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    if r.is_error or body.get("error"):
        logger.error(f"{system} auth failed", status_code=r.status_code, response=r.text[:500])
        error_msg = f"{system} authentication failed: {r.text[:500]}"
        if "invalid_client" in r.text:
            error_msg += "\nCheck the client id and client secret"
        raise RuntimeError(error_msg)
    return body


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential_jitter(1, 5),
    retry=retry_if_exception_type((_RetryableAuthError, httpx.TransportError)),
    reraise=True,
)
async def authorize_by_application(
    http: httpx.AsyncClient,
    auth_url: str,
    application_id: str | None,
    application_secret: str | None,
    installation_token: str | None,
    timeout: float = 30,
) -> TokenGrant:
    """Exchange the OMS application credentials for a session token."""
    if not application_id or not application_secret or not installation_token:
        raise RuntimeError("Missing OMS authentication credentials")

    logger.info("Fetching OMS session token", url=auth_url)
    r = await http.post(
        f"{auth_url.rstrip('/')}/Auth/AuthorizeByApplication",
        json={
            "applicationId": application_id,
            "applicationSecret": application_secret,
            "token": installation_token,
        },
        headers={"Accept": "application/json"},
        timeout=timeout,
    )
    body = _check_auth_response(r, "OMS")
    token_val = body.get("Token")
    if not isinstance(token_val, str) or not token_val:
        raise RuntimeError("No token received from OMS auth endpoint")
    data = {k: v for k, v in body.items() if k != "Token"}
    return TokenGrant(token=token_val, ttl=int(body.get("TTL") or 0), data=data)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential_jitter(1, 5),
    retry=retry_if_exception_type((_RetryableAuthError, httpx.TransportError)),
    reraise=True,
)
async def refresh_books_token(
    http: httpx.AsyncClient,
    auth_url: str,
    client_id: str | None,
    client_secret: str | None,
    refresh_token: str | None,
    grant_type: str = "refresh_token",
    timeout: float = 30,
) -> TokenGrant:
    """OAuth refresh-token grant for the Books API."""
    if not client_id or not client_secret or not refresh_token:
        raise RuntimeError("Missing Books OAuth credentials")

    logger.info("Refreshing Books access token", url=auth_url)
    r = await http.post(
        auth_url,
        data={
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": grant_type,
        },
        timeout=timeout,
    )
    body = _check_auth_response(r, "Books")
    token_val = body.get("access_token")
    if not isinstance(token_val, str) or not token_val:
        raise RuntimeError("Authentication succeeded but no access_token in response")
    # access_token is a credential; keep it out of the stored auth data
    data = {k: v for k, v in body.items() if k != "access_token"}
    return TokenGrant(token=token_val, ttl=int(body.get("expires_in") or 3600), data=data)


class TokenManager:
    """Keeps one valid token for a remote system.

    The cached entry expires `refresh_buffer` seconds before the real token
    (never sooner than `min_ttl`), so an entry that is present is usable.
    Concurrent callers that find no entry share a single refresh.
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[], Awaitable[TokenGrant]],
        cache: TokenCache,
        token_key: str,
        auth_data_key: str,
        refresh_buffer: int = 300,
        min_ttl: int = 60,
    ):
        self.name = name
        self._fetch = fetch
        self.cache = cache
        self.token_key = token_key
        self.auth_data_key = auth_data_key
        self.refresh_buffer = refresh_buffer
        self.min_ttl = min_ttl
        self._lock = asyncio.Lock()
        self._refresh_task: asyncio.Task[str] | None = None
        self.refresh_count = 0

    async def get_valid_token(self) -> str:
        cached = self.cache.get(self.token_key)
        if cached:
            logger.debug("Using cached token", system=self.name, expires_in=self.cache.ttl(self.token_key))
            return cached

        async with self._lock:
            # Another caller may have finished a refresh while we waited
            cached = self.cache.get(self.token_key)
            if cached:
                return cached
            if self._refresh_task is None:
                self._refresh_task = asyncio.ensure_future(self._refresh())
                self._refresh_task.add_done_callback(self._clear_task)
            else:
                logger.debug("Token refresh already in progress, waiting", system=self.name)
            task = self._refresh_task
        return await asyncio.shield(task)

    def _clear_task(self, task: asyncio.Task[str]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception as retrieved; awaiting callers still receive it
            task.exception()

    async def _refresh(self) -> str:
        self.refresh_count += 1
        logger.info("Refreshing token", system=self.name)
        try:
            grant = await self._fetch()
        except RuntimeError:
            logger.error("Token refresh failed", system=self.name, exc_info=True)
            raise
        except Exception as e:
            logger.error("Token refresh failed", system=self.name, error=str(e))
            raise RuntimeError(f"{self.name} token refresh failed: {e}") from e

        cache_ttl = max(grant.ttl - self.refresh_buffer, self.min_ttl)
        self.cache.setex(self.token_key, cache_ttl, grant.token)
        self.cache.setex(self.auth_data_key, cache_ttl, json.dumps(grant.data))
        logger.info("Token refreshed", system=self.name, expires_in=grant.ttl, cached_for=cache_ttl)
        return grant.token

    async def clear_token_cache(self) -> None:
        self.cache.delete(self.token_key, self.auth_data_key)
        logger.info("Token cache cleared", system=self.name)

    def get_auth_data(self) -> dict[str, Any] | None:
        raw = self.cache.get(self.auth_data_key)
        if not raw:
            return None
        try:
            return cast(dict[str, Any], json.loads(raw))
        except ValueError:
            logger.error("Stored auth data is not valid JSON", system=self.name)
            return None

    def get_token_status(self) -> TokenStatus:
        has_token = self.cache.exists(self.token_key)
        return TokenStatus(
            has_token=has_token,
            expires_in=self.cache.ttl(self.token_key) if has_token else 0,
            auth_data=self.get_auth_data(),
        )


def oms_token_manager(settings: Any, http: httpx.AsyncClient, cache: TokenCache) -> TokenManager:
    async def fetch() -> TokenGrant:
        return await authorize_by_application(
            http,
            settings.OMS_AUTH_URL,
            settings.OMS_APPLICATION_ID,
            settings.OMS_APPLICATION_SECRET,
            settings.OMS_INSTALLATION_TOKEN,
            timeout=settings.HTTP_TIMEOUT,
        )

    return TokenManager(
        "oms",
        fetch,
        cache,
        OMS_TOKEN_KEY,
        OMS_AUTH_DATA_KEY,
        refresh_buffer=settings.TOKEN_REFRESH_BUFFER,
        min_ttl=settings.TOKEN_MIN_TTL,
    )


def books_token_manager(settings: Any, http: httpx.AsyncClient, cache: TokenCache) -> TokenManager:
    async def fetch() -> TokenGrant:
        return await refresh_books_token(
            http,
            settings.BOOKS_AUTH_URL,
            settings.BOOKS_CLIENT_ID,
            settings.BOOKS_CLIENT_SECRET,
            settings.BOOKS_REFRESH_TOKEN,
            grant_type=settings.BOOKS_GRANT_TYPE,
            timeout=settings.HTTP_TIMEOUT,
        )

    return TokenManager(
        "books",
        fetch,
        cache,
        BOOKS_TOKEN_KEY,
        BOOKS_AUTH_DATA_KEY,
        refresh_buffer=settings.TOKEN_REFRESH_BUFFER,
        min_ttl=settings.TOKEN_MIN_TTL,
    )
