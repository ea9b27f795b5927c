from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, Protocol

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

logger = structlog.get_logger()

INVALID_TOKEN_MARKERS = ("invalid token", "invalid oauthtoken", "token expired")


class ApiError(RuntimeError):
    """A remote call failed; carries the operation, url, status and response detail."""

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        url: str = "",
        status_code: int | None = None,
        detail: str = "",
    ):
        super().__init__(message)
        self.operation = operation
        self.url = url
        self.status_code = status_code
        self.detail = detail


class AuthenticationError(ApiError):
    pass


class RateLimitError(ApiError):
    pass


class TransientError(ApiError):
    pass


class NotFoundError(ApiError):
    pass


class ClientError(ApiError):
    pass


class TokenProvider(Protocol):
    async def get_valid_token(self) -> str: ...

    async def clear_token_cache(self) -> None: ...


def build_url(base: str, path: str) -> str:
    """Join the base and path with a single slash."""
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def _response_detail(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return (r.text or "")[:500]
    if isinstance(body, dict):
        for key in ("message", "Message", "error", "error_description", "Code"):
            if body.get(key):
                return str(body[key])[:500]
    return (r.text or "")[:500]


def raise_for_response(r: httpx.Response, operation: str, url: str) -> None:
    """Map a non-2xx response onto the ApiError hierarchy."""
    if r.is_success:
        return
    status = r.status_code
    detail = _response_detail(r)
    lowered = (r.text or "").lower()
    kw = dict(operation=operation, url=url, status_code=status, detail=detail)
    msg = f"{operation} -> {status}: {detail}"

    if status == 401 or (
        status in (400, 403) and any(m in lowered for m in INVALID_TOKEN_MARKERS)
    ):
        raise AuthenticationError(msg, **kw)
    if status == 429:
        raise RateLimitError(msg, **kw)
    if status >= 500:
        raise TransientError(msg, **kw)
    if status == 404:
        raise NotFoundError(msg, **kw)
    raise ClientError(msg, **kw)


class RateLimiter:
    """Requests-per-minute ceiling plus a cap on concurrent requests.

    Callers over either limit wait; nothing is rejected.
    """

    def __init__(
        self,
        requests_per_minute: int,
        max_concurrent: int,
        period: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_minute < 1 or max_concurrent < 1:
            raise ValueError("rate limits must be positive")
        self.requests_per_minute = requests_per_minute
        self.max_concurrent = max_concurrent
        self.period = period
        self._clock = clock
        self._sem = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self._stamps: deque[float] = deque()
        self.in_flight = 0

    async def _acquire_window(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                while self._stamps and now - self._stamps[0] >= self.period:
                    self._stamps.popleft()
                if len(self._stamps) < self.requests_per_minute:
                    self._stamps.append(now)
                    return
                delay = self.period - (now - self._stamps[0])
                logger.debug("Rate limit window full, waiting", delay=round(delay, 2))
                await asyncio.sleep(max(delay, 0.01))

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._sem:
            await self._acquire_window()
            self.in_flight += 1
            try:
                yield
            finally:
                self.in_flight -= 1


class ApiClient:
    """Base for the OMS and Books clients.

    Every call: fetch a token, go through the shared limiter, map the response,
    retry rate-limit/transient failures with tenacity, and on an authentication
    failure clear the token cache and try exactly once more.
    """

    name = "api"

    def __init__(
        self,
        base_url: str,
        tokens: TokenProvider,
        http: httpx.AsyncClient,
        limiter: RateLimiter,
        max_retries: int = 3,
        timeout: float = 30,
        wait: Any = None,
    ):
        self.base_url = base_url
        self.tokens = tokens
        self.http = http
        self.limiter = limiter
        self.max_retries = max_retries
        self.timeout = timeout
        self.wait = wait if wait is not None else wait_exponential_jitter(1, 5)

    def auth_headers(self, token: str) -> dict[str, str]:
        raise NotImplementedError

    def default_params(self) -> dict[str, Any]:
        return {}

    async def request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        try:
            return await self._send_with_retry(method, path, operation, params, json)
        except AuthenticationError as e:
            logger.warning(
                "Authentication failed, clearing token and retrying once",
                client=self.name,
                operation=operation,
                status_code=e.status_code,
            )
            await self.tokens.clear_token_cache()
            return await self._send_with_retry(method, path, operation, params, json)

    async def _send_with_retry(
        self,
        method: str,
        path: str,
        operation: str,
        params: dict[str, Any] | None,
        json: Any,
    ) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self.wait,
            retry=retry_if_exception_type((RateLimitError, TransientError)),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying request",
                        client=self.name,
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._send_once(method, path, operation, params, json)

    async def _send_once(
        self,
        method: str,
        path: str,
        operation: str,
        params: dict[str, Any] | None,
        json: Any,
    ) -> Any:
        token = await self.tokens.get_valid_token()
        url = build_url(self.base_url, path)
        query = {**self.default_params(), **(params or {})}
        logger.debug("Making request", client=self.name, method=method, url=url)

        async with self.limiter.slot():
            try:
                r = await self.http.request(
                    method,
                    url,
                    headers=self.auth_headers(token),
                    params=query or None,
                    json=json,
                    timeout=self.timeout,
                )
            except httpx.TimeoutException as e:
                logger.warning("Request timed out", client=self.name, url=url)
                raise TransientError(
                    f"{operation} timed out", operation=operation, url=url, detail=str(e)
                ) from e
            except httpx.TransportError as e:
                logger.warning("Transport error", client=self.name, url=url, error=str(e))
                raise TransientError(
                    f"{operation} transport error: {e}", operation=operation, url=url, detail=str(e)
                ) from e

        if r.status_code == 429:
            logger.warning("Rate limited, backing off", url=url, status_code=r.status_code)
        elif r.status_code >= 500:
            logger.error(
                "Server error", client=self.name, url=url, status_code=r.status_code, response=r.text[:500]
            )
        raise_for_response(r, operation, url)

        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError:
            logger.warning("No JSON in response", client=self.name, url=url, status_code=r.status_code)
            return {}
