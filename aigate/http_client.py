from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
_CHAT_MARKERS = ("/messages", "/chat/completions", ":generateContent")
_MEDIA_MARKERS = ("/audio/", "/images/")


def should_retry(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRY_STATUSES
    return isinstance(exc, httpx.TransportError)


class RetryingClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        retries: int = 2,
        backoff_sec: float = 0.5,
        jitter_sec: float = 0.2,
        chat_timeout_sec: float = 90.0,
        media_timeout_sec: float = 60.0,
        default_timeout_sec: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._client = client
        self._retries = max(0, retries)
        self._backoff = backoff_sec
        self._jitter = jitter_sec
        self._chat_timeout = chat_timeout_sec
        self._media_timeout = media_timeout_sec
        self._default_timeout = default_timeout_sec
        self._sleep = sleep
        self._rng = rng
        self._logger = logging.getLogger("http_client")

    @property
    def retries(self) -> int:
        return self._retries

    def timeout_for(self, url: str) -> float:
        if any(marker in url for marker in _CHAT_MARKERS):
            return self._chat_timeout
        if any(marker in url for marker in _MEDIA_MARKERS):
            return self._media_timeout
        return self._default_timeout

    def delay_for(self, attempt: int) -> float:
        return self._backoff * (2**attempt) + self._rng() * self._jitter

    async def execute(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        effective_timeout = timeout if timeout is not None else self.timeout_for(url)
        attempt = 0
        while True:
            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers=headers or None,
                    params=params or None,
                    json=json,
                    timeout=effective_timeout,
                )
                resp.raise_for_status()
                return resp
            except httpx.HTTPError as exc:
                if attempt >= self._retries or not should_retry(exc):
                    raise
                delay = self.delay_for(attempt)
                self._logger.warning(
                    "HTTP %s %s failed attempt=%s error=%s, retrying in %.2fs",
                    method,
                    url,
                    attempt + 1,
                    _short_error(exc),
                    delay,
                )
                await self._sleep(delay)
                attempt += 1

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.execute("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.execute("POST", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()


def _short_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    return exc.__class__.__name__
