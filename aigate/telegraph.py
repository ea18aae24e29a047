from __future__ import annotations

import json
import logging
from typing import Any, Callable

import httpx

from aigate.http_client import RetryingClient
from aigate.models import TelegraphState

TELEGRAPH_API = "https://api.telegra.ph"


def to_nodes(text: str) -> str:
    return json.dumps([{"tag": "p", "children": [part]} for part in text.split("\n\n")], ensure_ascii=False)


class TelegraphClient:
    def __init__(
        self,
        http: RetryingClient,
        state: Callable[[], TelegraphState],
        on_change: Callable[[], None] | None = None,
        *,
        short_name: str = "aigate",
        author_name: str = "aigate",
        api_url: str = TELEGRAPH_API,
    ) -> None:
        self._http = http
        self._state = state
        self._on_change = on_change
        self._short_name = short_name
        self._author_name = author_name
        self._api_url = api_url.rstrip("/")
        self._logger = logging.getLogger("telegraph")

    async def ensure_token(self) -> str:
        state = self._state()
        if state.token:
            return state.token
        resp = await self._http.post(
            f"{self._api_url}/createAccount",
            params={"short_name": self._short_name, "author_name": self._author_name},
        )
        token = str((_result(resp) or {}).get("access_token") or "")
        if token:
            state.token = token
            if self._on_change:
                self._on_change()
        return token

    async def create_page(self, title: str, text: str) -> str | None:
        """Publishes ``text`` and returns the page URL, or ``None`` on any failure."""
        try:
            token = await self.ensure_token()
            if not token:
                return None
            resp = await self._http.post(
                f"{self._api_url}/createPage",
                params={
                    "access_token": token,
                    "title": title,
                    "content": to_nodes(text),
                    "return_content": "false",
                },
            )
        except (httpx.HTTPError, ValueError):
            self._logger.exception("Telegraph publish failed title=%s", title)
            return None
        url = (_result(resp) or {}).get("url")
        return str(url) if url else None


def _result(resp: httpx.Response) -> dict[str, Any] | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    result = body.get("result") if isinstance(body, dict) else None
    return result if isinstance(result, dict) else None
