from __future__ import annotations

import asyncio
import base64
import logging
import re
from typing import Any

import httpx

from aigate.adapters.base import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_VISION_PROMPT,
    guess_image_mime,
    post_with_attempts,
    trim_base,
)
from aigate.auth import auth_attempts
from aigate.errors import ConfigurationError, error_from_http
from aigate.http_client import RetryingClient
from aigate.models import AudioResult, Compat, ImageResult, Provider, Turn

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"
_VERSION_PATTERN = re.compile(r"\b20\d{2}-\d{2}-\d{2}\b")
WEB_SEARCH_TOOL = {"type": "web_search_20250305", "name": "web_search", "max_uses": 3}


class AnthropicVersionCache:
    """Discovers the ``anthropic-version`` a backend accepts, once per base URL."""

    def __init__(self, http: RetryingClient) -> None:
        self._http = http
        self._versions: dict[str, str] = {}
        self._pending: dict[str, asyncio.Task[str]] = {}
        self._logger = logging.getLogger("adapter.claude")

    def cached(self, provider: Provider) -> str | None:
        return self._versions.get(self._key(provider))

    def forget(self, base_url: str) -> None:
        self._versions.pop(trim_base(base_url) or "anthropic", None)

    @staticmethod
    def _key(provider: Provider) -> str:
        return trim_base(provider.base_url) or "anthropic"

    async def get(self, provider: Provider) -> str:
        key = self._key(provider)
        cached = self._versions.get(key)
        if cached:
            return cached
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._discover(key, provider))
            self._pending[key] = task
        return await asyncio.shield(task)

    async def aclose(self) -> None:
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _discover(self, key: str, provider: Provider) -> str:
        version = DEFAULT_ANTHROPIC_VERSION
        try:
            await self._http.get(key + "/v1/models", headers={"x-api-key": provider.api_key})
        except httpx.HTTPStatusError as exc:
            matches = _VERSION_PATTERN.findall(exc.response.text)
            if matches:
                version = max(matches)
        except httpx.HTTPError as exc:
            self._logger.warning("anthropic-version probe failed base=%s error=%s", key, exc.__class__.__name__)
        finally:
            self._pending.pop(key, None)
        self._versions[key] = version
        self._logger.info("anthropic-version base=%s version=%s", key, version)
        return version


def _message_text(data: Any) -> str:
    if isinstance(data, dict) and isinstance(data.get("content"), list):
        texts = [
            str(block.get("text"))
            for block in data["content"]
            if isinstance(block, dict) and block.get("type") == "text" and str(block.get("text") or "").strip()
        ]
        if texts:
            return "\n\n".join(texts)
    if not isinstance(data, dict):
        return ""
    message = data.get("message") if isinstance(data.get("message"), dict) else {}
    choices = data.get("choices") or [{}]
    candidates = [
        _first_text(data.get("content")),
        _first_text(message.get("content")),
        (choices[0].get("message") or {}).get("content") if isinstance(choices[0], dict) else None,
        data.get("response"),
        data.get("text"),
        data.get("content"),
        message.get("content"),
        data.get("output"),
    ]
    for text in candidates:
        if isinstance(text, str) and text.strip():
            return text.strip()
    return ""


def _first_text(blocks: Any) -> str | None:
    if isinstance(blocks, list) and blocks and isinstance(blocks[0], dict):
        value = blocks[0].get("text")
        return value if isinstance(value, str) else None
    return None


class ClaudeAdapter:
    name = "claude"

    def __init__(self, http: RetryingClient, versions: AnthropicVersionCache) -> None:
        self._http = http
        self._versions = versions

    async def _post(self, provider: Provider, model: str, body: dict[str, Any]) -> Any:
        version = await self._versions.get(provider)
        attempts = auth_attempts(provider, {"anthropic-version": version}, family=Compat.CLAUDE)
        url = trim_base(provider.base_url) + "/v1/messages"
        try:
            resp = await post_with_attempts(self._http, url, body, attempts)
            return resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise error_from_http(exc, self.name, model) from exc

    async def chat(
        self,
        provider: Provider,
        model: str,
        turns: list[Turn],
        max_tokens: int | None = None,
        use_search: bool = False,
    ) -> str:
        system = "\n\n".join(turn.content for turn in turns if turn.role == "system")
        messages = [
            {"role": "assistant" if turn.role == "assistant" else "user", "content": turn.content}
            for turn in turns
            if turn.role != "system"
        ]
        body: dict[str, Any] = {"model": model, "max_tokens": max_tokens or DEFAULT_MAX_TOKENS, "messages": messages}
        if system:
            body["system"] = system
        if use_search and "api.anthropic.com" in provider.base_url.lower():
            body["tools"] = [WEB_SEARCH_TOOL]
        data = await self._post(provider, model, body)
        return _message_text(data)

    async def vision(self, provider: Provider, model: str, image: bytes, prompt: str | None = None) -> str:
        body = {
            "model": model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt or DEFAULT_VISION_PROMPT},
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": guess_image_mime(image),
                                "data": base64.b64encode(image).decode("ascii"),
                            },
                        },
                    ],
                }
            ],
        }
        data = await self._post(provider, model, body)
        return _message_text(data)

    async def image(self, provider: Provider, model: str, prompt: str) -> ImageResult:
        raise ConfigurationError("Claude-compatible providers do not support image generation")

    async def tts(self, provider: Provider, model: str, text: str, voice: str | None = None) -> AudioResult:
        raise ConfigurationError("Claude-compatible providers do not support speech synthesis")
