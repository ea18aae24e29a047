from __future__ import annotations

import base64
import binascii
import logging
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
from aigate.errors import UpstreamError, error_from_http
from aigate.http_client import RetryingClient
from aigate.models import AudioResult, Compat, ImageResult, Provider, Turn

SEARCH_INSTRUCTION = (
    "Answer the following question from your knowledge; "
    "say so explicitly if it needs up-to-date information."
)
WEB_SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": "web_search",
        "description": "Search the web for current information and return relevant results",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query to execute"},
            },
            "required": ["query"],
        },
    },
}
TTS_PATHS = ("/v1/audio/speech", "/v1/audio/tts", "/audio/speech")


def _choice_text(data: Any) -> str:
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(str(part.get("text", "")) for part in content if isinstance(part, dict))
    return ""


class OpenAIAdapter:
    name = "openai"

    def __init__(self, http: RetryingClient, media_timeout_sec: float = 60.0) -> None:
        self._http = http
        self._media_timeout = media_timeout_sec
        self._logger = logging.getLogger("adapter.openai")

    async def _post(self, provider: Provider, model: str, path: str, body: dict[str, Any]) -> Any:
        url = trim_base(provider.base_url) + path
        attempts = auth_attempts(provider, family=Compat.OPENAI)
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
        messages = [{"role": turn.role, "content": turn.content} for turn in turns]
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
        }
        if use_search and "api.openai.com" in provider.base_url.lower():
            body["tools"] = [WEB_SEARCH_TOOL]
        elif use_search and messages:
            last = messages[-1]
            messages[-1] = {**last, "content": f"{SEARCH_INSTRUCTION}\n\n{last['content']}"}
        data = await self._post(provider, model, "/v1/chat/completions", body)
        return _choice_text(data)

    async def vision(self, provider: Provider, model: str, image: bytes, prompt: str | None = None) -> str:
        encoded = base64.b64encode(image).decode("ascii")
        content = [
            {"type": "text", "text": prompt or DEFAULT_VISION_PROMPT},
            {"type": "image_url", "image_url": {"url": f"data:{guess_image_mime(image)};base64,{encoded}"}},
        ]
        body = {"model": model, "messages": [{"role": "user", "content": content}]}
        data = await self._post(provider, model, "/v1/chat/completions", body)
        return _choice_text(data)

    async def image(self, provider: Provider, model: str, prompt: str) -> ImageResult:
        body = {"model": model, "prompt": prompt, "n": 1, "response_format": "b64_json", "size": "1024x1024"}
        data = await self._post(provider, model, "/v1/images/generations", body)
        items = data.get("data") if isinstance(data, dict) else None
        first = items[0] if isinstance(items, list) and items else None
        if not isinstance(first, dict):
            self._logger.warning("Image response has no usable item model=%s", model)
            return ImageResult()
        encoded = first.get("b64_json") or first.get("image_base64") or first.get("image")
        if encoded:
            try:
                raw = base64.b64decode(str(encoded))
            except (binascii.Error, ValueError):
                self._logger.warning("Image payload is not valid base64 model=%s", model)
            else:
                return ImageResult(data=raw, mime=guess_image_mime(raw))
        link = first.get("url") or first.get("image_url")
        if link:
            try:
                resp = await self._http.get(str(link), timeout=self._media_timeout)
            except httpx.HTTPError:
                self._logger.exception("Failed to download generated image model=%s", model)
            else:
                if resp.content:
                    return ImageResult(data=resp.content, mime=guess_image_mime(resp.content))
        return ImageResult()

    async def tts(self, provider: Provider, model: str, text: str, voice: str | None = None) -> AudioResult:
        base = trim_base(provider.base_url)
        body = {"model": model, "input": text, "voice": voice or "alloy", "response_format": "opus"}
        attempts = auth_attempts(provider, {"Content-Type": "application/json"}, family=Compat.OPENAI)
        last_exc: Exception | None = None
        for path in TTS_PATHS:
            for attempt in attempts:
                try:
                    resp = await self._http.post(
                        base + path,
                        json=body,
                        headers=attempt.headers,
                        params=attempt.params,
                        timeout=self._media_timeout,
                    )
                except httpx.HTTPError as exc:
                    last_exc = exc
                    continue
                if resp.content:
                    mime = resp.headers.get("content-type", "audio/ogg").split(";", 1)[0].strip()
                    if not mime.startswith("audio/"):
                        mime = "audio/ogg"
                    return AudioResult(data=resp.content, mime=mime)
        if last_exc is not None:
            raise error_from_http(last_exc, self.name, model) from last_exc
        raise UpstreamError(
            f"adapter={self.name} model={model} message=no audio in response",
            adapter=self.name,
            model=model,
            upstream_message="no audio in response",
        )
