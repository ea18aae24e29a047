from __future__ import annotations

from typing import Any, Protocol

import httpx

from aigate.auth import AuthAttempt
from aigate.errors import ConfigurationError
from aigate.http_client import RetryingClient
from aigate.models import AudioResult, ImageResult, Provider, Turn

DEFAULT_MAX_TOKENS = 8192
DEFAULT_VISION_PROMPT = "Describe this image."


def trim_base(url: str) -> str:
    return (url or "").strip().rstrip("/")


def guess_image_mime(data: bytes) -> str:
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data.startswith(b"GIF8"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


async def post_with_attempts(
    http: RetryingClient,
    url: str,
    body: Any,
    attempts: list[AuthAttempt],
    timeout: float | None = None,
) -> httpx.Response:
    if not attempts:
        raise ConfigurationError("No authentication attempts available")
    for attempt in attempts[:-1]:
        try:
            return await http.post(url, json=body, headers=attempt.headers, params=attempt.params, timeout=timeout)
        except httpx.HTTPError:
            continue
    last = attempts[-1]
    return await http.post(url, json=body, headers=last.headers, params=last.params, timeout=timeout)


class FamilyAdapter(Protocol):
    name: str

    async def chat(
        self,
        provider: Provider,
        model: str,
        turns: list[Turn],
        max_tokens: int | None = None,
        use_search: bool = False,
    ) -> str: ...

    async def vision(self, provider: Provider, model: str, image: bytes, prompt: str | None = None) -> str: ...

    async def image(self, provider: Provider, model: str, prompt: str) -> ImageResult: ...

    async def tts(self, provider: Provider, model: str, text: str, voice: str | None = None) -> AudioResult: ...
