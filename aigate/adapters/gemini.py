from __future__ import annotations

import base64
import binascii
import logging
from typing import Any
from urllib.parse import quote

import httpx

from aigate.adapters.audio import pcm_to_wav_if_needed
from aigate.adapters.base import DEFAULT_VISION_PROMPT, guess_image_mime, trim_base
from aigate.auth import gemini_auth_attempts
from aigate.errors import (
    ConfigurationError,
    TransientNetworkError,
    UpstreamError,
    error_from_http,
    is_route_error,
)
from aigate.http_client import RetryingClient
from aigate.models import AudioResult, ImageResult, Provider, Turn

API_VERSIONS = ("/v1beta", "/v1")
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image-preview"
DEFAULT_VOICE = "Kore"


def _parts(data: Any) -> list[dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return []
    content = candidates[0].get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


def _inline(part: dict[str, Any]) -> dict[str, Any] | None:
    inline = part.get("inlineData") or part.get("inline_data")
    if isinstance(inline, dict) and inline.get("data"):
        return inline
    return None


def _decode(value: Any) -> bytes | None:
    try:
        return base64.b64decode(str(value))
    except (binascii.Error, ValueError):
        return None


def _text_of(data: Any) -> str:
    return "".join(str(part.get("text", "")) for part in _parts(data))


class GeminiAdapter:
    name = "gemini"

    def __init__(self, http: RetryingClient, media_timeout_sec: float = 60.0) -> None:
        self._http = http
        self._media_timeout = media_timeout_sec
        self._logger = logging.getLogger("adapter.gemini")

    async def request(
        self,
        provider: Provider,
        model: str,
        body: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        """POST ``generateContent``, falling back from /v1beta to /v1 on route errors."""
        base = trim_base(provider.base_url)
        path = f"/models/{quote(model, safe='')}:generateContent"
        attempts = gemini_auth_attempts(provider)
        if not attempts:
            raise ConfigurationError(f"No authentication attempts for provider {provider.name}")
        last_exc: Exception | None = None
        for version in API_VERSIONS:
            for attempt in attempts:
                try:
                    resp = await self._http.post(
                        base + version + path,
                        json=body,
                        headers=attempt.headers,
                        params=attempt.params,
                        timeout=timeout,
                    )
                    return resp.json()
                except (httpx.HTTPError, ValueError) as exc:
                    last_exc = exc
                    if is_route_error(exc):
                        self._logger.info("Route error on %s for model=%s, trying next API version", version, model)
                        break
        if last_exc is None:
            raise ConfigurationError(f"No API versions configured for model {model}")
        raise error_from_http(last_exc, self.name, model) from last_exc

    async def chat(
        self,
        provider: Provider,
        model: str,
        turns: list[Turn],
        max_tokens: int | None = None,
        use_search: bool = False,
    ) -> str:
        contents = []
        system_parts = []
        for turn in turns:
            if turn.role == "system":
                system_parts.append({"text": turn.content})
                continue
            role = "model" if turn.role == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": turn.content}]})
        body: dict[str, Any] = {"contents": contents}
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        if max_tokens:
            body["generationConfig"] = {"maxOutputTokens": max_tokens}
        if use_search:
            body["tools"] = [{"googleSearch": {}}]
        data = await self.request(provider, model, body)
        return _text_of(data)

    async def vision(self, provider: Provider, model: str, image: bytes, prompt: str | None = None) -> str:
        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"inlineData": {"mimeType": guess_image_mime(image), "data": base64.b64encode(image).decode("ascii")}},
                        {"text": prompt or DEFAULT_VISION_PROMPT},
                    ],
                }
            ]
        }
        data = await self.request(provider, model, body)
        return _text_of(data)

    async def image(self, provider: Provider, model: str, prompt: str) -> ImageResult:
        image_model = model
        if "image" not in model and "2.5-flash" not in model and "2.0-flash" not in model:
            image_model = DEFAULT_IMAGE_MODEL
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "temperature": 0.7,
                "maxOutputTokens": 2048,
            },
        }
        data = await self.request(provider, image_model, body, timeout=self._media_timeout)
        text: str | None = None
        image: bytes | None = None
        mime = "image/png"
        for part in _parts(data):
            if part.get("text"):
                text = str(part["text"])
            inline = _inline(part)
            if inline:
                decoded = _decode(inline["data"])
                if decoded:
                    image = decoded
                    mime = inline.get("mimeType") or inline.get("mime_type") or mime
            file_data = part.get("fileData") or part.get("file_data")
            file_uri = (file_data.get("fileUri") or file_data.get("file_uri")) if isinstance(file_data, dict) else None
            if file_uri:
                hint = f"Generated image is available at {file_uri}"
                text = f"{text}\n{hint}" if text else hint
        return ImageResult(data=image, text=text, mime=mime)

    async def tts(self, provider: Provider, model: str, text: str, voice: str | None = None) -> AudioResult:
        contents = [{"role": "user", "parts": [{"text": text}]}]
        payloads = [
            {
                "contents": contents,
                "generationConfig": {
                    "responseModalities": ["AUDIO"],
                    "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice or DEFAULT_VOICE}}},
                },
            },
            {"contents": contents, "generationConfig": {"responseModalities": ["AUDIO"]}},
        ]
        last_exc: Exception | None = None
        for index, payload in enumerate(payloads, start=1):
            try:
                data = await self.request(provider, model, payload, timeout=self._media_timeout)
            except (UpstreamError, TransientNetworkError) as exc:
                self._logger.warning("TTS payload %s failed model=%s: %s", index, model, exc)
                last_exc = exc
                continue
            for part in _parts(data):
                inline = _inline(part)
                if not inline:
                    continue
                part_mime = str(inline.get("mimeType") or inline.get("mime_type") or "audio/ogg")
                raw = _decode(inline["data"])
                if raw and part_mime.startswith("audio/"):
                    audio, mime = pcm_to_wav_if_needed(raw, part_mime)
                    return AudioResult(data=audio, mime=mime)
        if last_exc is not None:
            raise last_exc
        raise UpstreamError(
            f"adapter={self.name} model={model} message=no audio in response",
            adapter=self.name,
            model=model,
            upstream_message="no audio in response",
        )
