from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from aigate.adapters.base import trim_base
from aigate.adapters.claude import AnthropicVersionCache
from aigate.auth import AuthAttempt, auth_attempts, gemini_auth_attempts
from aigate.errors import GatewayError, UpstreamError
from aigate.http_client import RetryingClient
from aigate.model_names import is_specific_family, parse_model_list
from aigate.models import Compat, Provider

PROBE_ORDER = (Compat.OPENAI, Compat.GEMINI, Compat.CLAUDE)


@dataclass
class ProbeResult:
    models: list[str] = field(default_factory=list)
    primary: Compat | None = None
    compats: list[Compat] = field(default_factory=list)
    model_map: dict[str, Compat] = field(default_factory=dict)


class ModelProber:
    """Enumerates a provider's models through each wire family's listing endpoint."""

    def __init__(self, http: RetryingClient, versions: AnthropicVersionCache) -> None:
        self._http = http
        self._versions = versions
        self._logger = logging.getLogger("probe")

    async def _get(self, url: str, attempts: list[AuthAttempt]) -> Any:
        last_exc: Exception | None = None
        for attempt in attempts:
            try:
                resp = await self._http.get(url, headers=attempt.headers, params=attempt.params)
                return resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                last_exc = exc
        if last_exc is None:
            raise UpstreamError(f"No authentication attempts for {url}")
        raise last_exc

    async def _list_plain(self, provider: Provider, url: str) -> list[str]:
        return parse_model_list(await self._get(url, auth_attempts(provider)))

    async def _list_claude(self, provider: Provider, url: str) -> list[str]:
        version = await self._versions.get(provider)
        attempts = auth_attempts(provider, {"anthropic-version": version})
        return parse_model_list(await self._get(url, attempts))

    async def _list_gemini(self, provider: Provider, url: str) -> list[str]:
        return parse_model_list(await self._get(url, gemini_auth_attempts(provider)))

    async def list_models(self, provider: Provider, compat: Compat) -> list[str]:
        base = trim_base(provider.base_url)
        openai_url = base + "/v1/models"
        gemini_url = base + "/v1beta/models"
        if compat == Compat.OPENAI:
            steps = [
                (self._list_plain, openai_url, False),
                (self._list_claude, openai_url, False),
                (self._list_gemini, gemini_url, False),
            ]
        elif compat == Compat.CLAUDE:
            steps = [
                (self._list_claude, openai_url, False),
                (self._list_plain, openai_url, False),
                (self._list_gemini, gemini_url, False),
            ]
        else:
            steps = [
                (self._list_gemini, gemini_url, True),
                (self._list_gemini, openai_url, True),
                (self._list_plain, openai_url, False),
            ]
        last_exc: Exception | None = None
        for lister, url, need_items in steps:
            try:
                models = await lister(provider, url)
            except (httpx.HTTPError, ValueError, GatewayError) as exc:
                last_exc = exc
                continue
            if need_items and not models:
                continue
            return models
        if last_exc is not None:
            raise last_exc
        raise UpstreamError(f"Provider {provider.name} returned no models")

    async def list_models_by_any_compat(self, provider: Provider) -> ProbeResult:
        result = ProbeResult()
        seen: set[str] = set()
        for compat in PROBE_ORDER:
            try:
                models = await self.list_models(provider, compat)
            except (httpx.HTTPError, ValueError, GatewayError) as exc:
                self._logger.debug("Listing failed provider=%s compat=%s error=%r", provider.name, compat.value, exc)
                continue
            if not models:
                continue
            if result.primary is None:
                result.primary = compat
            if compat not in result.compats:
                result.compats.append(compat)
            for model in models:
                key = model.lower()
                if key not in seen:
                    seen.add(key)
                    result.models.append(model)
                result.model_map.setdefault(key, compat)
        for key, compat in list(result.model_map.items()):
            specific = is_specific_family(key)
            if specific and specific != compat:
                result.model_map[key] = specific
        self._logger.info(
            "Probed provider=%s models=%s primary=%s",
            provider.name,
            len(result.models),
            result.primary.value if result.primary else None,
        )
        return result
