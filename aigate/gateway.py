from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from urllib.parse import urlsplit

import httpx

from aigate.adapters import AnthropicVersionCache, build_adapters
from aigate.adapters.base import trim_base
from aigate.catalog import ModelCatalog
from aigate.compat import CompatResolver
from aigate.errors import ConfigurationError, GatewayError, UpstreamError, error_from_http
from aigate.formatting import OutputFormatter
from aigate.history import HistoryLimits, HistoryStore
from aigate.http_client import RetryingClient
from aigate.model_picker import pick_models
from aigate.models import KINDS, Compat, GatewayResult, GatewayState, ModelSelector, Provider, TelegraphPost, Turn
from aigate.probe import ModelProber, ProbeResult
from aigate.security import redact
from aigate.storage import StateStore
from aigate.telegraph import TelegraphClient

PROVIDER_FIELDS = ("apikey", "baseurl")


def validate_base_url(url: str) -> str:
    trimmed = trim_base(url)
    parts = urlsplit(trimmed)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigurationError(f"Invalid base URL: {url!r} (expected http:// or https://)")
    return trimmed


class AIGateway:
    """Routes chat, search, image and tts requests to whichever vendor family serves the model."""

    def __init__(
        self,
        store: StateStore,
        http: RetryingClient,
        *,
        history_limits: HistoryLimits | None = None,
        max_tokens: int | None = None,
        tts_voice: str | None = None,
        telegraph: TelegraphClient | None = None,
        media_timeout_sec: float = 60.0,
        page_title: str = "AI answer",
    ) -> None:
        self._store = store
        self._versions = AnthropicVersionCache(http)
        self._adapters = build_adapters(http, self._versions, media_timeout_sec=media_timeout_sec)
        self.catalog = ModelCatalog(store, ModelProber(http, self._versions))
        self.resolver = CompatResolver(store, self.catalog)
        self.history = HistoryStore(lambda: store.state, history_limits, on_change=store.mark_dirty)
        self.formatter = OutputFormatter(lambda: store.state, telegraph, on_change=store.mark_dirty, page_title=page_title)
        self._max_tokens = max_tokens
        self._tts_voice = tts_voice
        self._logger = logging.getLogger("gateway")

    @property
    def state(self) -> GatewayState:
        return self._store.state

    def _provider(self, name: str) -> Provider:
        provider = self.state.providers.get(name)
        if provider is None:
            raise ConfigurationError(f"Unknown provider: {name}")
        return provider

    def _selector(self, kind: str) -> ModelSelector:
        if kind not in KINDS:
            raise ConfigurationError(f"Unknown request kind: {kind}")
        selector = self.state.selectors.get(kind)
        if selector is None:
            raise ConfigurationError(f"No {kind} model configured")
        return selector

    async def request(
        self,
        kind: str,
        text: str,
        image: bytes | None = None,
        session_id: str = "global",
    ) -> GatewayResult:
        selector = self._selector(kind)
        provider = self._provider(selector.provider)
        prompt = (text or "").strip()
        if not prompt and image is None:
            raise ConfigurationError("Prompt is empty")

        compat = await self.resolver.resolve_compat(selector.provider, selector.model, provider)
        adapter = self._adapters.get(compat)
        self._logger.info(
            "Request kind=%s provider=%s model=%s compat=%s session=%s",
            kind,
            selector.provider,
            selector.model,
            compat.value,
            session_id,
        )
        result = GatewayResult(kind=kind, provider=selector.provider, model=selector.model, compat=compat)
        try:
            if kind in ("chat", "search"):
                if image is not None:
                    answer = await adapter.vision(provider, selector.model, image, prompt or None)
                else:
                    turns = self._turns_for(session_id, prompt)
                    answer = await adapter.chat(
                        provider,
                        selector.model,
                        turns,
                        max_tokens=self._max_tokens,
                        use_search=kind == "search",
                    )
                if not answer.strip():
                    raise UpstreamError(
                        f"adapter={compat.value} model={selector.model} message=empty answer",
                        adapter=compat.value,
                        model=selector.model,
                        upstream_message="model returned an empty answer",
                    )
                result = replace(result, text=answer)
            elif kind == "image":
                produced = await adapter.image(provider, selector.model, prompt)
                result = replace(result, text=produced.text or "", data=produced.data, mime=produced.mime)
            else:
                audio = await adapter.tts(provider, selector.model, prompt, self._tts_voice)
                result = replace(result, data=audio.data, mime=audio.mime)
        except GatewayError as exc:
            self._logger.warning("Request failed kind=%s provider=%s error=%s", kind, selector.provider, exc)
            raise
        except httpx.HTTPError as exc:
            raise error_from_http(exc, compat.value, selector.model) from exc

        self._remember_compat(selector.provider, provider, compat)
        if kind in ("chat", "search") and self.state.context_enabled and image is None:
            self.history.append(session_id, "user", prompt)
            self.history.append(session_id, "assistant", result.text)
        return result

    def _turns_for(self, session_id: str, prompt: str) -> list[Turn]:
        turns = self.history.read(session_id) if self.state.context_enabled else []
        turns.append(Turn(role="user", content=prompt))
        return turns

    def _remember_compat(self, name: str, provider: Provider, compat: Compat) -> None:
        if provider.preferred_compat != compat and self.state.providers.get(name) is provider:
            provider.preferred_compat = compat
            self._store.mark_dirty()

    async def render(self, question: str, result: GatewayResult, extra: str = "") -> list[str]:
        return await self.formatter.render(question, result.text, result.model, extra)

    # providers

    def add_provider(self, name: str, api_key: str, base_url: str) -> Provider:
        name = (name or "").strip()
        if not name or " " in name or name.lower() == "all":
            raise ConfigurationError(f"Invalid provider name: {name!r}")
        if not api_key:
            raise ConfigurationError("API key is required")
        url = validate_base_url(base_url)
        previous = self.state.providers.get(name)
        provider = Provider(name=name, api_key=api_key, base_url=url)
        self.state.providers[name] = provider
        self._logger.info("Provider saved name=%s base=%s key=%s", name, url, redact(api_key))
        self._provider_changed(name, previous.base_url if previous else None)
        return provider

    def update_provider(self, name: str, field: str, value: str) -> Provider:
        provider = self._provider(name)
        field = field.lower()
        if field not in PROVIDER_FIELDS:
            raise ConfigurationError(f"Unknown provider field: {field} (expected apikey or baseurl)")
        previous_url = provider.base_url
        if field == "apikey":
            if not value:
                raise ConfigurationError("API key is required")
            provider.api_key = value
        else:
            provider.base_url = validate_base_url(value)
        provider.preferred_compat = None
        self._logger.info("Provider updated name=%s field=%s", name, field)
        self._provider_changed(name, previous_url)
        return provider

    def remove_provider(self, name: str) -> list[str]:
        if name.lower() == "all":
            removed = list(self.state.providers)
        else:
            self._provider(name)
            removed = [name]
        for provider_name in removed:
            provider = self.state.providers.pop(provider_name)
            for kind, selector in list(self.state.selectors.items()):
                if selector.provider == provider_name:
                    del self.state.selectors[kind]
            self._provider_changed(provider_name, provider.base_url)
        self._logger.info("Providers removed: %s", ", ".join(removed) or "(none)")
        return removed

    def _provider_changed(self, name: str, previous_url: str | None) -> None:
        self.resolver.invalidate(name)
        provider = self.state.providers.get(name)
        if provider is not None:
            provider.preferred_compat = None
            self._versions.forget(provider.base_url)
        if previous_url:
            self._versions.forget(previous_url)
        self._store.mark_dirty()
        self._schedule_rebuild()

    def _schedule_rebuild(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.catalog.refresh(force=True).add_done_callback(self._log_rebuild)

    def _log_rebuild(self, task: asyncio.Task[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            self._logger.error("Catalog rebuild failed: %r", task.exception())

    async def list_provider_models(self, name: str) -> ProbeResult:
        provider = self._provider(name)
        result = await self.catalog.listing(name, provider)
        self.catalog.merge(result.model_map)
        return result

    # model selection

    def set_model(self, kind: str, provider: str, model: str, compat: Compat | str | None = None) -> ModelSelector:
        if kind not in KINDS:
            raise ConfigurationError(f"Unknown request kind: {kind}")
        self._provider(provider)
        model = (model or "").strip()
        if not model:
            raise ConfigurationError("Model name is required")
        parsed: Compat | None = None
        if compat is not None:
            parsed = Compat.parse(compat) if isinstance(compat, str) else compat
            if parsed is None:
                raise ConfigurationError(f"Unknown compat: {compat}")
        selector = ModelSelector(provider=provider, model=model)
        self.state.selectors[kind] = selector
        if parsed is not None:
            self.resolver.set_override(provider, model, parsed)
        self._store.mark_dirty()
        return selector

    def clear_models(self) -> None:
        self.state.selectors.clear()
        self._store.mark_dirty()

    async def auto_assign_models(self) -> dict[str, ModelSelector]:
        providers = list(self.state.providers.items())
        if not providers:
            raise ConfigurationError("No providers configured")
        listings = await asyncio.gather(
            *(self.catalog.listing(name, provider) for name, provider in providers),
            return_exceptions=True,
        )
        models_by: dict[str, list[str]] = {}
        for (name, _), listing in zip(providers, listings):
            if isinstance(listing, ProbeResult):
                models_by[name] = listing.models
                self.catalog.merge(listing.model_map)
            elif isinstance(listing, (GatewayError, httpx.HTTPError, ValueError)):
                self._logger.warning("Listing failed provider=%s error=%r", name, listing)
                models_by[name] = []
            else:
                raise listing
        anchor = next(
            (self.state.selectors[kind].provider for kind in KINDS if kind in self.state.selectors),
            None,
        )
        picked = pick_models(models_by, anchor)
        if "chat" not in picked:
            raise ConfigurationError("No chat model found at any configured provider")
        self.state.selectors.update(picked)
        self._store.mark_dirty()
        self._logger.info(
            "Auto-assigned %s",
            ", ".join(f"{kind}={sel.label}" for kind, sel in self.state.selectors.items()),
        )
        return dict(self.state.selectors)

    # settings

    def set_context(self, enabled: bool) -> None:
        self.state.context_enabled = enabled
        self._store.mark_dirty()

    def set_collapse(self, enabled: bool) -> None:
        self.state.collapse = enabled
        self._store.mark_dirty()

    def set_telegraph(self, enabled: bool | None = None, limit: int | None = None) -> None:
        telegraph = self.state.telegraph
        if enabled is not None:
            telegraph.enabled = enabled
        if limit is not None:
            telegraph.limit = max(0, limit)
        self._store.mark_dirty()

    def telegraph_posts(self) -> list[TelegraphPost]:
        return list(self.state.telegraph.posts)

    def delete_telegraph_post(self, which: str) -> int:
        posts = self.state.telegraph.posts
        if which.lower() == "all":
            count = len(posts)
            posts.clear()
        else:
            try:
                index = int(which) - 1
            except ValueError as exc:
                raise ConfigurationError(f"Invalid post number: {which}") from exc
            if not 0 <= index < len(posts):
                raise ConfigurationError(f"No post number {which}")
            del posts[index]
            count = 1
        self._store.mark_dirty()
        return count

    def clear_history(self, session_id: str) -> bool:
        return self.history.clear(session_id)

    async def aclose(self) -> None:
        await self.resolver.aclose()
        await self.catalog.aclose()
        await self._versions.aclose()
        await self._store.close()
