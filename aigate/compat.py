from __future__ import annotations

import asyncio
import logging

import httpx

from aigate.catalog import ModelCatalog
from aigate.errors import GatewayError
from aigate.model_names import detect_compat
from aigate.models import Compat, Provider
from aigate.storage import StateStore


class CompatResolver:
    """Decides which wire family to speak for a (provider, model) pair.

    Lookup order: manual override, shared catalog, then a live probe of the
    provider's model listings. Concurrent lookups for the same pair await a
    single probe, and every probe of one provider shares one listing task.
    """

    def __init__(self, store: StateStore, catalog: ModelCatalog) -> None:
        self._store = store
        self._catalog = catalog
        self._inflight: dict[str, asyncio.Task[Compat]] = {}
        self._generations: dict[str, int] = {}
        self._tasks: set[asyncio.Task[Compat]] = set()
        self._logger = logging.getLogger("compat")

    @staticmethod
    def pair_key(provider_name: str, model: str) -> str:
        return f"{provider_name}::{model.lower()}"

    def inflight_keys(self) -> list[str]:
        return list(self._inflight)

    def override_for(self, provider_name: str, model: str) -> Compat | None:
        return self._store.state.overrides.get(provider_name, {}).get(model.lower())

    def set_override(self, provider_name: str, model: str, compat: Compat) -> None:
        self._store.state.overrides.setdefault(provider_name, {})[model.lower()] = compat
        self._store.mark_dirty()

    def peek(self, provider_name: str, model: str) -> Compat:
        """Best-effort answer without touching the network."""
        return self.override_for(provider_name, model) or self._catalog.get(model) or detect_compat(model)

    def invalidate(self, provider_name: str) -> None:
        self._generations[provider_name] = self._generations.get(provider_name, 0) + 1
        prefix = provider_name + "::"
        for key in [key for key in self._inflight if key.startswith(prefix)]:
            self._inflight.pop(key, None)
        if self._store.state.overrides.pop(provider_name, None) is not None:
            self._store.mark_dirty()
        self._catalog.forget_provider(provider_name)

    async def resolve_compat(self, provider_name: str, model: str, provider: Provider) -> Compat:
        override = self.override_for(provider_name, model)
        if override:
            return override
        cached = self._catalog.get(model)
        if cached:
            return cached

        guess = detect_compat(model)
        self._catalog.schedule_refresh()

        key = self.pair_key(provider_name, model)
        task = self._inflight.get(key)
        if task is None:
            generation = self._generations.get(provider_name, 0)
            task = asyncio.ensure_future(self._probe(provider_name, model, provider, guess, generation))
            self._inflight[key] = task
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            task.add_done_callback(lambda done, k=key: self._forget(k, done))
        compat = await asyncio.shield(task)
        return self.override_for(provider_name, model) or compat

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    def _forget(self, key: str, task: asyncio.Task[Compat]) -> None:
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)

    async def _probe(
        self,
        provider_name: str,
        model: str,
        provider: Provider,
        guess: Compat,
        generation: int,
    ) -> Compat:
        model_lower = model.lower()
        try:
            result = await asyncio.shield(self._catalog.listing(provider_name, provider))
        except (GatewayError, httpx.HTTPError, ValueError) as exc:
            self._logger.warning("Probe failed provider=%s model=%s error=%r", provider_name, model, exc)
            result = None

        stale = generation != self._generations.get(provider_name, 0)
        if result is None or result.primary is None:
            if stale:
                return guess
            self._logger.info("Probe found nothing provider=%s model=%s, using %s", provider_name, model, guess.value)
            return self._catalog.set_default(model_lower, guess)

        compat = result.model_map.get(model_lower) or result.primary
        if stale:
            return compat
        self._catalog.merge(result.model_map)
        compat = self._catalog.set_default(model_lower, compat)
        current = self._store.state.providers.get(provider_name)
        if current is not None and current.preferred_compat != result.primary:
            current.preferred_compat = result.primary
            self._store.mark_dirty()
        self._logger.info(
            "Resolved provider=%s model=%s compat=%s primary=%s",
            provider_name,
            model,
            compat.value,
            result.primary.value,
        )
        return compat
