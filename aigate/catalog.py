from __future__ import annotations

import asyncio
import logging

import httpx

from aigate.errors import GatewayError
from aigate.models import Compat, Provider
from aigate.probe import ModelProber, ProbeResult
from aigate.storage import StateStore, utc_now


class ModelCatalog:
    """Process-wide ``model name -> compat`` map shared by every provider."""

    def __init__(self, store: StateStore, prober: ModelProber) -> None:
        self._store = store
        self._prober = prober
        self._refresh_task: asyncio.Task[None] | None = None
        self._listings: dict[str, asyncio.Task[ProbeResult]] = {}
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()
        self._logger = logging.getLogger("catalog")

    @property
    def updated_at(self) -> str | None:
        return self._store.state.catalog.updated_at

    def get(self, model: str) -> Compat | None:
        return self._store.state.catalog.map.get(model.lower())

    def set_default(self, model: str, compat: Compat) -> Compat:
        catalog = self._store.state.catalog
        current = catalog.map.setdefault(model.lower(), compat)
        if current is compat:
            catalog.updated_at = utc_now()
            self._store.mark_dirty()
        return current

    def merge(self, model_map: dict[str, Compat]) -> int:
        catalog = self._store.state.catalog
        added = 0
        for model, compat in model_map.items():
            if model not in catalog.map:
                catalog.map[model] = compat
                added += 1
        if added:
            catalog.updated_at = utc_now()
            self._store.mark_dirty()
        return added

    def listing(self, name: str, provider: Provider) -> asyncio.Task[ProbeResult]:
        task = self._listings.get(name)
        if task is None:
            task = self._track(asyncio.ensure_future(self._prober.list_models_by_any_compat(provider)))
            self._listings[name] = task
            task.add_done_callback(lambda done, key=name: self._forget_listing(key, done))
        return task

    def _forget_listing(self, name: str, task: asyncio.Task[ProbeResult]) -> None:
        if self._listings.get(name) is task:
            self._listings.pop(name, None)

    def forget_provider(self, name: str | None = None) -> None:
        if name is None:
            self._listings.clear()
        else:
            self._listings.pop(name, None)
        self._generation += 1

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def aclose(self) -> None:
        """Cancel running refreshes and listings and wait for them to finish."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._listings.clear()
        self._refresh_task = None

    def refresh(self, force: bool = False) -> asyncio.Task[None]:
        running = self._refresh_task
        if running is not None and not running.done() and not force:
            return running
        task = self._track(asyncio.ensure_future(self._refresh(force, self._generation)))
        self._refresh_task = task
        return task

    def schedule_refresh(self) -> None:
        task = self.refresh(False)
        task.add_done_callback(self._log_failure)

    def _log_failure(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Background catalog refresh failed: %r", exc)

    async def _refresh(self, force: bool, generation: int) -> None:
        providers = list(self._store.state.providers.items())
        results = await asyncio.gather(
            *(self.listing(name, provider) for name, provider in providers),
            return_exceptions=True,
        )
        merged: dict[str, Compat] = {}
        for (name, _), result in zip(providers, results):
            if isinstance(result, (GatewayError, httpx.HTTPError, ValueError)):
                self._logger.warning("Catalog listing skipped provider=%s error=%r", name, result)
                continue
            if isinstance(result, BaseException):
                raise result
            for model, compat in result.model_map.items():
                merged.setdefault(model, compat)
        if generation != self._generation and not force:
            self._logger.info("Discarding stale catalog refresh")
            return
        catalog = self._store.state.catalog
        if force:
            catalog.map = merged
        else:
            for model, compat in merged.items():
                catalog.map.setdefault(model, compat)
        catalog.updated_at = utc_now()
        self._store.mark_dirty()
        self._logger.info("Catalog refreshed force=%s providers=%s models=%s", force, len(providers), len(catalog.map))
