from __future__ import annotations

import httpx
import pytest

from aigate.catalog import ModelCatalog
from aigate.models import Compat, Provider
from aigate.probe import ProbeResult
from tests.conftest import FakeProber


class ListingByProvider:
    def __init__(self, results: dict[str, object]) -> None:
        self.results = results
        self.calls: list[str] = []

    async def list_models_by_any_compat(self, provider: Provider) -> ProbeResult:
        self.calls.append(provider.name)
        result = self.results[provider.name]
        if isinstance(result, Exception):
            raise result
        return result


def _listing(compat: Compat, *models: str) -> ProbeResult:
    return ProbeResult(models=list(models), primary=compat, compats=[compat], model_map={m: compat for m in models})


class TestModelCatalog:
    @pytest.mark.asyncio
    async def test_merge_only_adds_unknown_models(self, store):
        catalog = ModelCatalog(store, FakeProber())
        store.state.catalog.map["shared"] = Compat.CLAUDE

        added = catalog.merge({"shared": Compat.OPENAI, "fresh": Compat.GEMINI})

        assert added == 1
        assert catalog.get("SHARED") == Compat.CLAUDE
        assert catalog.get("fresh") == Compat.GEMINI
        assert catalog.updated_at is not None

    @pytest.mark.asyncio
    async def test_set_default_keeps_first_answer(self, store):
        catalog = ModelCatalog(store, FakeProber())

        assert catalog.set_default("Model-X", Compat.GEMINI) == Compat.GEMINI
        assert catalog.set_default("model-x", Compat.OPENAI) == Compat.GEMINI

    @pytest.mark.asyncio
    async def test_refresh_merges_every_provider_first_wins(self, store):
        store.state.providers["a"] = Provider("a", "ka", "https://a.test")
        store.state.providers["b"] = Provider("b", "kb", "https://b.test")
        prober = ListingByProvider(
            {
                "a": _listing(Compat.OPENAI, "gpt-4o", "shared"),
                "b": _listing(Compat.CLAUDE, "claude-3-haiku", "shared"),
            }
        )
        catalog = ModelCatalog(store, prober)

        await catalog.refresh()

        assert store.state.catalog.map == {
            "gpt-4o": Compat.OPENAI,
            "shared": Compat.OPENAI,
            "claude-3-haiku": Compat.CLAUDE,
        }

    @pytest.mark.asyncio
    async def test_failing_provider_is_skipped(self, store):
        store.state.providers["a"] = Provider("a", "ka", "https://a.test")
        store.state.providers["b"] = Provider("b", "kb", "https://b.test")
        prober = ListingByProvider(
            {"a": httpx.ConnectError("down"), "b": _listing(Compat.GEMINI, "gemini-2.0-flash")}
        )
        catalog = ModelCatalog(store, prober)

        await catalog.refresh()

        assert store.state.catalog.map == {"gemini-2.0-flash": Compat.GEMINI}

    @pytest.mark.asyncio
    async def test_force_refresh_rebuilds_map(self, store):
        store.state.providers["a"] = Provider("a", "ka", "https://a.test")
        store.state.catalog.map["gone-model"] = Compat.OPENAI
        catalog = ModelCatalog(store, ListingByProvider({"a": _listing(Compat.GEMINI, "gemini-pro")}))

        await catalog.refresh()
        assert catalog.get("gone-model") == Compat.OPENAI

        await catalog.refresh(force=True)
        assert catalog.get("gone-model") is None
        assert catalog.get("gemini-pro") == Compat.GEMINI

    @pytest.mark.asyncio
    async def test_concurrent_refresh_reuses_running_task(self, store):
        store.state.providers["a"] = Provider("a", "ka", "https://a.test")
        prober = ListingByProvider({"a": _listing(Compat.OPENAI, "gpt-4o")})
        catalog = ModelCatalog(store, prober)

        first = catalog.refresh()
        second = catalog.refresh()
        assert first is second
        await first

        assert prober.calls == ["a"]
