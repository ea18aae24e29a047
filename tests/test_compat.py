from __future__ import annotations

import asyncio

import httpx
import pytest

from aigate.catalog import ModelCatalog
from aigate.compat import CompatResolver
from aigate.models import Compat
from aigate.probe import ModelProber, ProbeResult
from tests.conftest import FakeProber


def _gemini_listing() -> ProbeResult:
    return ProbeResult(
        models=["mystery-1", "other-2"],
        primary=Compat.GEMINI,
        compats=[Compat.GEMINI],
        model_map={"mystery-1": Compat.GEMINI, "other-2": Compat.GEMINI},
    )


def _resolver(store, prober):
    catalog = ModelCatalog(store, prober)
    return catalog, CompatResolver(store, catalog)


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestResolveCompat:
    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_one_probe(self, store, acme):
        store.state.providers["acme"] = acme
        prober = FakeProber(_gemini_listing())
        prober.gate = asyncio.Event()
        catalog, resolver = _resolver(store, prober)

        lookups = [asyncio.ensure_future(resolver.resolve_compat("acme", "Mystery-1", acme)) for _ in range(5)]
        await _settle()

        assert resolver.inflight_keys() == ["acme::mystery-1"]
        prober.gate.set()
        results = await asyncio.gather(*lookups)

        assert results == [Compat.GEMINI] * 5
        assert prober.calls == 1
        assert resolver.inflight_keys() == []
        assert catalog.get("mystery-1") == Compat.GEMINI
        assert acme.preferred_compat == Compat.GEMINI

    @pytest.mark.asyncio
    async def test_resolution_is_stable_across_refresh(self, store, acme):
        store.state.providers["acme"] = acme
        prober = FakeProber(_gemini_listing())
        catalog, resolver = _resolver(store, prober)

        assert await resolver.resolve_compat("acme", "mystery-1", acme) == Compat.GEMINI

        prober.result = ProbeResult(
            models=["mystery-1"],
            primary=Compat.OPENAI,
            compats=[Compat.OPENAI],
            model_map={"mystery-1": Compat.OPENAI},
        )
        await catalog.refresh()
        await catalog.refresh()

        assert await resolver.resolve_compat("acme", "mystery-1", acme) == Compat.GEMINI

    @pytest.mark.asyncio
    async def test_override_wins_over_catalog(self, store, acme):
        store.state.providers["acme"] = acme
        catalog, resolver = _resolver(store, FakeProber(_gemini_listing()))
        resolver.set_override("acme", "Mystery-1", Compat.CLAUDE)

        await catalog.refresh(force=True)

        assert catalog.get("mystery-1") == Compat.GEMINI
        assert await resolver.resolve_compat("acme", "mystery-1", acme) == Compat.CLAUDE
        assert resolver.peek("acme", "MYSTERY-1") == Compat.CLAUDE

    @pytest.mark.asyncio
    async def test_probe_failure_falls_back_to_name_heuristic(self, store, acme):
        store.state.providers["acme"] = acme
        prober = FakeProber(exc=httpx.ConnectError("down"))
        catalog, resolver = _resolver(store, prober)

        assert await resolver.resolve_compat("acme", "claude-3-haiku", acme) == Compat.CLAUDE
        assert catalog.get("claude-3-haiku") == Compat.CLAUDE
        assert acme.preferred_compat is None

    @pytest.mark.asyncio
    async def test_unlisted_model_uses_primary_family(self, store, acme):
        store.state.providers["acme"] = acme
        prober = FakeProber(
            ProbeResult(models=["house-model"], primary=Compat.CLAUDE, compats=[Compat.CLAUDE], model_map={"house-model": Compat.CLAUDE})
        )
        catalog, resolver = _resolver(store, prober)

        assert await resolver.resolve_compat("acme", "secret-model", acme) == Compat.CLAUDE
        assert catalog.get("secret-model") == Compat.CLAUDE
        assert acme.preferred_compat == Compat.CLAUDE

    @pytest.mark.asyncio
    async def test_invalidate_discards_running_probe(self, store, acme):
        store.state.providers["acme"] = acme
        prober = FakeProber(_gemini_listing())
        prober.gate = asyncio.Event()
        catalog, resolver = _resolver(store, prober)
        resolver.set_override("acme", "pinned", Compat.CLAUDE)

        lookup = asyncio.ensure_future(resolver.resolve_compat("acme", "mystery-1", acme))
        await _settle()
        resolver.invalidate("acme")

        assert resolver.inflight_keys() == []
        assert resolver.override_for("acme", "pinned") is None

        prober.gate.set()
        assert await lookup == Compat.GEMINI
        await _settle()
        assert catalog.get("mystery-1") is None

    @pytest.mark.asyncio
    async def test_live_provider_listing(self, vendor, http, versions, store, acme):
        vendor.json("GET", "/v1/models", {"data": [{"id": "gpt-4o-mini"}, {"id": "gpt-4o"}]})
        store.state.providers["acme"] = acme
        catalog = ModelCatalog(store, ModelProber(http, versions))
        resolver = CompatResolver(store, catalog)

        assert await resolver.resolve_compat("acme", "gpt-4o-mini", acme) == Compat.OPENAI
        assert catalog.get("gpt-4o-mini") == Compat.OPENAI
        assert catalog.get("gpt-4o") == Compat.OPENAI
        assert acme.preferred_compat == Compat.OPENAI

        await catalog.refresh()
        assert catalog.updated_at is not None
