from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio

from aigate.adapters.claude import AnthropicVersionCache
from aigate.http_client import RetryingClient
from aigate.models import Provider
from aigate.probe import ProbeResult
from aigate.storage import StateStore


class FakeVendor:
    """Routes ``(METHOD, path)`` to canned responses and records every request."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response] | list[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, responder: Any) -> None:
        self.routes[(method.upper(), path)] = responder

    def json(self, method: str, path: str, payload: Any, status: int = 200) -> None:
        self.add(method, path, lambda request: httpx.Response(status, json=payload))

    def sequence(self, method: str, path: str, responses: list[httpx.Response]) -> None:
        self.routes[(method.upper(), path)] = list(responses)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def body(self, request: httpx.Request) -> Any:
        return json.loads(request.content.decode("utf-8"))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": {"message": "not found"}})
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        return route(request)


class FakeProber:
    def __init__(self, result: ProbeResult | None = None, exc: Exception | None = None) -> None:
        self.result = result or ProbeResult()
        self.exc = exc
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def list_models_by_any_compat(self, provider: Provider) -> ProbeResult:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.exc is not None:
            raise self.exc
        return self.result


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def vendor() -> FakeVendor:
    return FakeVendor()


@pytest_asyncio.fixture
async def http(vendor):
    client = RetryingClient(
        httpx.AsyncClient(transport=httpx.MockTransport(vendor)),
        sleep=no_sleep,
        rng=lambda: 0.0,
    )
    yield client
    await client.aclose()


@pytest.fixture
def versions(http) -> AnthropicVersionCache:
    return AnthropicVersionCache(http)


@pytest_asyncio.fixture
async def store(tmp_path):
    state_store = StateStore(tmp_path / "state.json", debounce_sec=0.01)
    yield state_store
    await state_store.close()


@pytest.fixture
def acme() -> Provider:
    return Provider(name="acme", api_key="sk-acme-123456789", base_url="https://api.acme.ai")
