from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from aigate.gateway import AIGateway
from aigate.http_client import RetryingClient
from aigate.storage import StateStore


@dataclass
class RuntimeContext:
    store: StateStore
    http: RetryingClient
    gateway: AIGateway
    owner_user_id: int

    def to_bot_data(self) -> dict[str, Any]:
        return {"runtime": self}

    async def aclose(self) -> None:
        await self.gateway.aclose()
        await self.http.aclose()
