from __future__ import annotations

from aigate.adapters.base import FamilyAdapter
from aigate.errors import ConfigurationError
from aigate.models import Compat


class AdapterRegistry:
    def __init__(self) -> None:
        self._adapters: dict[Compat, FamilyAdapter] = {}

    def register(self, compat: Compat, adapter: FamilyAdapter) -> None:
        if compat in self._adapters:
            raise ConfigurationError(f"Adapter for '{compat.value}' already registered")
        self._adapters[compat] = adapter

    def get(self, compat: Compat) -> FamilyAdapter:
        adapter = self._adapters.get(compat)
        if not adapter:
            raise ConfigurationError(f"No adapter registered for compat '{compat.value}'")
        return adapter
