from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from aigate.errors import ConfigurationError
from aigate.models import (
    AuthConfig,
    AuthMethod,
    Compat,
    GatewayState,
    ModelCatalogState,
    ModelSelector,
    Provider,
    TelegraphPost,
    TelegraphState,
    Turn,
)
from aigate.security import KeyCipher, is_sealed

CURRENT_VERSION = 3
_LEGACY_KEYS = ("models", "modelCompat", "histMeta", "telegraph", "contextEnabled", "collapse")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def detect_version(doc: dict[str, Any]) -> int:
    if "modelSelectors" not in doc and any(key in doc for key in _LEGACY_KEYS):
        return 1
    version = doc.get("dataVersion")
    return version if isinstance(version, int) and version > 0 else 1


def _v1_to_v2(doc: dict[str, Any]) -> dict[str, Any]:
    providers: dict[str, Any] = {}
    for name, raw in (doc.get("providers") or {}).items():
        if not isinstance(raw, dict):
            continue
        providers[name] = {
            "apiKey": raw.get("apiKey", ""),
            "baseUrl": raw.get("baseUrl", ""),
            "preferredCompat": raw.get("preferredCompat") or raw.get("compatauth"),
            "authConfig": raw.get("authConfig"),
        }
    selectors: dict[str, Any] = {}
    for kind, value in (doc.get("models") or {}).items():
        if isinstance(value, dict):
            selectors[kind] = value
            continue
        provider, _, model = str(value or "").partition(" ")
        if provider and model:
            selectors[kind] = {"provider": provider, "model": model}
    meta: dict[str, str] = {}
    for session_id, value in (doc.get("histMeta") or doc.get("historyMeta") or {}).items():
        meta[session_id] = value.get("lastAt", "") if isinstance(value, dict) else str(value)
    telegraph = doc.get("telegraph") or doc.get("telegraphState") or {}
    settings = dict(doc.get("settings") or {})
    if isinstance(doc.get("contextEnabled"), bool):
        settings["contextEnabled"] = doc["contextEnabled"]
    if isinstance(doc.get("collapse"), bool):
        settings["collapse"] = doc["collapse"]
    return {
        "dataVersion": 2,
        "providers": providers,
        "modelCompatOverrides": doc.get("modelCompat") or doc.get("modelCompatOverrides") or {},
        "modelCatalog": doc.get("modelCatalog") or {"map": {}, "updatedAt": None},
        "modelSelectors": selectors,
        "histories": doc.get("histories") or {},
        "historyMeta": meta,
        "telegraphState": telegraph,
        "settings": settings,
    }


def _v2_to_v3(doc: dict[str, Any]) -> dict[str, Any]:
    catalog = doc.setdefault("modelCatalog", {"map": {}, "updatedAt": None})
    catalog_map = catalog.setdefault("map", {})
    for models in (doc.get("modelCompatOverrides") or {}).values():
        for model, compat in (models or {}).items():
            if Compat.parse(compat):
                catalog_map.setdefault(str(model).lower(), compat)
    doc["dataVersion"] = 3
    return doc


MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _v1_to_v2,
    2: _v2_to_v3,
}


def migrate(doc: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(doc)
    version = detect_version(result)
    while version < CURRENT_VERSION:
        result = MIGRATIONS[version](result)
        version = detect_version(result)
    return result


def _auth_config_from(raw: Any, api_key: str) -> AuthConfig | None:
    if not isinstance(raw, dict):
        return None
    try:
        method = AuthMethod(str(raw.get("method", "")).lower())
    except ValueError:
        return None
    return AuthConfig(
        method=method,
        api_key=str(raw.get("apiKey") or api_key),
        header_name=raw.get("headerName"),
        param_name=raw.get("paramName"),
        username=raw.get("username"),
        password=raw.get("password"),
    )


def state_from_document(doc: dict[str, Any], cipher: KeyCipher | None = None) -> GatewayState:
    state = GatewayState()
    for name, raw in (doc.get("providers") or {}).items():
        api_key = str(raw.get("apiKey") or "")
        if is_sealed(api_key):
            if cipher is None:
                raise ConfigurationError("State contains encrypted API keys but no encryption key is configured")
            api_key = cipher.unseal(api_key)
        state.providers[name] = Provider(
            name=name,
            api_key=api_key,
            base_url=str(raw.get("baseUrl") or ""),
            preferred_compat=Compat.parse(raw.get("preferredCompat")),
            auth_config=_auth_config_from(raw.get("authConfig"), api_key),
        )
    for provider_name, models in (doc.get("modelCompatOverrides") or {}).items():
        parsed = {str(k).lower(): Compat.parse(v) for k, v in (models or {}).items()}
        state.overrides[provider_name] = {k: v for k, v in parsed.items() if v}
    catalog = doc.get("modelCatalog") or {}
    parsed_map = {str(k).lower(): Compat.parse(v) for k, v in (catalog.get("map") or {}).items()}
    state.catalog = ModelCatalogState(
        map={k: v for k, v in parsed_map.items() if v},
        updated_at=catalog.get("updatedAt"),
    )
    for kind, raw in (doc.get("modelSelectors") or {}).items():
        if isinstance(raw, dict) and raw.get("provider") and raw.get("model"):
            state.selectors[kind] = ModelSelector(provider=str(raw["provider"]), model=str(raw["model"]))
    for session_id, turns in (doc.get("histories") or {}).items():
        state.histories[session_id] = [
            Turn(role=str(item.get("role", "")), content=str(item.get("content", "")))
            for item in turns or []
            if isinstance(item, dict)
        ]
    state.history_meta = {k: str(v) for k, v in (doc.get("historyMeta") or {}).items() if k in state.histories}
    telegraph = doc.get("telegraphState") or {}
    state.telegraph = TelegraphState(
        enabled=bool(telegraph.get("enabled", False)),
        limit=int(telegraph.get("limit") or 0),
        token=str(telegraph.get("token") or ""),
        posts=[
            TelegraphPost(
                title=str(post.get("title", "")),
                url=str(post.get("url", "")),
                created_at=str(post.get("createdAt", "")),
            )
            for post in telegraph.get("posts") or []
            if isinstance(post, dict)
        ],
    )
    settings = doc.get("settings") or {}
    state.context_enabled = bool(settings.get("contextEnabled", False))
    state.collapse = bool(settings.get("collapse", False))
    return state


def state_to_document(state: GatewayState, cipher: KeyCipher | None = None) -> dict[str, Any]:
    providers: dict[str, Any] = {}
    for name, provider in state.providers.items():
        entry: dict[str, Any] = {
            "apiKey": cipher.seal(provider.api_key) if cipher else provider.api_key,
            "baseUrl": provider.base_url,
        }
        if provider.preferred_compat:
            entry["preferredCompat"] = provider.preferred_compat.value
        if provider.auth_config:
            auth = provider.auth_config
            entry["authConfig"] = {
                "method": auth.method.value,
                "headerName": auth.header_name,
                "paramName": auth.param_name,
                "username": auth.username,
                "password": auth.password,
            }
        providers[name] = entry
    return {
        "dataVersion": CURRENT_VERSION,
        "providers": providers,
        "modelCompatOverrides": {
            name: {model: compat.value for model, compat in models.items()}
            for name, models in state.overrides.items()
        },
        "modelCatalog": {
            "map": {model: compat.value for model, compat in state.catalog.map.items()},
            "updatedAt": state.catalog.updated_at,
        },
        "modelSelectors": {
            kind: {"provider": sel.provider, "model": sel.model} for kind, sel in state.selectors.items()
        },
        "histories": {
            session_id: [{"role": turn.role, "content": turn.content} for turn in turns]
            for session_id, turns in state.histories.items()
        },
        "historyMeta": dict(state.history_meta),
        "telegraphState": {
            "enabled": state.telegraph.enabled,
            "limit": state.telegraph.limit,
            "token": state.telegraph.token,
            "posts": [
                {"title": post.title, "url": post.url, "createdAt": post.created_at}
                for post in state.telegraph.posts
            ],
        },
        "settings": {"contextEnabled": state.context_enabled, "collapse": state.collapse},
    }


class StateStore:
    def __init__(
        self,
        path: str | Path,
        cipher: KeyCipher | None = None,
        debounce_sec: float = 0.3,
    ) -> None:
        self._path = Path(path)
        self._cipher = cipher
        self._debounce = debounce_sec
        self._dirty = asyncio.Event()
        self._pending = False
        self._writer: asyncio.Task[None] | None = None
        self._closing = False
        self._logger = logging.getLogger("storage")
        self.state = GatewayState()
        self.write_count = 0

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> GatewayState:
        if not self._path.exists():
            self.state = GatewayState()
            self._logger.info("State file not found, starting empty: %s", self._path)
            return self.state
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            self._logger.exception("Failed to read state file: %s", self._path)
            backup = self._path.with_name(self._path.name + ".corrupt")
            os.replace(self._path, backup)
            self._logger.warning("Corrupt state moved to %s", backup)
            self.state = GatewayState()
            return self.state
        if not isinstance(raw, dict):
            raw = {}
        from_version = detect_version(raw)
        doc = migrate(raw)
        self.state = state_from_document(doc, self._cipher)
        if from_version != CURRENT_VERSION:
            self._logger.info("Migrated state %s -> %s", from_version, CURRENT_VERSION)
            self.mark_dirty()
        elif self._cipher and any(
            provider.get("apiKey") and not is_sealed(str(provider.get("apiKey")))
            for provider in (raw.get("providers") or {}).values()
        ):
            self.mark_dirty()
        self._logger.info(
            "Loaded state providers=%s sessions=%s catalog=%s",
            len(self.state.providers),
            len(self.state.histories),
            len(self.state.catalog.map),
        )
        return self.state

    def snapshot(self) -> dict[str, Any]:
        return state_to_document(self.state, self._cipher)

    def mark_dirty(self) -> None:
        self._pending = True
        self._dirty.set()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.start()

    def start(self) -> None:
        if self._closing:
            return
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        # Stopped through the closing flag, never cancelled: wait_for may
        # swallow a cancel that races with the event being set.
        while not self._closing:
            await self._dirty.wait()
            self._dirty.clear()
            while not self._closing:
                try:
                    await asyncio.wait_for(self._dirty.wait(), timeout=self._debounce)
                except asyncio.TimeoutError:
                    break
                self._dirty.clear()
            if not self._pending:
                continue
            try:
                await self._write()
            except OSError:
                self._logger.exception("State write failed: %s", self._path)

    async def _write(self) -> None:
        self._pending = False
        doc = self.snapshot()
        await asyncio.to_thread(atomic_write_json, self._path, doc)
        self.write_count += 1
        self._logger.debug("State written: %s", self._path)

    async def flush(self) -> None:
        self._dirty.clear()
        await self._write()

    async def close(self) -> None:
        self._closing = True
        self._dirty.set()
        if self._writer is not None:
            await self._writer
            self._writer = None
        if self._pending:
            await self.flush()
