from __future__ import annotations

import asyncio
import json

import pytest
from cryptography.fernet import Fernet

from aigate.errors import ConfigurationError
from aigate.models import Compat, ModelSelector, Provider, Turn
from aigate.security import KeyCipher, is_sealed, redact
from aigate.storage import CURRENT_VERSION, StateStore, detect_version, migrate

V1_DOCUMENT = {
    "providers": {"acme": {"apiKey": "sk-1", "baseUrl": "https://api.acme.ai", "compatauth": "gemini"}},
    "models": {"chat": "acme gpt-4o-mini", "tts": {"provider": "acme", "model": "tts-1"}},
    "modelCompat": {"acme": {"House-Model": "claude"}},
    "histories": {"chat:1": [{"role": "user", "content": "hi"}]},
    "histMeta": {"chat:1": {"lastAt": "2024-01-01T00:00:00+00:00"}},
    "contextEnabled": True,
}


class TestMigration:
    def test_detects_legacy_layout(self):
        assert detect_version(V1_DOCUMENT) == 1
        assert detect_version({"dataVersion": 3, "modelSelectors": {}}) == 3

    def test_v1_is_upgraded_to_current(self):
        doc = migrate(V1_DOCUMENT)

        assert doc["dataVersion"] == CURRENT_VERSION
        assert doc["providers"]["acme"]["preferredCompat"] == "gemini"
        assert doc["modelSelectors"] == {
            "chat": {"provider": "acme", "model": "gpt-4o-mini"},
            "tts": {"provider": "acme", "model": "tts-1"},
        }
        assert doc["modelCatalog"]["map"] == {"house-model": "claude"}
        assert doc["historyMeta"] == {"chat:1": "2024-01-01T00:00:00+00:00"}
        assert doc["settings"]["contextEnabled"] is True
        assert "models" in V1_DOCUMENT

    @pytest.mark.asyncio
    async def test_load_migrates_and_rewrites(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps(V1_DOCUMENT), encoding="utf-8")
        store = StateStore(path, debounce_sec=0.01)

        state = store.load()
        await store.close()

        assert state.selectors["chat"] == ModelSelector("acme", "gpt-4o-mini")
        assert state.overrides == {"acme": {"house-model": Compat.CLAUDE}}
        assert state.providers["acme"].preferred_compat == Compat.GEMINI
        assert state.context_enabled is True
        assert json.loads(path.read_text(encoding="utf-8"))["dataVersion"] == CURRENT_VERSION


class TestPersistence:
    @pytest.mark.asyncio
    async def test_burst_of_changes_is_written_once(self, store):
        for i in range(20):
            store.state.selectors["chat"] = ModelSelector("acme", f"model-{i}")
            store.mark_dirty()
            await asyncio.sleep(0)
        await asyncio.sleep(0.2)

        assert store.write_count == 1
        saved = json.loads(store.path.read_text(encoding="utf-8"))
        assert saved["modelSelectors"]["chat"] == {"provider": "acme", "model": "model-19"}

    @pytest.mark.asyncio
    async def test_write_is_atomic(self, store):
        store.state.histories["s"] = [Turn("user", "hello")]
        await store.flush()

        assert not store.path.with_name(store.path.name + ".tmp").exists()
        assert json.loads(store.path.read_text(encoding="utf-8"))["histories"] == {
            "s": [{"role": "user", "content": "hello"}]
        }

    @pytest.mark.asyncio
    async def test_close_flushes_pending_changes(self, tmp_path):
        store = StateStore(tmp_path / "state.json", debounce_sec=10)
        store.state.collapse = True
        store.mark_dirty()

        await store.close()

        assert json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))["settings"]["collapse"] is True

    @pytest.mark.asyncio
    async def test_close_while_writer_is_debouncing(self, tmp_path):
        store = StateStore(tmp_path / "state.json", debounce_sec=10)
        store.mark_dirty()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        store.state.context_enabled = True
        store.mark_dirty()

        await asyncio.wait_for(store.close(), timeout=2)

        assert store.write_count == 1
        saved = json.loads(store.path.read_text(encoding="utf-8"))
        assert saved["settings"]["contextEnabled"] is True

    @pytest.mark.asyncio
    async def test_changes_after_close_do_not_restart_writer(self, store):
        await store.close()
        store.mark_dirty()

        await asyncio.wait_for(store.close(), timeout=2)

        assert store.write_count == 1

    def test_corrupt_file_is_moved_aside(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")

        state = StateStore(path).load()

        assert state.providers == {}
        assert (tmp_path / "state.json.corrupt").read_text(encoding="utf-8") == "{not json"
        assert not path.exists()

    def test_missing_file_starts_empty(self, tmp_path):
        state = StateStore(tmp_path / "nope.json").load()
        assert state.selectors == {}


class TestEncryption:
    @pytest.mark.asyncio
    async def test_keys_are_sealed_on_disk(self, tmp_path):
        cipher = KeyCipher(Fernet.generate_key().decode())
        path = tmp_path / "state.json"
        store = StateStore(path, cipher=cipher)
        store.state.providers["acme"] = Provider("acme", "sk-secret-value", "https://api.acme.ai")
        await store.flush()

        raw = json.loads(path.read_text(encoding="utf-8"))
        assert is_sealed(raw["providers"]["acme"]["apiKey"])
        assert "sk-secret-value" not in path.read_text(encoding="utf-8")

        reloaded = StateStore(path, cipher=cipher).load()
        assert reloaded.providers["acme"].api_key == "sk-secret-value"

    @pytest.mark.asyncio
    async def test_sealed_state_without_key_is_rejected(self, tmp_path):
        path = tmp_path / "state.json"
        store = StateStore(path, cipher=KeyCipher(Fernet.generate_key().decode()))
        store.state.providers["acme"] = Provider("acme", "sk-secret-value", "https://api.acme.ai")
        await store.flush()

        with pytest.raises(ConfigurationError):
            StateStore(path).load()

    def test_wrong_key_is_rejected(self):
        sealed = KeyCipher(Fernet.generate_key().decode()).seal("sk-1")
        with pytest.raises(ConfigurationError):
            KeyCipher(Fernet.generate_key().decode()).unseal(sealed)

    def test_redact(self):
        assert redact("sk-acme-123456789") == "sk-a…6789"
        assert redact("short") == "***"
        assert redact(None) == "***"
