from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping


@dataclass(frozen=True)
class AppConfig:
    telegram_bot_token: str
    owner_user_id: int
    state_path: str
    encryption_key: str
    persist_debounce_sec: float
    llm_retries: int
    llm_backoff_sec: float
    llm_chat_timeout_sec: float
    llm_media_timeout_sec: float
    llm_default_timeout_sec: float
    llm_max_tokens: int | None
    tts_voice: str | None
    history_max_turns: int
    history_max_session_bytes: int
    history_max_sessions: int
    history_max_total_bytes: int
    telegraph_short_name: str
    telegraph_author_name: str
    telegraph_page_title: str


def load_dotenv(path: str | Path) -> dict[str, str]:
    env_path = Path(path)
    if not env_path.exists():
        return {}
    result: dict[str, str] = {}
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        if not key:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        result[key] = value
    return result


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = raw.get(name) or {}
    return value if isinstance(value, dict) else {}


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def load_config(path: str | Path, env: Mapping[str, str] | None = None) -> AppConfig:
    config_path = Path(path)
    raw: dict[str, Any] = json.loads(config_path.read_text(encoding="utf-8")) if config_path.exists() else {}
    env = env or {}
    llm_raw = _section(raw, "llm")
    history_raw = _section(raw, "history")
    storage_raw = _section(raw, "storage")
    telegraph_raw = _section(raw, "telegraph")

    token = str(env.get("TELEGRAM_BOT_TOKEN") or raw.get("telegram_bot_token") or "")
    if not token:
        raise ValueError("telegram_bot_token is not configured (config.json or TELEGRAM_BOT_TOKEN)")
    owner = env.get("OWNER_USER_ID") or raw.get("owner_user_id")
    if owner is None:
        raise ValueError("owner_user_id is not configured (config.json or OWNER_USER_ID)")

    return AppConfig(
        telegram_bot_token=token,
        owner_user_id=int(owner),
        state_path=str(storage_raw.get("path", "./data/ai_config.json")),
        encryption_key=str(env.get("STATE_ENCRYPTION_KEY") or storage_raw.get("encryption_key") or ""),
        persist_debounce_sec=float(storage_raw.get("debounce_sec", 0.3)),
        llm_retries=int(llm_raw.get("retries", 2)),
        llm_backoff_sec=float(llm_raw.get("backoff_sec", 0.5)),
        llm_chat_timeout_sec=float(llm_raw.get("chat_timeout_sec", 90)),
        llm_media_timeout_sec=float(llm_raw.get("media_timeout_sec", 60)),
        llm_default_timeout_sec=float(llm_raw.get("default_timeout_sec", 30)),
        llm_max_tokens=_optional_int(llm_raw.get("max_tokens")),
        tts_voice=llm_raw.get("tts_voice") or None,
        history_max_turns=int(history_raw.get("max_turns", 50)),
        history_max_session_bytes=int(history_raw.get("max_session_bytes", 64 * 1024)),
        history_max_sessions=int(history_raw.get("max_sessions", 200)),
        history_max_total_bytes=int(history_raw.get("max_total_bytes", 2 * 1024 * 1024)),
        telegraph_short_name=str(telegraph_raw.get("short_name", "aigate")),
        telegraph_author_name=str(telegraph_raw.get("author_name", "aigate")),
        telegraph_page_title=str(telegraph_raw.get("page_title", "AI answer")),
    )
