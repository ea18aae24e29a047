from __future__ import annotations

from pathlib import Path

import httpx
from telegram.ext import Application, ApplicationBuilder, CommandHandler

from aigate.config import AppConfig
from aigate.gateway import AIGateway
from aigate.handlers.commands import handle_ai
from aigate.history import HistoryLimits
from aigate.http_client import RetryingClient
from aigate.runtime import RuntimeContext
from aigate.security import KeyCipher
from aigate.storage import StateStore
from aigate.telegraph import TelegraphClient


def register_handlers(application: Application) -> None:
    application.add_handler(CommandHandler("ai", handle_ai))


def build_application(config: AppConfig, runtime: RuntimeContext) -> Application:
    application = ApplicationBuilder().token(config.telegram_bot_token).build()
    application.bot_data.update(runtime.to_bot_data())
    register_handlers(application)
    return application


def build_runtime(
    config: AppConfig,
    *,
    base_dir: Path | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RuntimeContext:
    state_path = Path(config.state_path).expanduser()
    if not state_path.is_absolute():
        state_path = ((base_dir or Path.cwd()) / state_path).resolve()

    cipher = KeyCipher(config.encryption_key) if config.encryption_key else None
    store = StateStore(state_path, cipher=cipher, debounce_sec=config.persist_debounce_sec)
    store.load()

    http = RetryingClient(
        httpx.AsyncClient(transport=transport, follow_redirects=True),
        retries=config.llm_retries,
        backoff_sec=config.llm_backoff_sec,
        chat_timeout_sec=config.llm_chat_timeout_sec,
        media_timeout_sec=config.llm_media_timeout_sec,
        default_timeout_sec=config.llm_default_timeout_sec,
    )
    telegraph = TelegraphClient(
        http,
        lambda: store.state.telegraph,
        store.mark_dirty,
        short_name=config.telegraph_short_name,
        author_name=config.telegraph_author_name,
    )
    gateway = AIGateway(
        store,
        http,
        history_limits=HistoryLimits(
            max_turns=config.history_max_turns,
            max_session_bytes=config.history_max_session_bytes,
            max_sessions=config.history_max_sessions,
            max_total_bytes=config.history_max_total_bytes,
        ),
        max_tokens=config.llm_max_tokens,
        tts_voice=config.tts_voice,
        telegraph=telegraph,
        media_timeout_sec=config.llm_media_timeout_sec,
        page_title=config.telegraph_page_title,
    )
    return RuntimeContext(store=store, http=http, gateway=gateway, owner_user_id=config.owner_user_id)
