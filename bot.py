from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from telegram import BotCommand, BotCommandScopeChat, Update

from aigate.app_factory import build_application, build_runtime
from aigate.config import load_config, load_dotenv


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger("bot")


async def main() -> None:
    base_dir = Path(__file__).resolve().parent
    env_values = load_dotenv(base_dir / ".env")
    config = load_config(base_dir / "config.json", env_values)
    runtime = build_runtime(config, base_dir=base_dir)
    application = build_application(config, runtime)

    try:
        await application.initialize()
        await application.bot.set_my_commands(
            [BotCommand("ai", "Chat, search, image and speech through configured AI providers")],
            scope=BotCommandScopeChat(chat_id=config.owner_user_id),
        )
        await application.start()
        await application.updater.start_polling(allowed_updates=Update.ALL_TYPES)
        me = await application.bot.get_me()
        logger.info(
            "AI gateway bot started as @%s providers=%s state=%s",
            me.username,
            len(runtime.store.state.providers),
            runtime.store.path,
        )
        await asyncio.Event().wait()
    finally:
        await runtime.aclose()
        if application.updater and application.updater.running:
            await application.updater.stop()
        if application.running:
            await application.stop()
        await application.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
