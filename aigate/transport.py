from __future__ import annotations

import html
import logging
from typing import Any

from telegram.constants import ParseMode
from telegram.error import BadRequest

from aigate.formatting import MAX_MSG, split_message, utf16_len

logger = logging.getLogger("transport")

_AUDIO_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/opus": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
}
_IMAGE_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


def _escaped_pieces(text: str) -> list[str]:
    # escaping grows a character to at most six (&quot;)
    pieces: list[str] = []
    for part in split_message(text):
        escaped = html.escape(part)
        if utf16_len(escaped) <= MAX_MSG:
            pieces.append(escaped)
        else:
            pieces.extend(html.escape(small) for small in split_message(part, MAX_MSG - MAX_MSG // 6))
    return pieces


async def send_html(bot: Any, chat_id: int, text: str, reply_to_message_id: int | None = None) -> None:
    try:
        await bot.send_message(
            chat_id=chat_id,
            text=text,
            parse_mode=ParseMode.HTML,
            reply_to_message_id=reply_to_message_id,
            disable_web_page_preview=True,
        )
    except BadRequest:
        logger.warning("HTML rejected by Telegram, resending escaped chat_id=%s", chat_id)
        for piece in _escaped_pieces(text):
            await bot.send_message(
                chat_id=chat_id,
                text=piece,
                parse_mode=ParseMode.HTML,
                reply_to_message_id=reply_to_message_id,
                disable_web_page_preview=True,
            )


async def send_chunks(
    bot: Any,
    chat_id: int,
    chunks: list[str],
    reply_to_message_id: int | None = None,
) -> int:
    sent = 0
    for chunk in chunks:
        if not chunk.strip():
            continue
        await send_html(bot, chat_id, chunk, reply_to_message_id=reply_to_message_id)
        sent += 1
    return sent


async def send_audio(
    bot: Any,
    chat_id: int,
    data: bytes,
    mime: str | None,
    caption: str | None = None,
    reply_to_message_id: int | None = None,
) -> None:
    base_mime = (mime or "").split(";")[0].strip().lower()
    ext = _AUDIO_EXTENSIONS.get(base_mime, "bin")
    if ext == "ogg":
        await bot.send_voice(
            chat_id=chat_id,
            voice=data,
            caption=caption,
            parse_mode=ParseMode.HTML,
            filename="speech.ogg",
            reply_to_message_id=reply_to_message_id,
        )
        return
    await bot.send_audio(
        chat_id=chat_id,
        audio=data,
        caption=caption,
        parse_mode=ParseMode.HTML,
        filename=f"speech.{ext}",
        reply_to_message_id=reply_to_message_id,
    )


async def send_image(
    bot: Any,
    chat_id: int,
    data: bytes,
    mime: str | None,
    caption: str | None = None,
    reply_to_message_id: int | None = None,
) -> None:
    ext = _IMAGE_EXTENSIONS.get((mime or "").lower(), "png")
    await bot.send_photo(
        chat_id=chat_id,
        photo=data,
        caption=caption,
        parse_mode=ParseMode.HTML,
        filename=f"image.{ext}",
        reply_to_message_id=reply_to_message_id,
    )
