from __future__ import annotations

import html
import logging

from telegram import Message, Update
from telegram.constants import ChatType
from telegram.error import BadRequest
from telegram.ext import ContextTypes

from aigate.errors import ConfigurationError, GatewayError, describe_error
from aigate.formatting import build_chunks, footer, shorten_url_for_display
from aigate.model_picker import bucket_models
from aigate.models import KINDS, Compat
from aigate.runtime import RuntimeContext
from aigate.transport import send_audio, send_chunks, send_image

logger = logging.getLogger("bot")

ALIASES = {
    "s": "search",
    "img": "image",
    "i": "image",
    "v": "tts",
    "a": "audio",
    "sa": "searchaudio",
    "ctx": "context",
    "fold": "collapse",
    "cfg": "config",
    "c": "config",
    "m": "model",
    "tg": "telegraph",
    "h": "help",
}
SUBCOMMANDS = (
    "chat",
    "search",
    "image",
    "tts",
    "audio",
    "searchaudio",
    "config",
    "model",
    "context",
    "collapse",
    "telegraph",
    "help",
)

HELP_TEXT = """<b>AI gateway</b>
One command for OpenAI, Gemini and Claude compatible providers.

<code>/ai [question]</code> or <code>/ai chat [question]</code> - chat (reply to a photo to ask about it)
<code>/ai search [query]</code> - chat with web search
<code>/ai image [prompt]</code> - generate an image
<code>/ai tts [text]</code> - text to speech
<code>/ai audio [question]</code>, <code>/ai searchaudio [query]</code> - spoken answer

<code>/ai config status|list</code>
<code>/ai config add &lt;name&gt; &lt;api_key&gt; &lt;base_url&gt;</code>
<code>/ai config update &lt;name&gt; apikey|baseurl &lt;value&gt;</code>
<code>/ai config remove &lt;name&gt;|all</code>
<code>/ai config model &lt;name&gt;</code> - list provider models

<code>/ai model list|default|auto</code>
<code>/ai model chat|search|image|tts &lt;provider&gt; &lt;model&gt; [openai|gemini|claude]</code>

<code>/ai context on|off|show|del</code>
<code>/ai collapse on|off</code>
<code>/ai telegraph on|off|limit &lt;n&gt;|list|del &lt;n|all&gt;</code>"""


def parse_command(args: list[str]) -> tuple[str, list[str]]:
    """Maps ``/ai`` arguments to a subcommand; unknown first words are a chat question."""
    if not args:
        return "help", []
    first = args[0].lower()
    name = ALIASES.get(first, first)
    if name in SUBCOMMANDS:
        return name, args[1:]
    return "chat", args


def parse_model_args(args: list[str]) -> tuple[str, str, str | None]:
    if len(args) < 2:
        raise ConfigurationError("Usage: /ai model <kind> <provider> <model> [openai|gemini|claude]")
    provider = args[0]
    rest = args[1:]
    compat = Compat.parse(rest[-1]) if len(rest) > 1 else None
    if compat is not None:
        rest = rest[:-1]
    return provider, " ".join(rest).strip(), compat.value if compat else None


def _session_id(message: Message) -> str:
    return str(message.chat_id)


async def _drop_secret(message: Message) -> None:
    try:
        await message.delete()
    except BadRequest:
        logger.warning("Could not delete message with an API key chat_id=%s", message.chat_id)


def _reply_id(message: Message) -> int | None:
    return message.reply_to_message.message_id if message.reply_to_message else None


async def _reply(context: ContextTypes.DEFAULT_TYPE, message: Message, text: str, collapse: bool = False) -> None:
    await send_chunks(context.bot, message.chat_id, build_chunks(text, collapse))


def _question(message: Message, args: list[str]) -> str:
    text = " ".join(args).strip()
    if text:
        return text
    replied = message.reply_to_message
    if replied is None:
        return ""
    return (replied.text or replied.caption or "").strip()


async def _replied_photo(message: Message) -> bytes | None:
    replied = message.reply_to_message
    if replied is None or not replied.photo:
        return None
    file = await replied.photo[-1].get_file()
    return bytes(await file.download_as_bytearray())


def _selectors_text(runtime: RuntimeContext) -> str:
    gateway = runtime.gateway
    lines = []
    for kind in KINDS:
        selector = gateway.state.selectors.get(kind)
        if selector is None:
            lines.append(f"<b>{kind}:</b> <code>(not set)</code>")
            continue
        compat = gateway.resolver.peek(selector.provider, selector.model)
        lines.append(f"<b>{kind}:</b> <code>{html.escape(selector.label)}</code> ({compat.value})")
    return "\n".join(lines)


def _storage_text(runtime: RuntimeContext) -> str:
    gateway = runtime.gateway
    catalog_size = len(gateway.state.catalog.map)
    updated = gateway.catalog.updated_at or "never"
    sessions = len(gateway.history.sessions())
    kib = gateway.history.total_bytes() / 1024
    return (
        f"• Catalog: {catalog_size} models (updated {html.escape(updated)})\n"
        f"• History: {sessions} sessions, {kib:.1f} KiB"
    )


def _providers_text(runtime: RuntimeContext) -> str:
    lines = []
    for name, provider in runtime.gateway.state.providers.items():
        key_mark = "✅" if provider.api_key else "❌"
        display = html.escape(shorten_url_for_display(provider.base_url))
        lines.append(
            f'• <b>{html.escape(name)}</b> - key:{key_mark} base:<a href="{html.escape(provider.base_url)}">{display}</a>'
        )
    return "\n".join(lines) or "(none)"


async def _handle_config(context: ContextTypes.DEFAULT_TYPE, message: Message, runtime: RuntimeContext, args: list[str]) -> None:
    if message.chat.type != ChatType.PRIVATE:
        await _reply(context, message, "❌ Provider settings are only available in a private chat")
        return
    gateway = runtime.gateway
    action = args[0].lower() if args else "status"
    if action == "status":
        state = gateway.state
        telegraph = state.telegraph
        flags = "\n".join(
            [
                f"• Context: {'on' if state.context_enabled else 'off'}",
                f"• Collapse: {'on' if state.collapse else 'off'}",
                f"• Telegraph: {'on' if telegraph.enabled else 'off'}"
                + (f" (limit {telegraph.limit})" if telegraph.enabled and telegraph.limit else ""),
            ]
        )
        text = (
            f"⚙️ <b>AI settings</b>\n\n<b>Models</b>\n{_selectors_text(runtime)}\n\n"
            f"<b>Switches</b>\n{flags}\n\n<b>Providers</b>\n{_providers_text(runtime)}\n\n"
            f"<b>Storage</b>\n{_storage_text(runtime)}"
        )
        await _reply(context, message, text)
        return
    if action == "list":
        await _reply(context, message, f"📦 <b>Providers</b>\n\n{_providers_text(runtime)}")
        return
    if action == "add":
        if len(args) < 4:
            raise ConfigurationError("Usage: /ai config add <name> <api_key> <base_url>")
        provider = gateway.add_provider(args[1], args[2], args[3])
        await _drop_secret(message)
        await _reply(context, message, f"✅ Provider <b>{html.escape(provider.name)}</b> saved")
        return
    if action == "update":
        if len(args) < 4:
            raise ConfigurationError("Usage: /ai config update <name> apikey|baseurl <value>")
        gateway.update_provider(args[1], args[2], " ".join(args[3:]).strip())
        if args[2].lower() == "apikey":
            await _drop_secret(message)
        await _reply(context, message, f"✅ Updated <code>{html.escape(args[2])}</code> of <b>{html.escape(args[1])}</b>")
        return
    if action == "remove":
        if len(args) < 2:
            raise ConfigurationError("Usage: /ai config remove <name>|all")
        removed = gateway.remove_provider(args[1])
        await _reply(context, message, f"✅ Removed: {html.escape(', '.join(removed)) or '(none)'}")
        return
    if action == "model":
        if len(args) < 2:
            raise ConfigurationError("Usage: /ai config model <name>")
        result = await gateway.list_provider_models(args[1])
        if not result.models:
            await _reply(context, message, "❌ The provider does not answer any OpenAI, Gemini or Claude model listing")
            return
        buckets = bucket_models(result.models)
        sections = []
        for title, models in (("chat/search", buckets["chat"]), ("image", buckets["image"]), ("tts", buckets["tts"])):
            body = "\n".join("• " + html.escape(m) for m in models) or "(none)"
            sections.append(f"<b>{title}</b>:\n{body}")
        header = f"🧾 <b>{html.escape(args[1])}</b> models ({result.primary.value if result.primary else '?'})"
        await _reply(context, message, header + "\n\n" + "\n\n".join(sections))
        return
    raise ConfigurationError(f"Unknown config action: {action}")


async def _handle_model(context: ContextTypes.DEFAULT_TYPE, message: Message, runtime: RuntimeContext, args: list[str]) -> None:
    gateway = runtime.gateway
    action = args[0].lower() if args else "list"
    if action == "list":
        await _reply(context, message, f"⚙️ <b>Models</b>\n\n{_selectors_text(runtime)}")
        return
    if action == "default":
        gateway.clear_models()
        await _reply(context, message, "✅ Model selection cleared")
        return
    if action == "auto":
        await gateway.auto_assign_models()
        await _reply(context, message, f"✅ Models assigned\n\n{_selectors_text(runtime)}")
        return
    if action in KINDS:
        provider, model, compat = parse_model_args(args[1:])
        selector = gateway.set_model(action, provider, model, compat)
        suffix = f" (compat: {compat})" if compat else ""
        await _reply(context, message, f"✅ {action}: <code>{html.escape(selector.label)}</code>{suffix}")
        return
    raise ConfigurationError(f"Unknown model action: {action}")


async def _handle_context(context: ContextTypes.DEFAULT_TYPE, message: Message, runtime: RuntimeContext, args: list[str]) -> None:
    gateway = runtime.gateway
    action = args[0].lower() if args else ""
    session_id = _session_id(message)
    if action in ("on", "off"):
        gateway.set_context(action == "on")
        await _reply(context, message, f"✅ Context: {action}")
    elif action == "show":
        turns = gateway.history.read(session_id)
        text = "\n".join(f"{turn.role}: {html.escape(turn.content)}" for turn in turns)
        await _reply(context, message, text or "(empty)")
    elif action == "del":
        gateway.clear_history(session_id)
        await _reply(context, message, "✅ Context of this chat cleared")
    else:
        raise ConfigurationError("Usage: /ai context on|off|show|del")


async def _handle_telegraph(context: ContextTypes.DEFAULT_TYPE, message: Message, runtime: RuntimeContext, args: list[str]) -> None:
    gateway = runtime.gateway
    action = args[0].lower() if args else ""
    if action in ("on", "off"):
        gateway.set_telegraph(enabled=action == "on")
        await _reply(context, message, f"✅ Telegraph: {action}")
    elif action == "limit":
        try:
            limit = int(args[1]) if len(args) > 1 else 0
        except ValueError as exc:
            raise ConfigurationError(f"Invalid limit: {args[1]}") from exc
        gateway.set_telegraph(limit=limit)
        await _reply(context, message, f"✅ Telegraph limit: {gateway.state.telegraph.limit}")
    elif action == "list":
        lines = [
            f'{i}. <a href="{html.escape(post.url)}">{html.escape(post.title)}</a> {post.created_at}'
            for i, post in enumerate(gateway.telegraph_posts(), start=1)
        ]
        await _reply(context, message, "🧾 <b>Telegraph posts</b>\n\n" + ("\n".join(lines) or "(empty)"))
    elif action == "del":
        count = gateway.delete_telegraph_post(args[1] if len(args) > 1 else "")
        await _reply(context, message, f"✅ Deleted {count} post(s)")
    else:
        raise ConfigurationError("Usage: /ai telegraph on|off|limit <n>|list|del <n|all>")


async def _handle_ask(
    context: ContextTypes.DEFAULT_TYPE,
    message: Message,
    runtime: RuntimeContext,
    args: list[str],
    kind: str,
    spoken: bool = False,
) -> None:
    gateway = runtime.gateway
    question = _question(message, args)
    image = await _replied_photo(message) if not spoken else None
    if not question and image is None:
        raise ConfigurationError("Type a question or reply to a message")
    result = await gateway.request(kind, question, image=image, session_id=_session_id(message))
    extra = "with Search" if kind == "search" else ""
    if spoken:
        speech = await gateway.request("tts", result.text, session_id=_session_id(message))
        await send_audio(
            context.bot,
            message.chat_id,
            speech.data or b"",
            speech.mime,
            caption=footer(result.model, extra).strip(),
            reply_to_message_id=_reply_id(message),
        )
        return
    chunks = await gateway.render(question or "(image)", result, extra)
    await send_chunks(context.bot, message.chat_id, chunks, reply_to_message_id=_reply_id(message))


async def _handle_image(context: ContextTypes.DEFAULT_TYPE, message: Message, runtime: RuntimeContext, args: list[str]) -> None:
    prompt = _question(message, args)
    if not prompt:
        raise ConfigurationError("Type an image prompt")
    result = await runtime.gateway.request("image", prompt, session_id=_session_id(message))
    if result.data:
        caption = html.escape(prompt[:200]) + footer(result.model)
        await send_image(context.bot, message.chat_id, result.data, result.mime, caption, _reply_id(message))
        return
    await _reply(context, message, html.escape(result.text or "") or "❌ The model returned no image")


async def _handle_tts(context: ContextTypes.DEFAULT_TYPE, message: Message, runtime: RuntimeContext, args: list[str]) -> None:
    text = _question(message, args)
    if not text:
        raise ConfigurationError("Type the text to speak")
    result = await runtime.gateway.request("tts", text, session_id=_session_id(message))
    await send_audio(
        context.bot,
        message.chat_id,
        result.data or b"",
        result.mime,
        caption=footer(result.model).strip(),
        reply_to_message_id=_reply_id(message),
    )


async def handle_ai(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if not message or not update.effective_user:
        return
    runtime: RuntimeContext = context.application.bot_data["runtime"]
    if update.effective_user.id != runtime.owner_user_id:
        return
    name, args = parse_command(list(context.args or []))
    try:
        if name == "help":
            await _reply(context, message, HELP_TEXT)
        elif name == "config":
            await _handle_config(context, message, runtime, args)
        elif name == "model":
            await _handle_model(context, message, runtime, args)
        elif name == "context":
            await _handle_context(context, message, runtime, args)
        elif name == "collapse":
            enabled = bool(args) and args[0].lower() == "on"
            runtime.gateway.set_collapse(enabled)
            await _reply(context, message, f"✅ Collapse: {'on' if enabled else 'off'}")
        elif name == "telegraph":
            await _handle_telegraph(context, message, runtime, args)
        elif name == "image":
            await _handle_image(context, message, runtime, args)
        elif name == "tts":
            await _handle_tts(context, message, runtime, args)
        elif name in ("audio", "searchaudio"):
            await _handle_ask(context, message, runtime, args, "search" if name == "searchaudio" else "chat", spoken=True)
        else:
            await _handle_ask(context, message, runtime, args, name)
    except GatewayError as exc:
        logger.warning("/ai %s failed: %s", name, exc)
        await _reply(context, message, "❌ " + html.escape(describe_error(exc, name)))
