from __future__ import annotations

import html
import re
import unicodedata
from typing import Callable
from urllib.parse import urlsplit

from aigate.models import GatewayState, TelegraphPost
from aigate.storage import utc_now
from aigate.telegraph import TelegraphClient

MAX_MSG = 4096
PAGE_EXTRA = 48
WRAP_EXTRA_COLLAPSED = 64
MAX_TELEGRAPH_POSTS = 10

_INVISIBLE = re.compile(r"[\ufeff\ufffc\ufffe\uffff\u200b\u200c\u200d\u2060\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_URL = re.compile(r"\bhttps?://[^\s<>\"')}\]]+")
_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_BULLET_LINK = re.compile(r"^\s*-\s*\[([^\]]+)\]\((https?://[^\s)]+)\)\s*$")
_BLOCKQUOTE = re.compile(r"<blockquote(?:\s|>|/)", re.IGNORECASE)


def utf16_len(text: str) -> int:
    """Length as Telegram counts it, in UTF-16 code units."""
    return len(text.encode("utf-16-le")) // 2


def _cut_line(line: str, limit: int) -> list[str]:
    pieces: list[str] = []
    current: list[str] = []
    size = 0
    for char in line:
        width = 2 if ord(char) > 0xFFFF else 1
        if current and size + width > limit:
            pieces.append("".join(current))
            current = []
            size = 0
        current.append(char)
        size += width
    if current:
        pieces.append("".join(current))
    return pieces


def split_message(text: str, reserve: int = 0) -> list[str]:
    """Splits on line boundaries; only lines longer than the limit are cut.

    Sizes are UTF-16 code units. Line endings stay attached, so
    ``"".join(parts) == text``.
    """
    limit = max(2, MAX_MSG - max(0, reserve))
    if utf16_len(text) <= limit:
        return [text]
    parts: list[str] = []
    current = ""
    current_size = 0
    for line in text.splitlines(keepends=True):
        size = utf16_len(line)
        if size > limit:
            if current:
                parts.append(current)
                current = ""
                current_size = 0
            parts.extend(_cut_line(line, limit))
            continue
        if current_size + size > limit:
            parts.append(current)
            current = line
            current_size = size
        else:
            current += line
            current_size += size
    if current:
        parts.append(current)
    return parts


def page_header(index: int, total: int) -> str:
    return f"📄 ({index}/{total})\n\n"


def chunk(text: str, reserve_bytes: int = 0) -> list[str]:
    limit = max(1, MAX_MSG - max(0, reserve_bytes))
    if utf16_len(text) <= limit:
        return [text]
    parts = split_message(text, max(0, reserve_bytes) + PAGE_EXTRA)
    total = len(parts)
    return [page_header(i + 1, total) + part for i, part in enumerate(parts)]


def apply_wrap(text: str, collapse: bool) -> str:
    if not collapse or _BLOCKQUOTE.search(text):
        return text
    return f'<span class="tg-spoiler">{text}</span>'


def build_chunks(text: str, collapse: bool = False, postfix: str = "") -> list[str]:
    """Pages ``text`` for sending; ``postfix`` goes after the last page, outside any wrapper."""
    wrap_extra = WRAP_EXTRA_COLLAPSED if collapse else 0
    parts = split_message(text, PAGE_EXTRA + wrap_extra + utf16_len(postfix))
    if len(parts) == 1:
        return [apply_wrap(parts[0], collapse) + postfix]
    total = len(parts)
    chunks = []
    for i, part in enumerate(parts):
        body = apply_wrap(page_header(i + 1, total) + part, collapse)
        chunks.append(body + postfix if i == total - 1 else body)
    return chunks


def clean_text_basic(text: str) -> str:
    if not text:
        return ""
    cleaned = _INVISIBLE.sub("", text.replace("\r\n", "\n"))
    return unicodedata.normalize("NFKC", cleaned)


def shorten_url_for_display(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        parts = None
    if parts is None or not parts.hostname:
        return url[:45] + "…" + url[-10:] if len(url) > 60 else url
    path = parts.path if parts.path and parts.path != "/" else ""
    text = parts.hostname + path
    if len(text) > 60:
        text = text[:45] + "…" + text[-10:]
    return text or url


def _anchor(url: str, label: str) -> str:
    return f'<a href="{html.escape(url)}">{label}</a>'


def _format_inline(text: str) -> str:
    out = []
    cursor = 0
    for match in _URL.finditer(text):
        out.append(_BOLD.sub(r"<b>\1</b>", html.escape(text[cursor : match.start()])))
        url = match.group(0)
        out.append(_anchor(url, html.escape(shorten_url_for_display(url))))
        cursor = match.end()
    out.append(_BOLD.sub(r"<b>\1</b>", html.escape(text[cursor:])))
    return "".join(out)


def escape_and_format(raw: str) -> str:
    """Turns model output into Telegram HTML.

    Handles ``**bold**``, ``- [title](url)`` source bullets, bare URLs and
    ``> quote`` lines. Everything else is escaped.
    """
    lines = []
    for line in clean_text_basic(raw).split("\n"):
        bullet = _BULLET_LINK.match(line)
        if bullet:
            lines.append("• " + _anchor(bullet.group(2), _format_inline(bullet.group(1))))
        elif line.startswith(">") and line[1:].strip():
            lines.append(f"<blockquote>{_format_inline(line[1:].lstrip())}</blockquote>")
        else:
            lines.append(_format_inline(line))
    return "\n".join(lines)


def format_qa(question: str, answer: str, collapse: bool = False) -> str:
    attr = " expandable" if collapse else ""
    q = f"<b>Q:</b>\n<blockquote{attr}>{escape_and_format(question)}</blockquote>"
    a = f"<b>A:</b>\n<blockquote{attr}>{escape_and_format(answer)}</blockquote>"
    return f"{q}\n\n{a}"


def footer(model: str, extra: str = "") -> str:
    lowered = model.lower()
    if "claude" in lowered:
        source = "Anthropic Claude"
    elif "gemini" in lowered:
        source = "Google Gemini"
    else:
        source = "OpenAI"
    suffix = f" {extra}" if extra else ""
    return f"\n\n<i>Powered by {source}{suffix}</i>"


class OutputFormatter:
    def __init__(
        self,
        state: Callable[[], GatewayState],
        telegraph: TelegraphClient | None = None,
        on_change: Callable[[], None] | None = None,
        page_title: str = "AI answer",
    ) -> None:
        self._state = state
        self._telegraph = telegraph
        self._on_change = on_change
        self._page_title = page_title

    def _should_publish(self, formatted: str) -> bool:
        tg = self._state().telegraph
        return self._telegraph is not None and tg.enabled and tg.limit > 0 and len(formatted) > tg.limit

    async def render(self, question: str, answer: str, model: str, extra: str = "") -> list[str]:
        state = self._state()
        postfix = footer(model, extra)
        full = format_qa(question, answer, state.collapse)
        if self._should_publish(full):
            url = await self._telegraph.create_page(self._page_title, answer)
            if url:
                self._record_post(question, url)
                link = f'📰 <a href="{html.escape(url)}">Answer is long, published to Telegraph</a>'
                return build_chunks(link, state.collapse, postfix)
        return build_chunks(full, state.collapse, postfix)

    def _record_post(self, question: str, url: str) -> None:
        posts = self._state().telegraph.posts
        posts.insert(0, TelegraphPost(title=question[:30] or "AI", url=url, created_at=utc_now()))
        del posts[MAX_TELEGRAPH_POSTS:]
        if self._on_change:
            self._on_change()
