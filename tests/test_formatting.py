from __future__ import annotations

import json

import pytest

from aigate.formatting import (
    MAX_MSG,
    MAX_TELEGRAPH_POSTS,
    OutputFormatter,
    build_chunks,
    chunk,
    clean_text_basic,
    escape_and_format,
    footer,
    format_qa,
    page_header,
    shorten_url_for_display,
    split_message,
    utf16_len,
)
from aigate.models import GatewayState, TelegraphState
from aigate.telegraph import TelegraphClient, to_nodes


def _long_text(lines: int = 120, width: int = 99) -> str:
    return "".join(f"{i:03d}" + "w" * (width - 3) + "\n" for i in range(lines))


def _strip_header(part: str) -> str:
    assert part.startswith("📄 (")
    return part.split("\n\n", 1)[1]


class TestSplitMessage:
    def test_short_text_is_untouched(self):
        assert split_message("hello") == ["hello"]
        assert chunk("hello") == ["hello"]

    def test_pieces_concatenate_back(self):
        text = _long_text()
        parts = split_message(text)

        assert len(parts) > 1
        assert "".join(parts) == text
        assert all(len(part) <= MAX_MSG for part in parts)
        assert all(part.endswith("\n") for part in parts)

    def test_overlong_line_is_hard_split(self):
        parts = split_message("a" * 10000)
        assert [len(part) for part in parts] == [4096, 4096, 1808]

    def test_reserve_shrinks_the_budget(self):
        parts = split_message("b" * 5000, reserve=1000)
        assert [len(part) for part in parts] == [3096, 1904]

    def test_astral_characters_count_as_two_units(self):
        text = "😀" * 5000

        parts = split_message(text)

        assert [utf16_len(part) for part in parts] == [4096, 4096, 1808]
        assert "".join(parts) == text
        assert all(part.encode("utf-8") for part in parts)

    def test_odd_budget_never_splits_a_surrogate_pair(self):
        parts = split_message("x" + "😀" * 3000, reserve=1)

        assert [utf16_len(part) for part in parts] == [4095, 1906]
        assert parts[0].endswith("😀")


class TestChunk:
    def test_pages_carry_headers_and_fit(self):
        text = _long_text(200)
        pages = chunk(text)

        assert len(pages) >= 5
        assert pages[0].startswith(page_header(1, len(pages)))
        assert pages[-1].startswith(page_header(len(pages), len(pages)))
        assert all(utf16_len(page) <= MAX_MSG for page in pages)
        assert "".join(_strip_header(page) for page in pages) == text

    def test_emoji_pages_fit_in_utf16_units(self):
        text = "😀" * 5000
        pages = chunk(text)

        assert all(utf16_len(page) <= MAX_MSG for page in pages)
        assert "".join(_strip_header(page) for page in pages) == text


class TestBuildChunks:
    def test_single_chunk_spoiler_and_postfix(self):
        assert build_chunks("secret", collapse=True, postfix="!") == ['<span class="tg-spoiler">secret</span>!']

    def test_blockquote_is_never_wrapped(self):
        text = "<blockquote expandable>quoted</blockquote>"
        assert build_chunks(text, collapse=True) == [text]

    def test_postfix_only_on_last_chunk(self):
        postfix = footer("gpt-4o")
        chunks = build_chunks(_long_text(150), collapse=True, postfix=postfix)

        assert len(chunks) > 1
        assert chunks[-1].endswith("</span>" + postfix)
        assert not any(c.endswith(postfix) for c in chunks[:-1])
        assert all(c.startswith('<span class="tg-spoiler">📄 (') for c in chunks)
        assert all(utf16_len(c) <= MAX_MSG for c in chunks)

    def test_emoji_chunks_fit_with_postfix(self):
        postfix = footer("gpt-4o")
        chunks = build_chunks("😀" * 5000, collapse=True, postfix=postfix)

        assert len(chunks) == 3
        assert all(utf16_len(c) <= MAX_MSG for c in chunks)


class TestEscapeAndFormat:
    def test_bold_and_escaping(self):
        assert escape_and_format("**hi** <b>") == "<b>hi</b> &lt;b&gt;"

    def test_source_bullet(self):
        assert escape_and_format("- [Docs](https://example.com/a)") == '• <a href="https://example.com/a">Docs</a>'

    def test_bare_url_becomes_short_anchor(self):
        assert (
            escape_and_format("see https://example.com/path ok")
            == 'see <a href="https://example.com/path">example.com/path</a> ok'
        )

    def test_quote_line(self):
        assert escape_and_format("> quoted & more") == "<blockquote>quoted &amp; more</blockquote>"

    def test_invisible_characters_removed(self):
        assert clean_text_basic("a\u200bb\r\nc\ufeff") == "ab\nc"

    def test_long_url_display_is_shortened(self):
        url = "https://example.com/" + "a" * 100
        shown = shorten_url_for_display(url)
        assert len(shown) == 56
        assert shown.startswith("example.com/")
        assert "…" in shown

    def test_qa_layout(self):
        assert format_qa("q?", "a!", collapse=True) == (
            "<b>Q:</b>\n<blockquote expandable>q?</blockquote>\n\n<b>A:</b>\n<blockquote expandable>a!</blockquote>"
        )

    def test_footer_names_vendor(self):
        assert footer("claude-3-haiku") == "\n\n<i>Powered by Anthropic Claude</i>"
        assert footer("gemini-2.0-flash", "+ search") == "\n\n<i>Powered by Google Gemini + search</i>"
        assert footer("gpt-4o") == "\n\n<i>Powered by OpenAI</i>"


class FakeTelegraph:
    def __init__(self, url: str | None = "https://telegra.ph/answer-01") -> None:
        self.url = url
        self.pages: list[tuple[str, str]] = []

    async def create_page(self, title: str, text: str) -> str | None:
        self.pages.append((title, text))
        return self.url


def _formatter(telegraph=None, enabled=True, limit=50):
    state = GatewayState()
    state.telegraph.enabled = enabled
    state.telegraph.limit = limit
    changes: list[int] = []
    formatter = OutputFormatter(lambda: state, telegraph, on_change=lambda: changes.append(1), page_title="Answer")
    return state, formatter, changes


class TestOutputFormatter:
    @pytest.mark.asyncio
    async def test_short_answer_is_sent_inline(self):
        telegraph = FakeTelegraph()
        _, formatter, _ = _formatter(telegraph, limit=1000)

        chunks = await formatter.render("q", "a", "gpt-4o")

        assert chunks == [format_qa("q", "a") + footer("gpt-4o")]
        assert telegraph.pages == []

    @pytest.mark.asyncio
    async def test_long_answer_goes_to_telegraph(self):
        telegraph = FakeTelegraph()
        state, formatter, changes = _formatter(telegraph)

        chunks = await formatter.render("What is the meaning of life and everything?", "x" * 200, "claude-3")

        assert len(chunks) == 1
        assert 'href="https://telegra.ph/answer-01"' in chunks[0]
        assert chunks[0].endswith(footer("claude-3"))
        assert telegraph.pages == [("Answer", "x" * 200)]
        assert state.telegraph.posts[0].title == "What is the meaning of life an"
        assert changes == [1]

    @pytest.mark.asyncio
    async def test_post_list_is_capped_newest_first(self):
        telegraph = FakeTelegraph()
        state, formatter, _ = _formatter(telegraph)

        for i in range(MAX_TELEGRAPH_POSTS + 2):
            telegraph.url = f"https://telegra.ph/p-{i}"
            await formatter.render(f"question {i}", "y" * 100, "gpt-4o")

        posts = state.telegraph.posts
        assert len(posts) == MAX_TELEGRAPH_POSTS
        assert posts[0].url == "https://telegra.ph/p-11"
        assert posts[-1].url == "https://telegra.ph/p-2"

    @pytest.mark.asyncio
    async def test_publish_failure_falls_back_to_inline(self):
        telegraph = FakeTelegraph(url=None)
        state, formatter, _ = _formatter(telegraph)

        chunks = await formatter.render("q", "z" * 100, "gpt-4o")

        assert "z" * 100 in "".join(chunks)
        assert state.telegraph.posts == []

    @pytest.mark.asyncio
    async def test_disabled_telegraph_is_not_used(self):
        telegraph = FakeTelegraph()
        _, formatter, _ = _formatter(telegraph, enabled=False)

        await formatter.render("q", "z" * 100, "gpt-4o")

        assert telegraph.pages == []


class TestTelegraphClient:
    @pytest.mark.asyncio
    async def test_creates_account_once_and_publishes(self, vendor, http):
        vendor.json("POST", "/createAccount", {"ok": True, "result": {"access_token": "tok"}})
        vendor.json("POST", "/createPage", {"ok": True, "result": {"url": "https://telegra.ph/page"}})
        state = TelegraphState()
        changes: list[int] = []
        client = TelegraphClient(http, lambda: state, on_change=lambda: changes.append(1))

        assert await client.create_page("Title", "one\n\ntwo") == "https://telegra.ph/page"
        assert await client.create_page("Title", "three") == "https://telegra.ph/page"

        assert state.token == "tok"
        assert changes == [1]
        assert len(vendor.calls("POST", "/createAccount")) == 1
        page = vendor.calls("POST", "/createPage")[0]
        assert page.url.params["access_token"] == "tok"
        assert json.loads(page.url.params["content"]) == [
            {"tag": "p", "children": ["one"]},
            {"tag": "p", "children": ["two"]},
        ]

    @pytest.mark.asyncio
    async def test_failure_returns_none(self, vendor, http):
        vendor.json("POST", "/createAccount", {"ok": True, "result": {"access_token": "tok"}})
        vendor.json("POST", "/createPage", {"ok": False}, status=500)
        state = TelegraphState()
        client = TelegraphClient(http, lambda: state)

        assert await client.create_page("Title", "text") is None

    def test_nodes_keep_unicode(self):
        assert to_nodes("привет") == '[{"tag": "p", "children": ["привет"]}]'
