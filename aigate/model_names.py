from __future__ import annotations

import re
from typing import Any

from aigate.models import Compat

_CLAUDE = re.compile(r"\bclaude\b|anthropic")
_GEMINI = re.compile(r"\bgemini\b|^gemini-|image-generation")
_OPENAI = re.compile(r"^gpt-|gpt-4o|gpt-image|dall-e|^tts-1\b|\bo[1-9](?:-|\b)")


def detect_compat(model: str) -> Compat:
    name = (model or "").lower()
    if _CLAUDE.search(name):
        return Compat.CLAUDE
    if _GEMINI.search(name):
        return Compat.GEMINI
    if _OPENAI.search(name):
        return Compat.OPENAI
    return Compat.OPENAI


def is_specific_family(model: str) -> Compat | None:
    """Return gemini/claude when the name alone pins the family, else None."""
    guess = detect_compat(model)
    return guess if guess in (Compat.GEMINI, Compat.CLAUDE) else None


def normalize_model_name(item: Any) -> str:
    if isinstance(item, dict):
        value = item.get("id") or item.get("slug") or item.get("name") or ""
    else:
        value = item or ""
    name = str(value).strip()
    name = name.split("?", 1)[0].split("#", 1)[0]
    if "/" in name:
        name = name.rsplit("/", 1)[-1] or name
    return name.strip()


def parse_model_list(data: Any) -> list[str]:
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        items = data.get("data") or data.get("models") or []
    else:
        items = []
    names = [normalize_model_name(item) for item in items]
    return [name for name in names if name]
