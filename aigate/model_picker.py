from __future__ import annotations

import re
from typing import Iterable

from aigate.models import KINDS, ModelSelector

FAMILY_ORDER = ("openai", "gemini", "claude", "other")

_IMAGE = re.compile(r"image|dall|sd|gpt-image")
_TTS = re.compile(r"tts|voice|audio\.speech|gpt-4o.*-tts|\b-tts\b")
_OPENAI_FAMILY = re.compile(r"(gpt-|dall-e|gpt-image|tts-1|gpt-4o|\bo[134](?:-|\b))")
_UNSTABLE = re.compile(r"preview|experimental|beta|dev|test|sandbox|staging")
_VERSION = re.compile(r"(\d+(?:\.\d+)?)")

LABEL_WEIGHTS = (
    (re.compile(r"\bultra\b"), 0.09),
    (re.compile(r"\bpro\b"), 0.08),
    (re.compile(r"\bopus\b"), 0.08),
    (re.compile(r"\bsonnet\b"), 0.07),
    (re.compile(r"\bflash\b"), 0.06),
    (re.compile(r"\bhaiku\b"), 0.03),
    (re.compile(r"\bnano\b|\blite\b|\bmini\b"), 0.02),
)

_POPULAR_NAMES = {
    "openai": (
        r"gpt-4o", r"gpt-4o-mini", r"gpt-4\.1", r"gpt-4\.1-mini", r"gpt-4-turbo", r"gpt-4",
        r"gpt-3\.5-turbo", r"gpt-image-1", r"tts-1", r"tts-1-hd", r"o3", r"o4-mini", r"o3-mini", r"o1",
    ),
    "claude": (
        r"claude-3\.7-sonnet", r"claude-3-7-sonnet", r"claude-3\.5-sonnet", r"claude-3-5-sonnet",
        r"claude-3\.5-haiku", r"claude-3-5-haiku", r"claude-3-opus", r"claude-3-sonnet",
        r"claude-3-haiku", r"claude-2\.1", r"claude-2",
    ),
    "gemini": (
        r"gemini-2\.5-pro", r"gemini-2\.5-flash", r"gemini-2\.5-flash-lite", r"gemini-2\.0-flash",
        r"gemini-1\.5-pro", r"gemini-1\.5-flash", r"gemini-1\.5-flash-8b", r"gemini-1\.0-pro",
        r"gemini-1\.0-pro-vision",
    ),
    "other": (
        r"deepseek-chat", r"deepseek-reasoner", r"deepseek-v3", r"deepseek-v3\.1", r"deepseek-r1",
        r"grok-2", r"grok-2-1212", r"grok-2-vision-1212", r"grok-1",
        r"llama-3\.1-405b-instruct", r"llama-3\.1-70b-instruct", r"llama-3-70b-instruct",
        r"llama-3\.1-8b-instruct", r"llama-3-8b-instruct", r"llama-3\.3-70b-instruct",
        r"mistral-large", r"mistral-large-2", r"mixtral-8x22b-instruct", r"mixtral-8x7b-instruct",
        r"qwen2\.5-72b-instruct", r"qwen2-72b-instruct", r"qwen2\.5-32b-instruct",
        r"qwen2\.5-7b-instruct", r"qwen2-7b-instruct", r"command-r\+", r"command-r-plus", r"command-r",
    ),
}
POPULAR_PATTERNS = {
    family: tuple(re.compile(rf"\b{name}\b") for name in names) for family, names in _POPULAR_NAMES.items()
}


def bucket_models(models: Iterable[str]) -> dict[str, list[str]]:
    buckets: dict[str, list[str]] = {kind: [] for kind in KINDS}
    for model in models:
        lowered = model.lower()
        if _IMAGE.search(lowered):
            buckets["image"].append(model)
        elif _TTS.search(lowered):
            buckets["tts"].append(model)
        else:
            buckets["chat"].append(model)
            buckets["search"].append(model)
    return buckets


def model_family(model: str) -> str:
    lowered = model.lower()
    if _OPENAI_FAMILY.search(lowered):
        return "openai"
    if "gemini" in lowered:
        return "gemini"
    if "claude" in lowered:
        return "claude"
    return "other"


def is_stable(model: str) -> bool:
    return not _UNSTABLE.search(model.lower())


def label_weight(model: str) -> float:
    return sum(weight for pattern, weight in LABEL_WEIGHTS if pattern.search(model))


def is_popular(model: str, family: str) -> bool:
    lowered = model.lower()
    return any(pattern.search(lowered) for pattern in POPULAR_PATTERNS.get(family, ()))


def version_score(model: str, family: str) -> float:
    lowered = model.lower()
    match = _VERSION.search(lowered)
    base = float(match.group(1)) if match else 0.0
    if "gpt-4o" in lowered:
        base = max(base, 4.01)
    if "tts-1" in lowered:
        base = max(base, 1.0)
    popularity = 0.5 if is_popular(lowered, family) else 0.0
    return base + label_weight(lowered) + popularity


def rank_candidates(family: str, models: list[str]) -> list[str]:
    popular = [m for m in models if is_popular(m, family)]
    pool = popular or models
    ordered = sorted(pool, key=lambda m: version_score(m, family), reverse=True)
    return [m for m in ordered if is_stable(m)] + [m for m in ordered if not is_stable(m)]


def pick_for_kind(
    kind: str,
    buckets_by_provider: dict[str, dict[str, list[str]]],
    anchor: str | None = None,
) -> ModelSelector | None:
    """Family first, then stability, then version and label weight; ``anchor`` is tried first."""
    names = list(buckets_by_provider)
    if anchor in buckets_by_provider:
        names = [anchor] + [name for name in names if name != anchor]
    for family in FAMILY_ORDER:
        for name in names:
            candidates = [m for m in buckets_by_provider[name].get(kind, []) if model_family(m) == family]
            if candidates:
                return ModelSelector(provider=name, model=rank_candidates(family, candidates)[0])
    return None


def pick_models(
    models_by_provider: dict[str, list[str]],
    anchor: str | None = None,
) -> dict[str, ModelSelector]:
    buckets = {name: bucket_models(models) for name, models in models_by_provider.items()}
    picked: dict[str, ModelSelector] = {}
    for kind in KINDS:
        selector = pick_for_kind(kind, buckets, anchor)
        if selector is not None:
            picked[kind] = selector
    return picked
