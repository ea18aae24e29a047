from aigate.adapters.base import FamilyAdapter
from aigate.adapters.claude import AnthropicVersionCache, ClaudeAdapter
from aigate.adapters.gemini import GeminiAdapter
from aigate.adapters.openai import OpenAIAdapter
from aigate.adapters.registry import AdapterRegistry
from aigate.http_client import RetryingClient
from aigate.models import Compat


def build_adapters(
    http: RetryingClient,
    versions: AnthropicVersionCache,
    media_timeout_sec: float = 60.0,
) -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(Compat.OPENAI, OpenAIAdapter(http, media_timeout_sec=media_timeout_sec))
    registry.register(Compat.GEMINI, GeminiAdapter(http, media_timeout_sec=media_timeout_sec))
    registry.register(Compat.CLAUDE, ClaudeAdapter(http, versions))
    return registry


__all__ = [
    "AdapterRegistry",
    "AnthropicVersionCache",
    "ClaudeAdapter",
    "FamilyAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "build_adapters",
]
