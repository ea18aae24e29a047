from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Compat(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"
    CLAUDE = "claude"

    @classmethod
    def parse(cls, value: str | None) -> Compat | None:
        if isinstance(value, cls):
            return value
        if not value:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class AuthMethod(str, Enum):
    BEARER = "bearer"
    HEADER = "header"
    QUERY = "query"
    BASIC = "basic"


KINDS = ("chat", "search", "image", "tts")


@dataclass
class AuthConfig:
    method: AuthMethod
    api_key: str
    header_name: str | None = None
    param_name: str | None = None
    username: str | None = None
    password: str | None = None


@dataclass
class Provider:
    name: str
    api_key: str
    base_url: str
    preferred_compat: Compat | None = None
    auth_config: AuthConfig | None = None


@dataclass(frozen=True)
class ModelSelector:
    provider: str
    model: str

    @property
    def label(self) -> str:
        return f"{self.provider} {self.model}"


@dataclass
class Turn:
    role: str
    content: str

    @property
    def size(self) -> int:
        return len(f"{self.role}:{self.content}".encode("utf-8"))


@dataclass
class TelegraphPost:
    title: str
    url: str
    created_at: str


@dataclass
class TelegraphState:
    enabled: bool = False
    limit: int = 0
    token: str = ""
    posts: list[TelegraphPost] = field(default_factory=list)


@dataclass
class ModelCatalogState:
    map: dict[str, Compat] = field(default_factory=dict)
    updated_at: str | None = None


@dataclass
class GatewayState:
    providers: dict[str, Provider] = field(default_factory=dict)
    overrides: dict[str, dict[str, Compat]] = field(default_factory=dict)
    catalog: ModelCatalogState = field(default_factory=ModelCatalogState)
    selectors: dict[str, ModelSelector] = field(default_factory=dict)
    histories: dict[str, list[Turn]] = field(default_factory=dict)
    history_meta: dict[str, str] = field(default_factory=dict)
    telegraph: TelegraphState = field(default_factory=TelegraphState)
    context_enabled: bool = False
    collapse: bool = False


@dataclass(frozen=True)
class ImageResult:
    data: bytes | None = None
    text: str | None = None
    mime: str = "image/png"


@dataclass(frozen=True)
class AudioResult:
    data: bytes
    mime: str


@dataclass(frozen=True)
class GatewayResult:
    kind: str
    provider: str
    model: str
    compat: Compat
    text: str = ""
    data: bytes | None = None
    mime: str | None = None
