from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field

from aigate.models import AuthConfig, AuthMethod, Compat, Provider

_QUERY_KEY_HOSTS = (
    "generativelanguage.googleapis.com",
    "aiplatform.googleapis.com",
    "aip.baidubce.com",
)


@dataclass(frozen=True)
class AuthAttempt:
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)

    def signature(self) -> str:
        return json.dumps({"h": self.headers, "p": self.params}, sort_keys=True)


def detect_auth_method(base_url: str) -> AuthMethod | None:
    url = (base_url or "").lower()
    if any(host in url for host in _QUERY_KEY_HOSTS):
        return AuthMethod.QUERY
    if "anthropic.com" in url:
        return AuthMethod.HEADER
    return None


def build_auth_headers(config: AuthConfig) -> dict[str, str]:
    if config.method == AuthMethod.BEARER:
        return {"Authorization": f"Bearer {config.api_key}"}
    if config.method == AuthMethod.HEADER:
        return {config.header_name or "X-API-Key": config.api_key}
    if config.method == AuthMethod.BASIC:
        raw = f"{config.username or config.api_key}:{config.password or ''}"
        return {"Authorization": "Basic " + base64.b64encode(raw.encode("utf-8")).decode("ascii")}
    return {}


def build_auth_params(config: AuthConfig) -> dict[str, str]:
    if config.method == AuthMethod.QUERY:
        return {config.param_name or "key": config.api_key}
    return {}


def _attempt(config: AuthConfig, extra_headers: dict[str, str]) -> AuthAttempt:
    return AuthAttempt(
        headers={**build_auth_headers(config), **extra_headers},
        params=build_auth_params(config),
    )


def _config_for(method: AuthMethod, api_key: str) -> AuthConfig:
    if method == AuthMethod.HEADER:
        return AuthConfig(method=method, api_key=api_key, header_name="x-api-key")
    if method == AuthMethod.QUERY:
        return AuthConfig(method=method, api_key=api_key, param_name="key")
    return AuthConfig(method=method, api_key=api_key)


def auth_attempts(
    provider: Provider,
    extra_headers: dict[str, str] | None = None,
    family: Compat | None = None,
) -> list[AuthAttempt]:
    extra = dict(extra_headers or {})
    if provider.auth_config:
        return [_attempt(provider.auth_config, extra)]
    detected = detect_auth_method(provider.base_url)
    if detected is not None:
        return [_attempt(_config_for(detected, provider.api_key), extra)]
    if family is not None:
        return [_attempt(_config_for(AuthMethod.BEARER, provider.api_key), extra)]
    return [
        _attempt(_config_for(method, provider.api_key), extra)
        for method in (AuthMethod.BEARER, AuthMethod.HEADER, AuthMethod.QUERY)
    ]


def gemini_auth_attempts(
    provider: Provider,
    extra_headers: dict[str, str] | None = None,
) -> list[AuthAttempt]:
    extra = dict(extra_headers or {})
    if provider.auth_config:
        return [_attempt(provider.auth_config, extra)]
    key = provider.api_key
    by_param = AuthAttempt(headers=dict(extra), params={"key": key})
    by_goog_header = AuthAttempt(headers={**extra, "x-goog-api-key": key})
    by_bearer = AuthAttempt(headers={**extra, "Authorization": f"Bearer {key}"})
    if provider.preferred_compat in (Compat.OPENAI, Compat.CLAUDE):
        ordered = [by_bearer, by_goog_header, by_param]
    else:
        ordered = [by_param, by_goog_header, by_bearer]
    seen: set[str] = set()
    result: list[AuthAttempt] = []
    for attempt in ordered:
        sig = attempt.signature()
        if sig in seen:
            continue
        seen.add(sig)
        result.append(attempt)
    return result
