from __future__ import annotations

import re
from typing import Any

import httpx

_ROUTE_HINT = re.compile(r"unknown|not found|invalid path|no route")


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(
        self,
        message: str,
        *,
        adapter: str | None = None,
        model: str | None = None,
        status: int | None = None,
        upstream_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.adapter = adapter
        self.model = model
        self.status = status
        self.upstream_message = upstream_message or message


class ConfigurationError(GatewayError):
    """Raised when a provider, model or key is missing or invalid."""


class UpstreamError(GatewayError):
    """Raised when the vendor answered with an error payload."""


class AuthError(UpstreamError):
    """Raised when every auth attempt was rejected."""


class RouteError(UpstreamError):
    """Raised when the endpoint or API version does not exist upstream."""


class TransientNetworkError(GatewayError):
    """Raised when the retry budget is exhausted on network failures."""


def response_message(response: httpx.Response) -> str:
    try:
        body: Any = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    return response.text.strip() or response.reason_phrase


def is_route_error(exc: BaseException) -> bool:
    if isinstance(exc, RouteError):
        return True
    if not isinstance(exc, httpx.HTTPStatusError):
        return False
    status = exc.response.status_code
    if status in (404, 405):
        return True
    if status == 400:
        return bool(_ROUTE_HINT.search(exc.response.text.lower()))
    return False


def error_from_http(exc: BaseException, adapter: str, model: str) -> GatewayError:
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        upstream = response_message(exc.response)
        message = f"adapter={adapter} model={model} status={status} message={upstream}"
        if status in (401, 403):
            cls: type[GatewayError] = AuthError
        elif is_route_error(exc):
            cls = RouteError
        else:
            cls = UpstreamError
        return cls(message, adapter=adapter, model=model, status=status, upstream_message=upstream)
    if isinstance(exc, httpx.TransportError):
        upstream = str(exc) or exc.__class__.__name__
        return TransientNetworkError(
            f"adapter={adapter} model={model} status=network message={upstream}",
            adapter=adapter,
            model=model,
            upstream_message=upstream,
        )
    upstream = str(exc) or exc.__class__.__name__
    return UpstreamError(
        f"adapter={adapter} model={model} status=network message={upstream}",
        adapter=adapter,
        model=model,
        upstream_message=upstream,
    )


def _status_hint(status: int | None) -> str:
    if status in (401, 403):
        return "authentication failed, check the API key and its permissions"
    if status == 404:
        return "endpoint not found, check the base URL, compat type or provider routing"
    if status == 429:
        return "rate limited or quota exceeded, retry later"
    if status is not None and status >= 500:
        return "provider outage, retry later or switch provider"
    return ""


def describe_error(exc: BaseException, context: str | None = None) -> str:
    if isinstance(exc, ConfigurationError):
        text = str(exc)
        return f"{text} ({context})" if context else text
    status: int | None = None
    if isinstance(exc, GatewayError):
        status = exc.status
        raw = exc.upstream_message
        if exc.adapter:
            where = f"{exc.adapter}, {exc.model}" if exc.model else exc.adapter
            context = f"{context}: {where}" if context else where
    elif isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        raw = response_message(exc.response)
    else:
        raw = str(exc) or exc.__class__.__name__
    parts = [raw]
    if isinstance(exc, (TransientNetworkError, httpx.TransportError)):
        hint = "network failure, check connectivity or the base URL"
    else:
        hint = _status_hint(status)
    if hint:
        parts.append(hint)
    if status is not None:
        parts.append(f"HTTP {status}")
    text = " | ".join(parts)
    return f"{text} ({context})" if context else text
