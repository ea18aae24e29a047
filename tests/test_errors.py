from __future__ import annotations

import httpx

from aigate.errors import (
    AuthError,
    ConfigurationError,
    RouteError,
    TransientNetworkError,
    UpstreamError,
    describe_error,
    error_from_http,
    is_route_error,
    response_message,
)


def _status_error(status: int, **kwargs) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://vendor.test/v1/chat/completions")
    response = httpx.Response(status, request=request, **kwargs)
    return httpx.HTTPStatusError("failed", request=request, response=response)


class TestResponseMessage:
    def test_nested_error_message(self):
        assert response_message(httpx.Response(400, json={"error": {"message": "bad model"}})) == "bad model"

    def test_plain_text_body(self):
        assert response_message(httpx.Response(502, text="upstream down")) == "upstream down"


class TestClassification:
    def test_auth_statuses(self):
        for status in (401, 403):
            error = error_from_http(_status_error(status, json={"error": "nope"}), "openai", "gpt-4o")
            assert isinstance(error, AuthError)
            assert error.status == status

    def test_route_statuses(self):
        assert isinstance(error_from_http(_status_error(404), "gemini", "m"), RouteError)
        assert is_route_error(_status_error(405))
        assert is_route_error(_status_error(400, text="Unknown path /v1beta"))
        assert not is_route_error(_status_error(400, text="max_tokens too large"))

    def test_other_statuses_are_upstream_errors(self):
        error = error_from_http(_status_error(500, json={"message": "boom"}), "claude", "claude-3")
        assert type(error) is UpstreamError
        assert str(error) == "adapter=claude model=claude-3 status=500 message=boom"

    def test_network_errors(self):
        request = httpx.Request("GET", "https://vendor.test")
        error = error_from_http(httpx.ConnectError("refused", request=request), "openai", "gpt-4o")
        assert isinstance(error, TransientNetworkError)
        assert error.status is None

    def test_gateway_errors_pass_through(self):
        original = ConfigurationError("no key")
        assert error_from_http(original, "openai", "gpt-4o") is original


class TestDescribeError:
    def test_upstream_error_with_hint(self):
        error = error_from_http(_status_error(401, json={"error": {"message": "invalid key"}}), "openai", "gpt-4o")

        assert describe_error(error, "chat") == (
            "invalid key | authentication failed, check the API key and its permissions | HTTP 401 (chat: openai, gpt-4o)"
        )

    def test_configuration_error_is_plain(self):
        assert describe_error(ConfigurationError("No chat model configured"), "chat") == "No chat model configured (chat)"

    def test_network_error_hint(self):
        error = TransientNetworkError("down", adapter="gemini")
        assert describe_error(error) == "down | network failure, check connectivity or the base URL (gemini)"

    def test_plain_exception(self):
        assert describe_error(RuntimeError("odd")) == "odd"
