from __future__ import annotations

import asyncio

import httpx
import pytest

from switchboard.core.adapters.transport import (
    HttpTransport,
    error_from_response,
    merge_headers,
    suggested_parameter,
)
from switchboard.core.errors import (
    ParameterIncompatibleError,
    RateLimitedError,
    UpstreamError,
)
from switchboard.core.rate_limiter import ModelRateLimiter

from tests.fixtures.http_fake import FakeClock, ScriptedTransport, error_response, json_response


def _transport(scripted: ScriptedTransport, limiter: ModelRateLimiter, **kwargs) -> HttpTransport:
    return HttpTransport(
        "https://api.example.test/v1/",
        model="gpt-test",
        rate_limiter=limiter,
        headers={"Authorization": "Bearer sk-test"},
        transport=scripted.transport,
        **kwargs,
    )


def test_merge_headers_never_overrides_reserved_names() -> None:
    merged = merge_headers(
        {"Authorization": "Bearer real"},
        {"authorization": "Bearer fake", "X-Title": "demo"},
        None,
        {"Content-Type": "text/plain", "HTTP-Referer": "https://example.test"},
    )

    assert merged == {
        "Authorization": "Bearer real",
        "X-Title": "demo",
        "HTTP-Referer": "https://example.test",
    }


def test_unsupported_parameter_suggests_replacement() -> None:
    body = (
        '{"error": {"message": "Unsupported parameter: \'max_tokens\' is not supported with this model. '
        'Use \'max_completion_tokens\' instead.", "param": "max_tokens"}}'
    )

    error = error_from_response(400, body, model="o1-mini", shape="chat")

    assert isinstance(error, ParameterIncompatibleError)
    assert error.suggested_param == "max_completion_tokens"
    assert error.model == "o1-mini"
    assert error.shape == "chat"


def test_responses_only_message_suggests_max_output_tokens() -> None:
    body = '{"error": {"message": "This model is only supported in v1/responses and not in v1/chat/completions."}}'

    error = error_from_response(404, body)

    assert isinstance(error, ParameterIncompatibleError)
    assert error.suggested_param == "max_output_tokens"


def test_other_failures_become_upstream_errors() -> None:
    assert isinstance(error_from_response(429, "{}"), RateLimitedError)

    error = error_from_response(500, "internal failure")
    assert isinstance(error, UpstreamError)
    assert error.status == 500
    assert "internal failure" in str(error)

    ignored = error_from_response(400, '{"error": {"message": "Unsupported parameter: foo"}}', recognize_parameters=False)
    assert isinstance(ignored, UpstreamError)


def test_suggested_parameter_falls_back_to_named_token_parameter() -> None:
    message = "Unsupported parameter: 'max_tokens'. This model requires max_completion_tokens."
    assert suggested_parameter(message) == "max_completion_tokens"
    assert suggested_parameter("Unsupported parameter: 'logit_bias'") is None


def test_post_json_sends_auth_and_merged_metadata_headers(limiter: ModelRateLimiter) -> None:
    scripted = ScriptedTransport([json_response({"ok": True})])
    transport = _transport(scripted, limiter)

    document = asyncio.run(
        transport.post_json("/chat/completions", {"model": "gpt-test"}, extra_headers={"X-Trace": "abc"})
    )

    assert document == {"ok": True}
    request = scripted.requests[0]
    assert str(request.url) == "https://api.example.test/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer sk-test"
    assert request.headers["x-trace"] == "abc"
    assert scripted.bodies() == [{"model": "gpt-test"}]


def test_rate_limited_attempts_are_retried_after_backoff(fake_clock: FakeClock, limiter: ModelRateLimiter) -> None:
    scripted = ScriptedTransport(
        [
            error_response(429, "slow down"),
            error_response(429, "slow down"),
            json_response({"ok": True}),
        ]
    )
    transport = _transport(scripted, limiter)

    document = asyncio.run(transport.post_json("/chat/completions", {}))

    assert document == {"ok": True}
    assert len(scripted.requests) == 3
    assert len(fake_clock.sleeps) == 2
    assert fake_clock.sleeps[1] > fake_clock.sleeps[0]
    assert not limiter.is_in_backoff("gpt-test")
    assert limiter.snapshot("gpt-test").consecutive_429s == 0


def test_rate_limit_retries_are_bounded(limiter: ModelRateLimiter) -> None:
    scripted = ScriptedTransport([error_response(429, "slow down")] * 3)
    transport = _transport(scripted, limiter, max_rate_limit_retries=2)

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(transport.post_json("/chat/completions", {}))

    assert excinfo.value.status == 429
    assert len(scripted.requests) == 3


def test_transport_failures_map_to_upstream_error(limiter: ModelRateLimiter) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = _transport(ScriptedTransport([refuse]), limiter)

    with pytest.raises(UpstreamError, match="connection refused"):
        asyncio.run(transport.post_json("/chat/completions", {}))
