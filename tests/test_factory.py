from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from switchboard.config import LlmLoggingConfig, ProviderConfig
from switchboard.core.adapters.anthropic import AnthropicAdapter
from switchboard.core.adapters.mock import MockAdapter, MockBehavior
from switchboard.core.adapters.openai import OpenAIAdapter
from switchboard.core.errors import ConfigurationError, MissingCredentialError
from switchboard.core.message import GenerateRequest
from switchboard.core.rate_limiter import ModelRateLimiter
from switchboard.factory import ProviderFactory
from switchboard.transcript import LoggedProvider

from tests.fixtures.http_fake import ScriptedTransport, json_response


def _factory(tmp_path: Path, environ: dict[str, str], **kwargs) -> ProviderFactory:
    return ProviderFactory(cache_dir=tmp_path, environ=environ, **kwargs)


def test_unpinned_provider_prefers_openrouter(tmp_path: Path):
    factory = _factory(tmp_path, {"OPENAI_API_KEY": "sk-openai", "OPENROUTER_API_KEY": "sk-or"})

    adapter = factory.create(ProviderConfig())

    assert isinstance(adapter, OpenAIAdapter)
    assert adapter.provider_name == "openrouter"
    assert adapter.model == "openai/gpt-4o-mini"
    assert adapter.preferences is not None
    assert adapter.preferences.path == tmp_path / "openrouter_endpoint_cache.json"


def test_unpinned_provider_falls_through_to_anthropic(tmp_path: Path):
    factory = _factory(tmp_path, {"OPENROUTER_API_KEY": " ", "ANTHROPIC_API_KEY": "sk-ant"})

    assert factory.resolve_provider(ProviderConfig(provider="default")) == "anthropic"
    assert isinstance(factory.create(ProviderConfig()), AnthropicAdapter)


def test_missing_credentials_name_every_variable(tmp_path: Path):
    factory = _factory(tmp_path, {})

    with pytest.raises(MissingCredentialError) as excinfo:
        factory.create(ProviderConfig())

    assert excinfo.value.var_name == "OPENROUTER_API_KEY"
    assert excinfo.value.alternatives == ("OPENAI_API_KEY", "ANTHROPIC_API_KEY")
    assert "OPENAI_API_KEY" in str(excinfo.value)


def test_pinned_provider_without_key_fails_at_construction(tmp_path: Path):
    factory = _factory(tmp_path, {"OPENROUTER_API_KEY": "sk-or"})

    with pytest.raises(MissingCredentialError, match="ANTHROPIC_API_KEY"):
        factory.create(ProviderConfig(provider="anthropic", api_key="env"))


def test_unknown_provider_is_rejected(tmp_path: Path):
    factory = _factory(tmp_path, {})

    with pytest.raises(ConfigurationError, match="unknown provider 'azure'"):
        factory.create(ProviderConfig(provider="azure"))


def test_unpinned_explicit_key_routes_to_openrouter(tmp_path: Path):
    scripted = ScriptedTransport(
        [json_response({"choices": [{"index": 0, "message": {"role": "assistant", "content": "ok"}}]})]
    )
    factory = _factory(tmp_path, {}, transport=scripted.transport)

    adapter = factory.create(ProviderConfig(api_key="sk-or-explicit"))

    assert isinstance(adapter, OpenAIAdapter)
    assert adapter.provider_name == "openrouter"
    assert adapter.model == "openai/gpt-4o-mini"
    result = asyncio.run(adapter.generate(GenerateRequest.from_prompt("hi")))
    assert result.text == "ok"
    assert scripted.requests[0].headers["authorization"] == "Bearer sk-or-explicit"


def test_mock_needs_no_credentials_and_reads_profile(tmp_path: Path):
    factory = _factory(tmp_path, {"SWITCHBOARD_MOCK_STREAM_PROFILE": "thinking_then_answer"})

    adapter = factory.create(ProviderConfig(provider="mock"))

    assert isinstance(adapter, MockAdapter)
    assert adapter.profile.behavior is MockBehavior.THINKING_THEN_ANSWER
    assert adapter.rate_limiter is factory.rate_limiter


def test_adapters_share_limiter_and_cache(tmp_path: Path):
    limiter = ModelRateLimiter()
    factory = _factory(tmp_path, {"OPENAI_API_KEY": "sk-openai"}, rate_limiter=limiter)

    first = factory.create(ProviderConfig(provider="openai", model="gpt-4o"))
    second = factory.create(ProviderConfig(provider="openai", model="o1-mini"))

    assert first.preferences is second.preferences
    assert first._transport.rate_limiter is limiter
    assert second._transport.rate_limiter is limiter


def test_explicit_key_headers_and_base_url_reach_the_wire(tmp_path: Path):
    scripted = ScriptedTransport(
        [json_response({"choices": [{"index": 0, "message": {"role": "assistant", "content": "ok"}}]})]
    )
    factory = _factory(tmp_path, {}, transport=scripted.transport)
    config = ProviderConfig(
        provider="openrouter",
        api_key="sk-explicit",
        base_url="https://proxy.example.test/api/v1",
        headers={"X-Title": "switchboard", "Authorization": "Bearer hijack"},
    )

    result = asyncio.run(factory.create(config).generate(GenerateRequest.from_prompt("hi")))

    assert result.text == "ok"
    request = scripted.requests[0]
    assert str(request.url) == "https://proxy.example.test/api/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer sk-explicit"
    assert request.headers["x-title"] == "switchboard"


def test_enabled_transcript_wraps_adapters(tmp_path: Path):
    logging_config = LlmLoggingConfig(enabled=True, log_dir=tmp_path / "logs")
    factory = _factory(tmp_path, {}, logging_config=logging_config)

    adapter = factory.create(ProviderConfig(provider="mock", model="m"))

    assert isinstance(adapter, LoggedProvider)
    assert adapter.model == "m"
    assert factory.transcript() is adapter.transcript
    adapter.transcript.close()
