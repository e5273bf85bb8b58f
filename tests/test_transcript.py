from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import pytest

from switchboard.config import LlmLoggingConfig
from switchboard.core.adapters.base import ProviderOptions
from switchboard.core.adapters.mock import MockAdapter, MockBehavior, MockProfile
from switchboard.core.errors import FirstTokenTimeoutError
from switchboard.core.message import GenerateRequest
from switchboard.transcript import LlmTranscript, LoggedProvider, summarize


@pytest.fixture
def transcript(tmp_path: Path):
    log = LlmTranscript(LlmLoggingConfig(enabled=True, log_dir=tmp_path / "llm"))
    yield log
    log.close()


def _entries(log: LlmTranscript) -> list[dict]:
    return [json.loads(line) for line in log.path.read_text(encoding="utf-8").splitlines()]


def test_summarize_collapses_whitespace_and_truncates():
    assert summarize("a\n  b\tc") == "a b c"
    summary = summarize("word " * 50, limit=20)
    assert len(summary) == 20
    assert summary.endswith("...")


def test_successful_call_logs_request_and_response(transcript: LlmTranscript):
    provider = LoggedProvider(MockAdapter(), transcript, provider="mock")
    request = GenerateRequest.from_prompt("x " * 200, system="sys")

    result = asyncio.run(provider.generate_streaming(request, lambda event: None))

    request_entry, response_entry = _entries(transcript)
    assert request_entry["kind"] == "request"
    assert request_entry["provider"] == "mock"
    assert request_entry["model"] == "mock-model"
    assert request_entry["streaming"] is True
    assert len(request_entry["prompt"]) == 100
    assert request_entry["prompt_chars"] == len(request.prompt_text())
    assert response_entry["kind"] == "response"
    assert response_entry["call_id"] == request_entry["call_id"]
    assert response_entry["response_chars"] == len(result.text)
    assert response_entry["output_tokens"] == result.usage.output_tokens


def test_full_prompts_are_logged_verbatim(tmp_path: Path):
    log = LlmTranscript(LlmLoggingConfig(enabled=True, log_dir=tmp_path, include_full_prompts=True))
    try:
        provider = LoggedProvider(MockAdapter(), log, provider="mock")
        asyncio.run(provider.generate(GenerateRequest.from_prompt("keep   this spacing")))
        assert _entries(log)[0]["prompt"] == "user: keep   this spacing"
        assert _entries(log)[0]["streaming"] is False
    finally:
        log.close()


def test_failures_are_logged_and_reraised(transcript: LlmTranscript):
    adapter = MockAdapter(
        profile=MockProfile(MockBehavior.NO_FIRST_CHUNK),
        options=ProviderOptions(first_token_timeout=0.05),
    )
    provider = LoggedProvider(adapter, transcript, provider="mock")

    with pytest.raises(FirstTokenTimeoutError):
        asyncio.run(provider.generate_streaming(GenerateRequest.from_prompt("hi"), lambda event: None))

    failure = _entries(transcript)[-1]
    assert failure["kind"] == "error"
    assert failure["error_kind"] == "first_token_timeout"
    assert failure["partial_chars"] == 0


def test_transcripts_on_one_directory_share_a_logger(tmp_path: Path):
    config = LlmLoggingConfig(enabled=True, log_dir=tmp_path / "llm")
    first = LlmTranscript(config)
    known = set(logging.Logger.manager.loggerDict)

    second = LlmTranscript(config)
    try:
        assert set(logging.Logger.manager.loggerDict) == known
        assert second._logger is first._logger
        assert len(second._logger.handlers) == 1

        second.log_request(provider="mock", model="m", request=GenerateRequest.from_prompt("hi"), streaming=False)
        assert len(_entries(second)) == 1
    finally:
        second.close()
