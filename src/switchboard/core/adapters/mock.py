"""Deterministic offline adapter reproducing streaming timing pathologies."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import ConfigurationError
from ..message import GenerateRequest, Role
from ..rate_limiter import ModelRateLimiter
from ..sse import SseEventStream
from ..stream import EventCallback, GenerateResult, drain_stream, replay_result
from .base import ProviderOptions
from .openai import OpenAIChatNormalizer

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "SWITCHBOARD_MOCK_"
# stands in for "never" when a profile withholds chunks
SILENCE_SECONDS = 3600.0

_WORD_PATTERN = re.compile(r"\S+\s*")


class MockBehavior(str, Enum):
    SIMPLE = "simple"
    NO_FIRST_CHUNK = "no_first_chunk"
    STALL_AFTER_N = "stall_after_n"
    THINKING_THEN_ANSWER = "thinking_then_answer"
    TOOL_CALL = "tool_call"


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        msg = f"{ENV_PREFIX}{name} must be an integer, got {raw!r}"
        raise ConfigurationError(msg) from exc
    if value < 0:
        msg = f"{ENV_PREFIX}{name} must not be negative"
        raise ConfigurationError(msg)
    return value


@dataclass(frozen=True, slots=True)
class MockProfile:
    """Named behavior plus the numeric knobs that shape its timing."""

    behavior: MockBehavior = MockBehavior.SIMPLE
    stall_after_chunks: int = 3
    thinking_tokens: int = 5
    first_chunk_delay_ms: int = 0
    inter_chunk_delay_ms: int = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> MockProfile:
        """Read ``SWITCHBOARD_MOCK_*`` variables; unset variables keep defaults."""

        env = os.environ if environ is None else environ
        raw_behavior = (env.get(ENV_PREFIX + "STREAM_PROFILE") or MockBehavior.SIMPLE.value).strip().lower()
        try:
            behavior = MockBehavior(raw_behavior)
        except ValueError as exc:
            known = ", ".join(item.value for item in MockBehavior)
            msg = f"unknown mock stream profile {raw_behavior!r}; expected one of {known}"
            raise ConfigurationError(msg) from exc
        defaults = cls()
        return cls(
            behavior=behavior,
            stall_after_chunks=_env_int(env, "STALL_AFTER_CHUNKS", defaults.stall_after_chunks),
            thinking_tokens=_env_int(env, "THINKING_TOKENS", defaults.thinking_tokens),
            first_chunk_delay_ms=_env_int(env, "FIRST_CHUNK_DELAY_MS", defaults.first_chunk_delay_ms),
            inter_chunk_delay_ms=_env_int(env, "INTER_CHUNK_DELAY_MS", defaults.inter_chunk_delay_ms),
        )


def _frame(payload: Any) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode("utf-8")


def _text_frame(text: str) -> bytes:
    return _frame({"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}]})


def _answer_for(request: GenerateRequest) -> str:
    prompt = next(
        (message.text_content for message in reversed(request.messages) if message.role is Role.USER),
        "",
    )
    prompt = " ".join(prompt.split())
    if len(prompt) > 80:
        prompt = prompt[:77] + "..."
    return f"Mock answer to: {prompt}" if prompt else "Mock answer."


class MockAdapter:
    """Serve OpenAI-style SSE bytes from memory through the real stream pipeline.

    Chunks pass through the same timeout guard, SSE decoder and chat
    normalizer as network adapters, so timing profiles exercise the genuine
    deadline handling. Non-streaming calls fold the same stream.
    """

    def __init__(
        self,
        *,
        model: str = "mock-model",
        profile: MockProfile | None = None,
        options: ProviderOptions | None = None,
        rate_limiter: ModelRateLimiter | None = None,
    ) -> None:
        self.model = model
        self.profile = profile or MockProfile()
        self.options = options or ProviderOptions()
        self.rate_limiter = rate_limiter or ModelRateLimiter()

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        return await self._run(request, lambda event: None)

    async def generate_streaming(self, request: GenerateRequest, on_event: EventCallback) -> GenerateResult:
        if not self.options.enable_streaming:
            return await replay_result(await self.generate(request), on_event)
        return await self._run(request, on_event)

    async def _run(self, request: GenerateRequest, on_event: EventCallback) -> GenerateResult:
        await self.rate_limiter.acquire(self.model)
        self.rate_limiter.record_success(self.model)
        LOGGER.debug("mock %s serving profile %s", self.model, self.profile.behavior.value)

        guard = self.options.guard(self.model)
        guard.mark_dispatched()
        async with aclosing(self._chunks(request)) as chunks:
            stream = SseEventStream(chunks, OpenAIChatNormalizer(), guard=guard)
            return await drain_stream(stream, on_event)

    def _frames(self, request: GenerateRequest) -> list[bytes]:
        profile = self.profile
        answer = _answer_for(request)
        frames: list[bytes] = []

        if profile.behavior is MockBehavior.THINKING_THEN_ANSWER:
            frames.extend(_text_frame(f"(thinking {index + 1}) ") for index in range(profile.thinking_tokens))

        if profile.behavior is MockBehavior.TOOL_CALL and request.tools:
            frames.extend(self._tool_frames(request, answer))
        else:
            frames.extend(_text_frame(word) for word in _WORD_PATTERN.findall(answer))
            frames.append(_frame({"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}))

        prompt_tokens = sum(len(message.text_content.split()) for message in request.messages)
        frames.append(
            _frame({"choices": [], "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": len(frames)}})
        )
        frames.append(_frame("[DONE]"))
        return frames

    def _tool_frames(self, request: GenerateRequest, answer: str) -> list[bytes]:
        assert request.tools
        tool = request.tools[0]
        arguments = json.dumps({"input": answer})
        middle = len(arguments) // 2
        head = {
            "index": 0,
            "id": "call_mock_0",
            "type": "function",
            "function": {"name": tool.name, "arguments": arguments[:middle]},
        }
        tail = {"index": 0, "function": {"arguments": arguments[middle:]}}
        return [
            _frame({"choices": [{"index": 0, "delta": {"tool_calls": [head]}, "finish_reason": None}]}),
            _frame({"choices": [{"index": 0, "delta": {"tool_calls": [tail]}, "finish_reason": None}]}),
            _frame({"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]}),
        ]

    async def _chunks(self, request: GenerateRequest) -> AsyncIterator[bytes]:
        profile = self.profile
        if profile.behavior is MockBehavior.NO_FIRST_CHUNK:
            await asyncio.sleep(SILENCE_SECONDS)
            return

        frames = self._frames(request)
        if profile.first_chunk_delay_ms:
            await asyncio.sleep(profile.first_chunk_delay_ms / 1000.0)
        for index, frame in enumerate(frames):
            if index:
                if profile.behavior is MockBehavior.STALL_AFTER_N and index >= max(profile.stall_after_chunks, 1):
                    await asyncio.sleep(SILENCE_SECONDS)
                    return
                if profile.inter_chunk_delay_ms:
                    await asyncio.sleep(profile.inter_chunk_delay_ms / 1000.0)
            yield frame
