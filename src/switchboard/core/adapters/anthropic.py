"""Anthropic messages adapter with a server-sent-event state machine."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from contextlib import aclosing
from typing import Any

from ..errors import MalformedEventError, UpstreamError
from ..message import GenerateRequest, ImageUrlPart, Message, Role, TextPart
from ..sse import SseEventStream, SseMessage, object_field
from ..stream import (
    EventCallback,
    Finished,
    GenerateResult,
    StreamEvent,
    TextDelta,
    ToolCall,
    Usage,
    drain_stream,
    replay_result,
)
from .base import ProviderOptions
from .toolbridge import PendingToolCall, parse_arguments, tool_choice_to_anthropic, tool_specs_to_anthropic
from .transport import HttpTransport, iter_response_bytes

LOGGER = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
MIN_THINKING_BUDGET = 1024

_DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?;base64,(?P<data>.*)$", re.DOTALL)
_THINKING_MODEL_PATTERN = re.compile(r"thinking|claude-(3-7|sonnet-4|opus-4|haiku-4)|claude-(sonnet|opus|haiku)-[4-9]")


def _image_block(part: ImageUrlPart) -> dict[str, Any]:
    match = _DATA_URL_PATTERN.match(part.url)
    if match:
        media_type = part.mime or match.group("mime") or "image/png"
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": match.group("data")},
        }
    source: dict[str, Any] = {"type": "url", "url": part.url}
    if part.mime:
        source["media_type"] = part.mime
    return {"type": "image", "source": source}


def _message_to_anthropic(message: Message) -> dict[str, Any]:
    # only user and assistant turns exist on this API
    role = "assistant" if message.role in (Role.ASSISTANT, Role.TOOL) else "user"
    content: list[dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            content.append({"type": "text", "text": part.text})
        elif isinstance(part, ImageUrlPart):
            content.append(_image_block(part))
    if not content:
        content.append({"type": "text", "text": ""})
    return {"role": role, "content": content}


def supports_thinking(model: str) -> bool:
    return bool(_THINKING_MODEL_PATTERN.search(model.lower()))


def build_messages_payload(
    request: GenerateRequest,
    *,
    model: str,
    options: ProviderOptions,
    stream: bool,
) -> dict[str, Any]:
    max_tokens = options.max_output_tokens(request)
    payload: dict[str, Any] = {
        "model": model,
        "messages": [_message_to_anthropic(message) for message in request.messages],
        "max_tokens": max_tokens,
    }
    if request.system:
        payload["system"] = request.system

    thinking = options.enable_thinking and supports_thinking(model)
    temperature = options.temperature_for(request)
    if temperature is not None and not thinking:
        payload["temperature"] = temperature
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.stop:
        payload["stop_sequences"] = list(request.stop)
    if request.tools:
        payload["tools"] = tool_specs_to_anthropic(request.tools)
    if request.tool_choice is not None:
        payload["tool_choice"] = tool_choice_to_anthropic(request.tool_choice)
    if thinking:
        budget = max(options.reasoning_budget_tokens or MIN_THINKING_BUDGET, MIN_THINKING_BUDGET)
        payload["thinking"] = {"type": "enabled", "budget_tokens": budget}
        if max_tokens <= budget:
            payload["max_tokens"] = budget + max_tokens
    if stream:
        payload["stream"] = True
    return payload


def parse_messages_response(document: Mapping[str, Any]) -> GenerateResult:
    content = document.get("content")
    if not isinstance(content, list):
        msg = "messages response missing content list"
        raise MalformedEventError(msg)

    fragments: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in content:
        if not isinstance(block, Mapping):
            continue
        kind = block.get("type")
        if kind == "text" and isinstance(block.get("text"), str):
            fragments.append(block["text"])
        elif kind == "tool_use":
            name = block.get("name")
            if not isinstance(name, str) or not name:
                msg = "tool_use block missing name"
                raise MalformedEventError(msg)
            tool_calls.append(
                ToolCall(
                    name=name,
                    arguments_json=parse_arguments(block.get("input"), tool_name=name),
                    id=block.get("id"),
                )
            )

    return GenerateResult(
        text="".join(fragments),
        tool_calls=tuple(tool_calls),
        usage=Usage.from_payload(document.get("usage")),
        raw=dict(document),
    )


class AnthropicStreamNormalizer:
    """Per-stream state for messages SSE events.

    Text deltas pass straight through. A ``tool_use`` content block is held
    open until ``content_block_stop`` and only then released as one complete
    :class:`ToolCall`; blocks never closed are flushed before ``Finished``.
    """

    def __init__(self) -> None:
        self._blocks: dict[int, PendingToolCall] = {}
        self._finished = False

    async def normalize_chunk(self, chunk: SseMessage) -> list[StreamEvent]:
        if self._finished:
            return []
        if chunk.is_done:
            return self._complete()

        payload = chunk.json()
        kind = payload.get("type") or chunk.event
        if kind == "message_start":
            message = object_field(payload, "message")
            usage = Usage.from_payload(message.get("usage"))
            return [usage] if usage is not None else []
        if kind == "content_block_start":
            self._open_block(payload)
            return []
        if kind == "content_block_delta":
            return self._apply_delta(payload)
        if kind == "content_block_stop":
            state = self._blocks.pop(self._index(payload), None)
            return [state.complete()] if state is not None else []
        if kind == "message_delta":
            usage = Usage.from_payload(payload.get("usage"))
            return [usage] if usage is not None else []
        if kind == "message_stop":
            return self._complete()
        if kind == "ping":
            return []
        if kind == "error":
            error = payload.get("error") or {}
            message = error.get("message") if isinstance(error, Mapping) else error
            raise UpstreamError(f"stream error: {message or payload}")
        LOGGER.debug("unhandled messages stream event %r", kind)
        return []

    def finish(self) -> list[StreamEvent]:
        if self._finished:
            return []
        return self._complete()

    @staticmethod
    def _index(payload: Mapping[str, Any]) -> int:
        index = payload.get("index", 0)
        if not isinstance(index, int):
            msg = "content block index must be an integer"
            raise MalformedEventError(msg)
        return index

    def _open_block(self, payload: Mapping[str, Any]) -> None:
        block = payload.get("content_block")
        if not isinstance(block, Mapping) or block.get("type") != "tool_use":
            return
        initial = block.get("input")
        self._blocks[self._index(payload)] = PendingToolCall(
            id=block.get("id"),
            name=block.get("name"),
            initial_arguments=dict(initial) if isinstance(initial, Mapping) else None,
        )

    def _apply_delta(self, payload: Mapping[str, Any]) -> list[StreamEvent]:
        delta = payload.get("delta")
        if not isinstance(delta, Mapping):
            msg = "content_block_delta without a delta object"
            raise MalformedEventError(msg)
        kind = delta.get("type")
        if kind == "text_delta":
            text = delta.get("text")
            return [TextDelta(text)] if isinstance(text, str) and text else []
        if kind == "input_json_delta":
            state = self._blocks.get(self._index(payload))
            if state is None:
                msg = "input_json_delta for a block that is not an open tool_use"
                raise MalformedEventError(msg)
            state.append(delta.get("partial_json"))
        return []

    def _complete(self) -> list[StreamEvent]:
        events: list[StreamEvent] = [self._blocks[index].complete() for index in sorted(self._blocks)]
        self._blocks.clear()
        events.append(Finished())
        self._finished = True
        return events


class AnthropicAdapter:
    """Translate canonical requests to the messages API."""

    def __init__(self, transport: HttpTransport, *, options: ProviderOptions | None = None) -> None:
        self._transport = transport
        self.model = transport.model
        self.options = options or ProviderOptions()

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        document = await self._transport.post_json(
            "/messages",
            build_messages_payload(request, model=self.model, options=self.options, stream=False),
            extra_headers=request.metadata,
        )
        return parse_messages_response(document)

    async def generate_streaming(self, request: GenerateRequest, on_event: EventCallback) -> GenerateResult:
        if not self.options.enable_streaming:
            return await replay_result(await self.generate(request), on_event)

        guard = self.options.guard(self.model)
        async with self._transport.stream(
            "/messages",
            build_messages_payload(request, model=self.model, options=self.options, stream=True),
            extra_headers=request.metadata,
            guard=guard,
        ) as response:
            async with aclosing(iter_response_bytes(response, model=self.model)) as chunks:
                stream = SseEventStream(chunks, AnthropicStreamNormalizer(), guard=guard)
                try:
                    return await drain_stream(stream, on_event)
                except (UpstreamError, MalformedEventError) as exc:
                    raise exc.with_context(model=self.model)


def anthropic_headers(api_key: str) -> dict[str, str]:
    return {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}
