"""OpenAI-family adapter covering chat completions and the responses endpoint."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from contextlib import aclosing
from enum import Enum
from typing import Any

from ..errors import MalformedEventError, ParameterIncompatibleError, UpstreamError
from ..message import GenerateRequest, ImageUrlPart, Message, Role, TextPart, thaw_json
from ..preferences import EndpointPreferenceCache
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
from .toolbridge import (
    PendingToolCall,
    parse_arguments,
    tool_choice_to_openai,
    tool_specs_to_openai,
    tool_specs_to_responses,
)
from .transport import HttpTransport, iter_response_bytes

LOGGER = logging.getLogger(__name__)

_REASONING_PREFIXES = ("o1", "o3", "o4", "gpt-5")
_REASONING_FAMILIES = ("claude", "deepseek", "gemini", "qwen")


class WireShape(str, Enum):
    """Endpoint and token-limit parameter pairing used for one request."""

    CHAT = "chat"
    CHAT_MAX_COMPLETION = "chat_max_completion_tokens"
    RESPONSES = "responses"
    RESPONSES_MAX_COMPLETION = "responses_max_completion_tokens"

    @property
    def is_responses(self) -> bool:
        return self in (WireShape.RESPONSES, WireShape.RESPONSES_MAX_COMPLETION)

    @property
    def endpoint(self) -> str:
        return "/responses" if self.is_responses else "/chat/completions"

    @property
    def token_parameter(self) -> str:
        if self is WireShape.CHAT:
            return "max_tokens"
        if self is WireShape.RESPONSES:
            return "max_output_tokens"
        return "max_completion_tokens"

    @classmethod
    def parse(cls, value: str | None) -> WireShape | None:
        """Read a cached shape name, accepting legacy spellings."""

        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return _LEGACY_SHAPES.get(value)

    def alternate_for(self, suggested_param: str | None) -> WireShape | None:
        """Shape to retry with when the backend asks for ``suggested_param``."""

        if suggested_param == "max_output_tokens":
            target = WireShape.RESPONSES
        elif suggested_param == "max_completion_tokens":
            target = WireShape.RESPONSES_MAX_COMPLETION if self.is_responses else WireShape.CHAT_MAX_COMPLETION
        elif suggested_param == "max_tokens":
            target = WireShape.CHAT
        else:
            return None
        return None if target is self else target


_LEGACY_SHAPES = {
    "Chat": WireShape.CHAT,
    "ChatMaxCompletion": WireShape.CHAT_MAX_COMPLETION,
    "ResponsesMaxOutput": WireShape.RESPONSES,
    "ResponsesMaxCompletion": WireShape.RESPONSES_MAX_COMPLETION,
}


def supports_reasoning(model: str) -> bool:
    lowered = model.lower().rsplit("/", 1)[-1]
    full = model.lower()
    return lowered.startswith(_REASONING_PREFIXES) or any(family in full for family in _REASONING_FAMILIES)


def _chat_content(message: Message) -> str | list[dict[str, Any]]:
    if all(isinstance(part, TextPart) for part in message.content):
        return message.text_content
    parts: list[dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            parts.append({"type": "text", "text": part.text})
        elif isinstance(part, ImageUrlPart):
            parts.append({"type": "image_url", "image_url": {"url": part.url}})
    return parts


def _responses_content(message: Message) -> str | list[dict[str, Any]]:
    if message.role is Role.ASSISTANT or all(isinstance(part, TextPart) for part in message.content):
        return message.text_content
    parts: list[dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            parts.append({"type": "input_text", "text": part.text})
        elif isinstance(part, ImageUrlPart):
            parts.append({"type": "input_image", "image_url": part.url})
    return parts


def _wire_role(role: Role) -> str:
    # tool results without a call id are not accepted as role "tool"
    return Role.USER.value if role is Role.TOOL else role.value


def _response_format(value: str | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(value, str):
        return {"type": value}
    schema = thaw_json(value)
    if "schema" in schema:
        return {"type": "json_schema", "json_schema": schema}
    return {"type": "json_schema", "json_schema": {"name": "response", "schema": schema}}


def build_chat_payload(
    request: GenerateRequest,
    *,
    model: str,
    shape: WireShape,
    options: ProviderOptions,
    stream: bool,
) -> dict[str, Any]:
    messages: list[dict[str, Any]] = []
    if request.system:
        messages.append({"role": "system", "content": request.system})
    messages.extend(
        {"role": _wire_role(message.role), "content": _chat_content(message)} for message in request.messages
    )

    payload: dict[str, Any] = {
        "model": model,
        "messages": messages,
        shape.token_parameter: options.max_output_tokens(request),
    }
    temperature = options.temperature_for(request)
    if temperature is not None:
        payload["temperature"] = temperature
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.stop:
        payload["stop"] = list(request.stop)
    if request.seed is not None:
        payload["seed"] = request.seed
    if request.logit_bias:
        payload["logit_bias"] = dict(request.logit_bias)
    if request.response_format is not None:
        payload["response_format"] = _response_format(request.response_format)
    if request.tools:
        payload["tools"] = tool_specs_to_openai(request.tools)
    if request.tool_choice is not None:
        payload["tool_choice"] = tool_choice_to_openai(request.tool_choice)
    _apply_reasoning(payload, model, options)
    if stream:
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
    return payload


def build_responses_payload(
    request: GenerateRequest,
    *,
    model: str,
    shape: WireShape,
    options: ProviderOptions,
    stream: bool,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "input": [
            {"role": _wire_role(message.role), "content": _responses_content(message)}
            for message in request.messages
        ],
        shape.token_parameter: options.max_output_tokens(request),
    }
    if request.system:
        payload["instructions"] = request.system
    temperature = options.temperature_for(request)
    if temperature is not None:
        payload["temperature"] = temperature
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.response_format is not None:
        text_format = _response_format(request.response_format)
        if text_format["type"] == "json_schema":
            text_format = {"type": "json_schema", **text_format["json_schema"]}
        payload["text"] = {"format": text_format}
    if request.tools:
        payload["tools"] = tool_specs_to_responses(request.tools)
    if request.tool_choice is not None:
        payload["tool_choice"] = tool_choice_to_openai(request.tool_choice, flat=True)
    _apply_reasoning(payload, model, options)
    if stream:
        payload["stream"] = True
    return payload


def _apply_reasoning(payload: dict[str, Any], model: str, options: ProviderOptions) -> None:
    if not options.wants_reasoning or not supports_reasoning(model):
        return
    reasoning: dict[str, Any] = {}
    if options.reasoning_effort is not None:
        reasoning["effort"] = options.reasoning_effort
    if options.reasoning_budget_tokens is not None:
        reasoning["max_tokens"] = options.reasoning_budget_tokens
    payload["reasoning"] = reasoning


def _text_from_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "")
            for part in content
            if isinstance(part, Mapping) and isinstance(part.get("text"), str)
        )
    return ""


def parse_chat_response(document: Mapping[str, Any]) -> GenerateResult:
    choices = document.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
        msg = "chat completion response missing choices"
        raise MalformedEventError(msg)
    message = choices[0].get("message")
    if not isinstance(message, Mapping):
        msg = "chat completion choice missing message payload"
        raise MalformedEventError(msg)

    tool_calls: list[ToolCall] = []
    for entry in message.get("tool_calls") or []:
        function = entry.get("function") if isinstance(entry, Mapping) else None
        if not isinstance(function, Mapping) or not isinstance(function.get("name"), str):
            msg = "chat completion tool call missing function name"
            raise MalformedEventError(msg)
        name = function["name"]
        tool_calls.append(
            ToolCall(
                name=name,
                arguments_json=parse_arguments(function.get("arguments"), tool_name=name),
                id=entry.get("id"),
            )
        )

    return GenerateResult(
        text=_text_from_content(message.get("content")),
        tool_calls=tuple(tool_calls),
        usage=Usage.from_payload(document.get("usage")),
        raw=dict(document),
    )


def parse_responses_response(document: Mapping[str, Any]) -> GenerateResult:
    """Prefer ``output_text``, then ``output`` items, then a chat-style body."""

    usage = Usage.from_payload(document.get("usage"))
    tool_calls: list[ToolCall] = []
    fragments: list[str] = []

    output = document.get("output")
    if isinstance(output, list):
        for item in output:
            if not isinstance(item, Mapping):
                continue
            if item.get("type") == "function_call" and isinstance(item.get("name"), str):
                name = item["name"]
                tool_calls.append(
                    ToolCall(
                        name=name,
                        arguments_json=parse_arguments(item.get("arguments"), tool_name=name),
                        id=item.get("call_id") or item.get("id"),
                    )
                )
            elif item.get("type", "message") == "message":
                fragments.append(_text_from_content(item.get("content")))

    output_text = document.get("output_text")
    if isinstance(output_text, list):
        output_text = "".join(part for part in output_text if isinstance(part, str))
    if isinstance(output_text, str) and output_text:
        text = output_text
    elif any(fragments) or tool_calls:
        text = "".join(fragments)
    elif "choices" in document:
        return parse_chat_response(document)
    else:
        msg = "responses payload contained no output text"
        raise MalformedEventError(msg)

    return GenerateResult(text=text, tool_calls=tuple(tool_calls), usage=usage, raw=dict(document))


def _raise_stream_error(payload: Mapping[str, Any]) -> None:
    error = payload.get("error")
    if isinstance(error, Mapping):
        message = str(error.get("message") or error)
    else:
        message = str(error or payload)
    raise UpstreamError(f"stream error: {message}")


class OpenAIChatNormalizer:
    """Per-stream state for chat-completions SSE frames.

    Tool-call fragments are assembled by index and released as complete
    :class:`ToolCall` events when the choice finishes or the stream ends.
    """

    def __init__(self) -> None:
        self._tools: dict[int, PendingToolCall] = {}
        self._finished = False

    async def normalize_chunk(self, chunk: SseMessage) -> list[StreamEvent]:
        if self._finished:
            return []
        if chunk.is_done:
            return self._complete()

        payload = chunk.json()
        if payload.get("error") is not None:
            _raise_stream_error(payload)

        events: list[StreamEvent] = []
        choices = payload.get("choices") or []
        if not isinstance(choices, list):
            msg = "chat stream chunk has non-list choices"
            raise MalformedEventError(msg)
        for choice in choices:
            if not isinstance(choice, Mapping) or choice.get("index", 0) != 0:
                continue
            delta = object_field(choice, "delta")
            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(TextDelta(content))
            for fragment in delta.get("tool_calls") or []:
                self._update_tool(fragment)
            if choice.get("finish_reason") is not None:
                events.extend(self._flush_tools())

        usage = Usage.from_payload(payload.get("usage"))
        if usage is not None:
            events.append(usage)
        return events

    def finish(self) -> list[StreamEvent]:
        if self._finished:
            return []
        return self._complete()

    def _update_tool(self, fragment: Any) -> None:
        if not isinstance(fragment, Mapping):
            msg = "chat stream tool call fragment must be an object"
            raise MalformedEventError(msg)
        index = fragment.get("index", 0)
        state = self._tools.setdefault(index, PendingToolCall())
        if fragment.get("id"):
            state.id = fragment["id"]
        function = object_field(fragment, "function")
        if function.get("name"):
            state.name = function["name"]
        state.append(function.get("arguments"))

    def _flush_tools(self) -> list[StreamEvent]:
        events: list[StreamEvent] = [self._tools[index].complete() for index in sorted(self._tools)]
        self._tools.clear()
        return events

    def _complete(self) -> list[StreamEvent]:
        events = self._flush_tools()
        events.append(Finished())
        self._finished = True
        return events


class OpenAIResponsesNormalizer:
    """Per-stream state for typed responses-endpoint SSE events."""

    def __init__(self) -> None:
        self._tools: dict[str, PendingToolCall] = {}
        self._order: list[str] = []
        self._finished = False

    async def normalize_chunk(self, chunk: SseMessage) -> list[StreamEvent]:
        if self._finished:
            return []
        if chunk.is_done:
            return self._complete()

        payload = chunk.json()
        kind = payload.get("type") or chunk.event
        if kind == "response.output_text.delta":
            delta = payload.get("delta")
            return [TextDelta(delta)] if isinstance(delta, str) and delta else []
        if kind == "response.output_item.added":
            self._open_tool(payload)
            return []
        if kind == "response.function_call_arguments.delta":
            state = self._tools.get(self._item_key(payload))
            if state is not None:
                state.append(payload.get("delta"))
            return []
        if kind == "response.function_call_arguments.done":
            state = self._tools.get(self._item_key(payload))
            if state is not None and isinstance(payload.get("arguments"), str):
                state.fragments = [payload["arguments"]]
            return []
        if kind == "response.output_item.done":
            return self._close_tool(payload)
        if kind in ("response.completed", "response.incomplete"):
            if kind == "response.incomplete":
                LOGGER.warning("responses stream ended incomplete")
            response = object_field(payload, "response")
            events: list[StreamEvent] = []
            usage = Usage.from_payload(response.get("usage"))
            if usage is not None:
                events.append(usage)
            return events + self._complete()
        if kind in ("response.failed", "error"):
            response = payload.get("response")
            _raise_stream_error(response if isinstance(response, Mapping) else payload)
        LOGGER.debug("ignoring responses stream event %r", kind)
        return []

    def finish(self) -> list[StreamEvent]:
        if self._finished:
            return []
        return self._complete()

    @staticmethod
    def _item_key(payload: Mapping[str, Any]) -> str:
        item = payload.get("item")
        if isinstance(item, Mapping) and item.get("id"):
            return str(item["id"])
        if payload.get("item_id"):
            return str(payload["item_id"])
        return f"#{payload.get('output_index', 0)}"

    def _open_tool(self, payload: Mapping[str, Any]) -> None:
        item = payload.get("item")
        if not isinstance(item, Mapping) or item.get("type") != "function_call":
            return
        key = self._item_key(payload)
        state = PendingToolCall(id=item.get("call_id") or item.get("id"), name=item.get("name"))
        state.append(item.get("arguments"))
        self._tools[key] = state
        self._order.append(key)

    def _close_tool(self, payload: Mapping[str, Any]) -> list[StreamEvent]:
        item = payload.get("item")
        if not isinstance(item, Mapping) or item.get("type") != "function_call":
            return []
        key = self._item_key(payload)
        state = self._tools.pop(key, None) or PendingToolCall()
        if key in self._order:
            self._order.remove(key)
        state.name = item.get("name") or state.name
        state.id = item.get("call_id") or state.id
        if isinstance(item.get("arguments"), str) and item["arguments"]:
            state.fragments = [item["arguments"]]
        return [state.complete()]

    def _complete(self) -> list[StreamEvent]:
        events: list[StreamEvent] = [self._tools.pop(key).complete() for key in self._order]
        self._order.clear()
        events.append(Finished())
        self._finished = True
        return events


class OpenAIAdapter:
    """Translate canonical requests to OpenAI-compatible endpoints.

    The adapter starts with :attr:`WireShape.CHAT` unless the preference cache
    names a shape for the model. A :class:`ParameterIncompatibleError` that
    suggests another token parameter triggers exactly one retry with the
    matching shape; when that retry succeeds the shape is remembered.
    """

    def __init__(
        self,
        transport: HttpTransport,
        *,
        options: ProviderOptions | None = None,
        preferences: EndpointPreferenceCache | None = None,
        provider_name: str = "openai",
    ) -> None:
        self._transport = transport
        self.model = transport.model
        self.options = options or ProviderOptions()
        self.preferences = preferences
        self.provider_name = provider_name

    def preferred_shape(self) -> WireShape:
        if self.preferences is None:
            return WireShape.CHAT
        cached = self.preferences.get(self.model)
        shape = WireShape.parse(cached)
        if cached is not None and shape is None:
            LOGGER.warning("ignoring unknown cached shape %r for %s", cached, self.model)
        return shape or WireShape.CHAT

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        return await self._with_fallback(lambda shape: self._generate_once(request, shape))

    async def generate_streaming(self, request: GenerateRequest, on_event: EventCallback) -> GenerateResult:
        if not self.options.enable_streaming:
            return await replay_result(await self.generate(request), on_event)
        return await self._with_fallback(lambda shape: self._stream_once(request, shape, on_event))

    async def _with_fallback(self, call: Callable[[WireShape], Awaitable[GenerateResult]]) -> GenerateResult:
        shape = self.preferred_shape()
        try:
            return await call(shape)
        except ParameterIncompatibleError as exc:
            alternate = shape.alternate_for(exc.suggested_param)
            if alternate is None:
                raise exc.with_context(model=self.model, shape=shape.value)
            LOGGER.info(
                "%s rejected %s for %s; retrying with %s",
                self.provider_name,
                shape.value,
                self.model,
                alternate.value,
            )

        result = await call(alternate)
        if self.preferences is not None:
            self.preferences.set(self.model, alternate.value)
        return result

    def _payload(self, request: GenerateRequest, shape: WireShape, *, stream: bool) -> dict[str, Any]:
        builder = build_responses_payload if shape.is_responses else build_chat_payload
        return builder(request, model=self.model, shape=shape, options=self.options, stream=stream)

    async def _generate_once(self, request: GenerateRequest, shape: WireShape) -> GenerateResult:
        document = await self._transport.post_json(
            shape.endpoint,
            self._payload(request, shape, stream=False),
            extra_headers=request.metadata,
            shape=shape.value,
        )
        if shape.is_responses:
            return parse_responses_response(document)
        return parse_chat_response(document)

    async def _stream_once(
        self,
        request: GenerateRequest,
        shape: WireShape,
        on_event: EventCallback,
    ) -> GenerateResult:
        guard = self.options.guard(self.model)
        normalizer = OpenAIResponsesNormalizer() if shape.is_responses else OpenAIChatNormalizer()
        async with self._transport.stream(
            shape.endpoint,
            self._payload(request, shape, stream=True),
            extra_headers=request.metadata,
            shape=shape.value,
            guard=guard,
        ) as response:
            async with aclosing(iter_response_bytes(response, model=self.model)) as chunks:
                stream = SseEventStream(chunks, normalizer, guard=guard)
                try:
                    return await drain_stream(stream, on_event)
                except (UpstreamError, MalformedEventError) as exc:
                    raise exc.with_context(model=self.model, shape=shape.value)
