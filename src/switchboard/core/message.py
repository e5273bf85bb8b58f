"""Canonical request model shared across provider adapters."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
import math
import re
from types import MappingProxyType
from typing import Any, Union

_TOOL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


class Role(str, Enum):
    """Conversation roles understood by every adapter."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class TextPart:
    text: str

    def __post_init__(self) -> None:
        if not isinstance(self.text, str):
            msg = "text part must hold a string"
            raise TypeError(msg)


@dataclass(frozen=True, slots=True)
class ImageUrlPart:
    """An image referenced by URL; ``data:`` URLs carry inline base64 data."""

    url: str
    mime: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.url, str) or not self.url:
            msg = "image url must be a non-empty string"
            raise ValueError(msg)


ContentPart = Union[TextPart, ImageUrlPart]


@dataclass(frozen=True, slots=True)
class Message:
    """A single message exchanged with a language model."""

    role: Role
    content: tuple[ContentPart, ...]

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

        content = self.content
        if isinstance(content, str):
            content = (TextPart(content),)
        elif isinstance(content, (TextPart, ImageUrlPart)):
            content = (content,)
        elif isinstance(content, Sequence) and not isinstance(content, (bytes, bytearray)):
            content = tuple(content)
        else:
            msg = "message content must be a string or a sequence of content parts"
            raise TypeError(msg)

        for part in content:
            if not isinstance(part, (TextPart, ImageUrlPart)):
                msg = "message content must contain TextPart or ImageUrlPart instances"
                raise TypeError(msg)
        object.__setattr__(self, "content", content)

    @classmethod
    def text(cls, role: Role | str, text: str) -> Message:
        return cls(role=Role(role), content=(TextPart(text),))

    @property
    def text_content(self) -> str:
        """Concatenated text of every text part, images skipped."""

        return "".join(part.text for part in self.content if isinstance(part, TextPart))


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """A function the model may call, described by a JSON schema."""

    name: str
    description: str | None = None
    json_schema: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not _TOOL_NAME_PATTERN.fullmatch(self.name):
            msg = "tool name must match ^[a-zA-Z0-9_-]{1,64}$"
            raise ValueError(msg)

        if self.description is not None:
            if not isinstance(self.description, str):
                msg = "tool description must be a string when provided"
                raise TypeError(msg)
            object.__setattr__(self, "description", self.description.strip() or None)

        if self.json_schema is not None:
            if not isinstance(self.json_schema, Mapping):
                msg = "tool json_schema must be a mapping"
                raise TypeError(msg)
            plain = thaw_json(dict(self.json_schema))
            ensure_json_compatible(plain, path=f"ToolSpec('{self.name}').json_schema")
            object.__setattr__(self, "json_schema", freeze_json(plain))

    def parameters(self) -> dict[str, Any]:
        """Plain JSON schema for wire payloads; defaults to an empty object schema."""

        if self.json_schema is None:
            return {"type": "object", "properties": {}}
        return thaw_json(self.json_schema)


class ToolChoiceMode(str, Enum):
    AUTO = "auto"
    NONE = "none"
    REQUIRED = "required"
    NAMED = "named"


@dataclass(frozen=True, slots=True)
class ToolChoice:
    """Tool-use policy; ``NAMED`` forces one specific tool."""

    mode: ToolChoiceMode
    name: str | None = None

    def __post_init__(self) -> None:
        if self.mode is ToolChoiceMode.NAMED and not self.name:
            msg = "a named tool choice requires a tool name"
            raise ValueError(msg)
        if self.mode is not ToolChoiceMode.NAMED and self.name is not None:
            msg = "only a named tool choice may carry a tool name"
            raise ValueError(msg)

    @classmethod
    def named(cls, name: str) -> ToolChoice:
        return cls(ToolChoiceMode.NAMED, name)


ToolChoice.AUTO = ToolChoice(ToolChoiceMode.AUTO)  # type: ignore[attr-defined]
ToolChoice.NONE = ToolChoice(ToolChoiceMode.NONE)  # type: ignore[attr-defined]
ToolChoice.REQUIRED = ToolChoice(ToolChoiceMode.REQUIRED)  # type: ignore[attr-defined]


@dataclass(frozen=True, slots=True)
class GenerateRequest:
    """Backend-agnostic description of one completion call.

    Message order is significant and is preserved by every adapter. Entries in
    ``metadata`` are forwarded as extra HTTP headers, reserved authentication
    and content headers excepted.
    """

    messages: tuple[Message, ...]
    system: str | None = None
    tools: tuple[ToolSpec, ...] | None = None
    tool_choice: ToolChoice | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop: tuple[str, ...] | None = None
    seed: int | None = None
    logit_bias: Mapping[str, float] | None = None
    response_format: str | Mapping[str, Any] | None = None
    max_output_tokens: int | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.messages, Message) or not isinstance(self.messages, Sequence):
            msg = "messages must be a sequence of Message instances"
            raise TypeError(msg)
        messages = tuple(self.messages)
        for message in messages:
            if not isinstance(message, Message):
                msg = "messages must contain Message instances"
                raise TypeError(msg)
        object.__setattr__(self, "messages", messages)

        if self.tools is not None:
            tools = tuple(self.tools)
            for tool in tools:
                if not isinstance(tool, ToolSpec):
                    msg = "tools must contain ToolSpec instances"
                    raise TypeError(msg)
            object.__setattr__(self, "tools", tools or None)

        if self.stop is not None:
            stop = (self.stop,) if isinstance(self.stop, str) else tuple(self.stop)
            object.__setattr__(self, "stop", stop or None)

        if self.max_output_tokens is not None and self.max_output_tokens <= 0:
            msg = "max_output_tokens must be positive"
            raise ValueError(msg)

        if isinstance(self.response_format, str) and self.response_format not in {
            "text",
            "json_object",
        }:
            msg = "response_format must be 'text', 'json_object' or a JSON schema mapping"
            raise ValueError(msg)

        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def from_prompt(cls, prompt: str, *, system: str | None = None, **options: Any) -> GenerateRequest:
        return cls(messages=(Message.text(Role.USER, prompt),), system=system, **options)

    def prompt_text(self) -> str:
        """Flatten system prompt and message text, used for transcripts."""

        parts = [self.system] if self.system else []
        parts.extend(f"{message.role.value}: {message.text_content}" for message in self.messages)
        return "\n".join(parts)


def ensure_json_compatible(value: Any, *, path: str) -> None:
    if isinstance(value, Mapping):
        for key, inner in value.items():
            if not isinstance(key, str):
                msg = f"{path} keys must be strings"
                raise TypeError(msg)
            ensure_json_compatible(inner, path=f"{path}.{key}")
        return

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        for index, item in enumerate(value):
            ensure_json_compatible(item, path=f"{path}[{index}]")
        return

    if isinstance(value, (bool, type(None), str)):
        return

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            msg = f"{path} contains non-finite float values"
            raise ValueError(msg)
        return

    msg = f"{path} contains unsupported value type {type(value).__name__}"
    raise TypeError(msg)


def freeze_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze_json(inner) for key, inner in value.items()})

    if isinstance(value, (list, tuple)):
        return tuple(freeze_json(inner) for inner in value)

    return value


def thaw_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: thaw_json(inner) for key, inner in value.items()}

    if isinstance(value, (list, tuple)):
        return [thaw_json(inner) for inner in value]

    return value
