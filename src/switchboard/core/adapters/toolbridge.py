"""Mapping helpers between canonical tool specs and provider schemas."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ..errors import MalformedEventError
from ..message import ToolChoice, ToolChoiceMode, ToolSpec
from ..stream import ToolCall


def parse_arguments(raw: Any, *, tool_name: str) -> dict[str, Any]:
    """Decode tool-call arguments delivered as a JSON string or an object."""

    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        msg = f"arguments for tool '{tool_name}' must be a JSON string"
        raise MalformedEventError(msg)
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError as exc:
        msg = f"arguments for tool '{tool_name}' are not valid JSON"
        raise MalformedEventError(msg) from exc
    if not isinstance(arguments, dict):
        msg = f"arguments for tool '{tool_name}' must decode to a JSON object"
        raise MalformedEventError(msg)
    return arguments


@dataclass
class PendingToolCall:
    """Tool call whose arguments are still arriving as fragments."""

    id: str | None = None
    name: str | None = None
    fragments: list[str] = field(default_factory=list)
    initial_arguments: dict[str, Any] | None = None

    def append(self, fragment: Any) -> None:
        if isinstance(fragment, str) and fragment:
            self.fragments.append(fragment)

    def complete(self) -> ToolCall:
        if not self.name:
            msg = f"tool call {self.id or '<unknown>'} finished without a name"
            raise MalformedEventError(msg)
        if self.fragments:
            arguments = parse_arguments("".join(self.fragments), tool_name=self.name)
        else:
            arguments = dict(self.initial_arguments or {})
        return ToolCall(name=self.name, arguments_json=arguments, id=self.id)


def tool_specs_to_openai(tools: Sequence[ToolSpec]) -> list[dict[str, Any]]:
    """Chat-completions ``tools`` array."""

    converted: list[dict[str, Any]] = []
    for tool in tools:
        function: dict[str, Any] = {"name": tool.name, "parameters": tool.parameters()}
        if tool.description:
            function["description"] = tool.description
        converted.append({"type": "function", "function": function})
    return converted


def tool_specs_to_responses(tools: Sequence[ToolSpec]) -> list[dict[str, Any]]:
    """Responses-endpoint ``tools`` array, which flattens the function object."""

    converted: list[dict[str, Any]] = []
    for tool in tools:
        entry: dict[str, Any] = {"type": "function", "name": tool.name, "parameters": tool.parameters()}
        if tool.description:
            entry["description"] = tool.description
        converted.append(entry)
    return converted


def tool_specs_to_anthropic(tools: Sequence[ToolSpec]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for tool in tools:
        entry: dict[str, Any] = {"name": tool.name, "input_schema": tool.parameters()}
        if tool.description:
            entry["description"] = tool.description
        converted.append(entry)
    return converted


def tool_choice_to_openai(choice: ToolChoice, *, flat: bool = False) -> str | dict[str, Any]:
    """OpenAI vocabulary; ``flat`` selects the responses-endpoint named form."""

    if choice.mode is ToolChoiceMode.NAMED:
        if flat:
            return {"type": "function", "name": choice.name}
        return {"type": "function", "function": {"name": choice.name}}
    return choice.mode.value


def tool_choice_to_anthropic(choice: ToolChoice) -> dict[str, Any]:
    if choice.mode is ToolChoiceMode.NAMED:
        return {"type": "tool", "name": choice.name}
    if choice.mode is ToolChoiceMode.REQUIRED:
        return {"type": "any"}
    return {"type": choice.mode.value}
