"""Provider interface shared by every backend adapter."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ..message import GenerateRequest
from ..stream import EventCallback, GenerateResult
from ..timeouts import StreamTimeoutGuard


@runtime_checkable
class Provider(Protocol):
    """Capability set every backend variant implements."""

    model: str

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        """Return the complete answer or raise a typed ``ProviderError``."""

    async def generate_streaming(self, request: GenerateRequest, on_event: EventCallback) -> GenerateResult:
        """Deliver events to ``on_event`` in arrival order and return the folded result."""


@dataclass(frozen=True, slots=True)
class ProviderOptions:
    """Per-adapter defaults applied when a request leaves a field unset.

    Timeouts are in seconds; ``None`` leaves the deadline unbounded.
    """

    max_tokens: int = 1024
    temperature: float | None = 0.7
    enable_streaming: bool = True
    first_token_timeout: float | None = None
    stall_timeout: float | None = None
    enable_thinking: bool = False
    reasoning_effort: str | None = None
    reasoning_budget_tokens: int | None = None

    def guard(self, model: str) -> StreamTimeoutGuard:
        return StreamTimeoutGuard(self.first_token_timeout, self.stall_timeout, model=model)

    def max_output_tokens(self, request: GenerateRequest) -> int:
        return request.max_output_tokens or self.max_tokens

    def temperature_for(self, request: GenerateRequest) -> float | None:
        return request.temperature if request.temperature is not None else self.temperature

    @property
    def wants_reasoning(self) -> bool:
        return (
            self.enable_thinking
            or self.reasoning_effort is not None
            or self.reasoning_budget_tokens is not None
        )
