"""Reusable harness utilities for validating streaming adapters."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from switchboard.core.adapters.base import Provider
from switchboard.core.errors import ProviderError
from switchboard.core.message import GenerateRequest
from switchboard.core.stream import Error, Finished, GenerateResult, StreamEvent, TextDelta


@dataclass(slots=True)
class StreamRun:
    """Everything observed while driving one streaming call."""

    events: list[StreamEvent] = field(default_factory=list)
    result: GenerateResult | None = None
    error: ProviderError | None = None

    @property
    def text(self) -> str:
        return "".join(event.text for event in self.events if isinstance(event, TextDelta))

    @property
    def terminal_count(self) -> int:
        return sum(isinstance(event, (Finished, Error)) for event in self.events)


async def collect_async(provider: Provider, request: GenerateRequest) -> StreamRun:
    """Drive ``generate_streaming`` and capture events, result or typed error."""

    run = StreamRun()
    try:
        run.result = await provider.generate_streaming(request, run.events.append)
    except ProviderError as exc:
        run.error = exc
    return run


def collect(provider: Provider, request: GenerateRequest) -> StreamRun:
    """Synchronous wrapper around :func:`collect_async`."""

    return asyncio.run(collect_async(provider, request))


__all__ = ["StreamRun", "collect", "collect_async"]
