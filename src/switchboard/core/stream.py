"""Canonical streaming event schema and base iterator primitives."""

from __future__ import annotations

import abc
import asyncio
import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Protocol, Union

from .errors import ErrorKind, MalformedEventError, ProviderError, UpstreamError


@dataclass(frozen=True, slots=True)
class TextDelta:
    """Incremental assistant text emitted during streaming generation."""

    text: str


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A complete tool invocation; arguments are the parsed JSON object."""

    name: str
    arguments_json: Dict[str, Any]
    id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Usage:
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    @property
    def total_tokens(self) -> Optional[int]:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return (self.input_tokens or 0) + (self.output_tokens or 0)

    @classmethod
    def from_payload(cls, payload: Any) -> Optional[Usage]:
        """Read OpenAI (``prompt_tokens``) or Anthropic (``input_tokens``) counters."""

        if not isinstance(payload, dict):
            return None
        input_tokens = payload.get("prompt_tokens", payload.get("input_tokens"))
        output_tokens = payload.get("completion_tokens", payload.get("output_tokens"))
        if not isinstance(input_tokens, int):
            input_tokens = None
        if not isinstance(output_tokens, int):
            output_tokens = None
        if input_tokens is None and output_tokens is None:
            return None
        return cls(input_tokens=input_tokens, output_tokens=output_tokens)

    def merge(self, other: Usage) -> Usage:
        """Prefer the newer value for each counter that ``other`` reports."""

        return Usage(
            input_tokens=other.input_tokens if other.input_tokens is not None else self.input_tokens,
            output_tokens=other.output_tokens if other.output_tokens is not None else self.output_tokens,
        )


@dataclass(frozen=True, slots=True)
class Finished:
    """Terminal event marking a successfully completed stream."""


@dataclass(frozen=True, slots=True)
class Error:
    """Terminal event describing a stream aborted by the backend."""

    kind: ErrorKind
    message: str


StreamEvent = Union[TextDelta, ToolCall, Usage, Finished, Error]
EventCallback = Callable[[StreamEvent], Union[None, Awaitable[None]]]


@dataclass(frozen=True, slots=True)
class GenerateResult:
    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    usage: Optional[Usage] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass(slots=True)
class StreamAccumulator:
    """Fold canonical events into a :class:`GenerateResult`."""

    fragments: List[str] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[Usage] = None
    finished: bool = False
    error: Optional[Error] = None

    def add(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            self.fragments.append(event.text)
        elif isinstance(event, ToolCall):
            self.tool_calls.append(event)
        elif isinstance(event, Usage):
            self.usage = event if self.usage is None else self.usage.merge(event)
        elif isinstance(event, Finished):
            self.finished = True
        elif isinstance(event, Error):
            self.error = event

    @property
    def text(self) -> str:
        return "".join(self.fragments)

    @property
    def terminated(self) -> bool:
        return self.finished or self.error is not None

    def result(self) -> GenerateResult:
        return GenerateResult(text=self.text, tool_calls=tuple(self.tool_calls), usage=self.usage)


class StreamNormalizer(Protocol):
    async def normalize_chunk(self, chunk: Any) -> List[StreamEvent]:
        """Map a provider-specific chunk into canonical stream events."""

    def finish(self) -> List[StreamEvent]:
        """Flush pending state once the transport reaches end of stream."""


class BaseStreamIterator(AsyncIterator[StreamEvent], metaclass=abc.ABCMeta):
    """Shared async iterator driving provider-specific streaming adapters.

    Subclasses source raw provider chunks by implementing
    :meth:`_get_next_chunk`. Each chunk is normalized into zero or more
    :class:`StreamEvent` instances and buffered so consumers receive a linear
    stream of canonical events. Iteration ends after the first ``Finished``
    event; any exception closes the iterator before propagating.
    """

    def __init__(self, normalizer: StreamNormalizer) -> None:
        self._normalizer = normalizer
        self._buffer: Deque[StreamEvent] = deque()
        self._closed = False
        self._finalized = False
        self._eof = False
        self._close_lock = asyncio.Lock()
        self.text_chars = 0

    def __aiter__(self) -> BaseStreamIterator:
        return self

    async def __anext__(self) -> StreamEvent:
        while True:
            buffered = self._pop_buffered_event()
            if buffered is not None:
                return await self._finalize_if_needed(buffered)

            if self._closed or self._finalized or self._eof:
                await self.close()
                raise StopAsyncIteration

            try:
                events = await self._next_events()
            except BaseException:
                await self.close()
                raise
            self._extend(events)

    async def close(self) -> None:
        """Release provider resources and prevent additional iteration."""

        async with self._close_lock:
            if self._closed:
                return

            self._closed = True
            self._buffer.clear()
            await self._on_close()

    async def _next_events(self) -> List[StreamEvent]:
        try:
            chunk = await self._get_next_chunk()
        except StopAsyncIteration:
            self._eof = True
            return self._normalizer.finish()
        return await self._normalizer.normalize_chunk(chunk)

    def _extend(self, events: List[StreamEvent]) -> None:
        for event in events:
            if isinstance(event, TextDelta):
                self.text_chars += len(event.text)
            self._buffer.append(event)

    async def _finalize_if_needed(self, event: StreamEvent) -> StreamEvent:
        if isinstance(event, (Finished, Error)):
            self._finalized = True
            self._buffer.clear()
            await self.close()
        return event

    def _pop_buffered_event(self) -> StreamEvent | None:
        if not self._buffer:
            return None
        return self._buffer.popleft()

    @abc.abstractmethod
    async def _get_next_chunk(self) -> Any:
        """Retrieve the next raw chunk from the provider stream."""

    async def _on_close(self) -> None:
        """Allow subclasses to dispose provider resources when closing."""


async def deliver(on_event: EventCallback, event: StreamEvent) -> None:
    result = on_event(event)
    if inspect.isawaitable(result):
        await result


async def drain_stream(stream: BaseStreamIterator, on_event: EventCallback) -> GenerateResult:
    """Forward every event of ``stream`` to ``on_event`` and fold the result.

    Backend failures detected mid-stream are reported to ``on_event`` as a
    terminal :class:`Error` event before being raised. Timeout aborts deliver
    nothing further. Raised errors carry the text accumulated so far.
    """

    accumulator = StreamAccumulator()
    try:
        async for event in stream:
            accumulator.add(event)
            await deliver(on_event, event)
    except (UpstreamError, MalformedEventError) as exc:
        exc.partial_text = exc.partial_text or accumulator.text
        if not accumulator.terminated:
            await deliver(on_event, Error(kind=exc.kind, message=exc.message))
        raise
    except ProviderError as exc:
        exc.partial_text = exc.partial_text or accumulator.text
        raise
    finally:
        await stream.close()

    if accumulator.error is not None:
        raise UpstreamError(accumulator.error.message, partial_text=accumulator.text)
    return accumulator.result()


def result_events(result: GenerateResult) -> List[StreamEvent]:
    """Express a complete result as the event sequence a stream would emit."""

    events: List[StreamEvent] = []
    if result.text:
        events.append(TextDelta(result.text))
    events.extend(result.tool_calls)
    if result.usage is not None:
        events.append(result.usage)
    events.append(Finished())
    return events


async def replay_result(result: GenerateResult, on_event: EventCallback) -> GenerateResult:
    """Deliver ``result`` through ``on_event`` for non-streaming configurations."""

    for event in result_events(result):
        await deliver(on_event, event)
    return result
