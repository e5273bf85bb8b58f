from __future__ import annotations

import asyncio
from typing import Any

import pytest

from switchboard.core.errors import ErrorKind, StreamStalledError, UpstreamError
from switchboard.core.stream import (
    BaseStreamIterator,
    Error,
    Finished,
    GenerateResult,
    StreamAccumulator,
    StreamEvent,
    TextDelta,
    ToolCall,
    Usage,
    drain_stream,
    replay_result,
    result_events,
)


class ListNormalizer:
    def __init__(self) -> None:
        self.finished_called = False

    async def normalize_chunk(self, chunk: Any) -> list[StreamEvent]:
        if isinstance(chunk, Exception):
            raise chunk
        return list(chunk)

    def finish(self) -> list[StreamEvent]:
        self.finished_called = True
        return [Finished()]


class ListStream(BaseStreamIterator):
    def __init__(self, chunks: list[Any]) -> None:
        self.normalizer = ListNormalizer()
        super().__init__(self.normalizer)
        self._chunks = list(chunks)
        self.close_calls = 0

    async def _get_next_chunk(self) -> Any:
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def _on_close(self) -> None:
        self.close_calls += 1


async def _events(stream: BaseStreamIterator) -> list[StreamEvent]:
    return [event async for event in stream]


def test_iteration_stops_after_first_finished() -> None:
    stream = ListStream([[TextDelta("a")], [], [TextDelta("b"), Finished(), TextDelta("late")], [Finished()]])

    events = asyncio.run(_events(stream))

    assert events == [TextDelta("a"), TextDelta("b"), Finished()]
    assert stream.close_calls == 1


def test_end_of_source_flushes_normalizer() -> None:
    stream = ListStream([[TextDelta("only")]])

    events = asyncio.run(_events(stream))

    assert events == [TextDelta("only"), Finished()]
    assert stream.normalizer.finished_called


def test_normalizer_failure_closes_stream() -> None:
    stream = ListStream([[TextDelta("a")], UpstreamError("boom")])

    with pytest.raises(UpstreamError):
        asyncio.run(_events(stream))

    assert stream.close_calls == 1


def test_drain_delivers_error_event_then_raises_with_partial_text() -> None:
    stream = ListStream([[TextDelta("partial")], UpstreamError("overloaded", status=529)])
    seen: list[StreamEvent] = []

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(drain_stream(stream, seen.append))

    assert seen == [TextDelta("partial"), Error(kind=ErrorKind.UPSTREAM_ERROR, message="overloaded")]
    assert excinfo.value.partial_text == "partial"


def test_drain_delivers_nothing_extra_after_timeout() -> None:
    stream = ListStream([[TextDelta("abc")], StreamStalledError("stalled", partial_char_count=3)])
    seen: list[StreamEvent] = []

    with pytest.raises(StreamStalledError) as excinfo:
        asyncio.run(drain_stream(stream, seen.append))

    assert seen == [TextDelta("abc")]
    assert excinfo.value.partial_text == "abc"


def test_drain_awaits_async_callbacks_and_folds_result() -> None:
    call = ToolCall(name="lookup", arguments_json={"q": "x"}, id="call_1")
    stream = ListStream([[TextDelta("Hi"), call, Usage(3, None), Usage(None, 2), Finished()]])
    seen: list[StreamEvent] = []

    async def on_event(event: StreamEvent) -> None:
        await asyncio.sleep(0)
        seen.append(event)

    result = asyncio.run(drain_stream(stream, on_event))

    assert len(seen) == 5
    assert result == GenerateResult(text="Hi", tool_calls=(call,), usage=Usage(3, 2))
    assert result.usage is not None and result.usage.total_tokens == 5


def test_accumulator_tracks_terminal_state() -> None:
    accumulator = StreamAccumulator()
    accumulator.add(TextDelta("x"))
    assert not accumulator.terminated
    accumulator.add(Error(kind=ErrorKind.MALFORMED_EVENT, message="bad"))
    assert accumulator.terminated


def test_usage_from_payload_reads_both_vocabularies() -> None:
    assert Usage.from_payload({"prompt_tokens": 4, "completion_tokens": 6}) == Usage(4, 6)
    assert Usage.from_payload({"input_tokens": 9}) == Usage(9, None)
    assert Usage.from_payload({"total_tokens": 3}) is None
    assert Usage.from_payload(None) is None


def test_replay_result_emits_stream_shaped_events() -> None:
    call = ToolCall(name="lookup", arguments_json={})
    result = GenerateResult(text="done", tool_calls=(call,), usage=Usage(1, 1))
    seen: list[StreamEvent] = []

    returned = asyncio.run(replay_result(result, seen.append))

    assert returned is result
    assert seen == result_events(result) == [TextDelta("done"), call, Usage(1, 1), Finished()]
