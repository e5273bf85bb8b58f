from __future__ import annotations

import asyncio
from typing import AsyncIterator

import pytest

from switchboard.core.errors import FirstTokenTimeoutError, StreamStalledError
from switchboard.core.timeouts import StreamTimeoutGuard, ms_to_seconds


class Source:
    """Async chunk source that can go silent and records closure."""

    def __init__(self, chunks: list[bytes], *, first_delay: float = 0.0, hang_after: int | None = None) -> None:
        self.chunks = chunks
        self.first_delay = first_delay
        self.hang_after = hang_after
        self.closed = False

    async def __call__(self) -> AsyncIterator[bytes]:
        try:
            await asyncio.sleep(self.first_delay)
            for index, chunk in enumerate(self.chunks):
                if self.hang_after is not None and index >= self.hang_after:
                    await asyncio.sleep(3600)
                yield chunk
        finally:
            self.closed = True


async def _drain(guard: StreamTimeoutGuard, source: Source, received: list[bytes]) -> None:
    async for chunk in guard.iterate(source(), partial_chars=lambda: sum(len(item) for item in received)):
        received.append(chunk)


def test_chunks_pass_through_without_deadlines() -> None:
    source = Source([b"a", b"", b"b"])
    received: list[bytes] = []

    asyncio.run(_drain(StreamTimeoutGuard(), source, received))

    assert received == [b"a", b"b"]
    assert source.closed


def test_first_token_timeout_reports_no_partial_content() -> None:
    source = Source([b"late"], first_delay=5.0)
    received: list[bytes] = []
    guard = StreamTimeoutGuard(first_token_timeout=0.05, stall_timeout=10.0, model="slow-model")

    with pytest.raises(FirstTokenTimeoutError) as excinfo:
        asyncio.run(_drain(guard, source, received))

    assert received == []
    assert excinfo.value.model == "slow-model"
    assert excinfo.value.partial_text == ""
    assert source.closed


def test_stall_timeout_reports_partial_length() -> None:
    source = Source([b"hello ", b"world", b"never"], hang_after=2)
    received: list[bytes] = []
    guard = StreamTimeoutGuard(first_token_timeout=1.0, stall_timeout=0.05)

    with pytest.raises(StreamStalledError) as excinfo:
        asyncio.run(_drain(guard, source, received))

    assert received == [b"hello ", b"world"]
    assert excinfo.value.partial_char_count == 11
    assert source.closed


def test_stall_deadline_rearms_on_every_chunk() -> None:
    async def steady() -> AsyncIterator[bytes]:
        for _ in range(5):
            await asyncio.sleep(0.02)
            yield b"x"

    async def run() -> list[bytes]:
        guard = StreamTimeoutGuard(stall_timeout=0.2)
        return [chunk async for chunk in guard.iterate(steady())]

    assert asyncio.run(run()) == [b"x"] * 5


def test_wait_first_times_out_waiting_for_headers() -> None:
    async def run() -> None:
        guard = StreamTimeoutGuard(first_token_timeout=0.05)
        guard.mark_dispatched()
        await guard.wait_first(asyncio.sleep(5))

    with pytest.raises(FirstTokenTimeoutError):
        asyncio.run(run())


def test_rejects_non_positive_deadlines() -> None:
    with pytest.raises(ValueError):
        StreamTimeoutGuard(first_token_timeout=0)
    assert not StreamTimeoutGuard().enabled
    assert StreamTimeoutGuard(stall_timeout=1.0).enabled


def test_ms_to_seconds_treats_missing_as_unbounded() -> None:
    assert ms_to_seconds(None) is None
    assert ms_to_seconds(0) is None
    assert ms_to_seconds(1500) == 1.5
