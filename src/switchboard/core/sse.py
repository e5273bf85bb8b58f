"""Incremental server-sent-event framing shared by streaming adapters."""

from __future__ import annotations

import codecs
import json
import logging
from collections import deque
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any, Deque

from .errors import MalformedEventError
from .stream import BaseStreamIterator, StreamNormalizer
from .timeouts import StreamTimeoutGuard

LOGGER = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"


@dataclass(frozen=True, slots=True)
class SseMessage:
    """One dispatched SSE frame."""

    data: str
    event: str | None = None
    id: str | None = None

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_MARKER

    def json(self) -> dict[str, Any]:
        try:
            payload = json.loads(self.data)
        except json.JSONDecodeError as exc:
            msg = f"stream frame is not valid JSON: {self.data[:80]!r}"
            raise MalformedEventError(msg) from exc
        if not isinstance(payload, dict):
            msg = "stream frame JSON must be an object"
            raise MalformedEventError(msg)
        return payload


def object_field(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    """Nested object ``payload[key]``; absent or null reads as empty."""

    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        msg = f"stream frame field {key!r} must be an object, got {type(value).__name__}"
        raise MalformedEventError(msg)
    return value


class SseDecoder:
    """Turn arbitrary byte chunks into :class:`SseMessage` frames.

    Chunk boundaries may fall anywhere, including inside a multi-byte UTF-8
    sequence or between ``\\r`` and ``\\n``. Frames are dispatched on a blank
    line; comment lines and frames without data are skipped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._pending = ""
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None

    def feed(self, chunk: bytes) -> list[SseMessage]:
        try:
            text = self._decoder.decode(chunk)
        except UnicodeDecodeError as exc:
            msg = "stream contained invalid UTF-8"
            raise MalformedEventError(msg) from exc
        return self._consume(text, final=False)

    def flush(self) -> list[SseMessage]:
        """Dispatch whatever remains once the transport is exhausted."""

        try:
            text = self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            msg = "stream ended inside a UTF-8 sequence"
            raise MalformedEventError(msg) from exc
        return self._consume(text, final=True)

    def _consume(self, text: str, *, final: bool) -> list[SseMessage]:
        buffer = self._pending + text
        # a trailing \r may be the first half of \r\n
        if not final and buffer.endswith("\r"):
            buffer, self._pending = buffer[:-1], "\r"
        else:
            self._pending = ""

        lines = buffer.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        if not final:
            self._pending = lines.pop() + self._pending
        messages: list[SseMessage] = []
        for line in lines:
            message = self._process_line(line)
            if message is not None:
                messages.append(message)
        if final:
            message = self._dispatch()
            if message is not None:
                messages.append(message)
        return messages

    def _process_line(self, line: str) -> SseMessage | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value or None
        elif name == "id":
            self._id = value or None
        else:
            LOGGER.debug("ignoring unknown SSE field %r", name)
        return None

    def _dispatch(self) -> SseMessage | None:
        if not self._data:
            self._event = None
            return None
        message = SseMessage(data="\n".join(self._data), event=self._event, id=self._id)
        self._data = []
        self._event = None
        return message


class SseEventStream(BaseStreamIterator):
    """Stream iterator pulling guarded byte chunks through an SSE decoder."""

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        normalizer: StreamNormalizer,
        *,
        guard: StreamTimeoutGuard | None = None,
    ) -> None:
        super().__init__(normalizer)
        if guard is not None:
            chunks = guard.iterate(chunks, partial_chars=lambda: self.text_chars)
        self._chunks = chunks
        self._decoder = SseDecoder()
        self._messages: Deque[SseMessage] = deque()
        self._source_done = False

    async def _get_next_chunk(self) -> SseMessage:
        while not self._messages:
            if self._source_done:
                raise StopAsyncIteration
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                self._source_done = True
                self._messages.extend(self._decoder.flush())
                continue
            self._messages.extend(self._decoder.feed(chunk))
        return self._messages.popleft()

    async def _on_close(self) -> None:
        closer = getattr(self._chunks, "aclose", None)
        if closer is not None:
            await closer()
