"""First-token and stall deadlines for chunked transfers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from .errors import FirstTokenTimeoutError, StreamStalledError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def ms_to_seconds(milliseconds: int | None) -> float | None:
    if milliseconds is None or milliseconds <= 0:
        return None
    return milliseconds / 1000.0


class StreamTimeoutGuard:
    """Race every receive of a stream against two independent deadlines.

    The first-token deadline runs from dispatch (:meth:`mark_dispatched`, or
    the first receive when never marked) until the first non-empty chunk. The
    stall deadline is re-armed after every chunk. ``None`` disables a
    deadline. One guard instance covers one call.
    """

    def __init__(
        self,
        first_token_timeout: float | None = None,
        stall_timeout: float | None = None,
        *,
        model: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        for name, value in (("first_token_timeout", first_token_timeout), ("stall_timeout", stall_timeout)):
            if value is not None and value <= 0:
                msg = f"{name} must be positive or None"
                raise ValueError(msg)
        self.first_token_timeout = first_token_timeout
        self.stall_timeout = stall_timeout
        self.model = model
        self._clock = clock
        self._dispatched_at: float | None = None

    @property
    def enabled(self) -> bool:
        return self.first_token_timeout is not None or self.stall_timeout is not None

    def mark_dispatched(self) -> None:
        """Restart the first-token deadline; called for every send attempt."""

        self._dispatched_at = self._clock()

    def _first_token_remaining(self) -> float | None:
        if self.first_token_timeout is None:
            return None
        if self._dispatched_at is None:
            self.mark_dispatched()
        assert self._dispatched_at is not None
        elapsed = self._clock() - self._dispatched_at
        return max(self.first_token_timeout - elapsed, 0.0)

    async def wait_first(self, awaitable: Awaitable[T]) -> T:
        """Await response headers under the first-token deadline."""

        try:
            return await asyncio.wait_for(awaitable, self._first_token_remaining())
        except asyncio.TimeoutError:
            raise self._first_token_error() from None

    async def iterate(
        self,
        source: AsyncIterator[bytes],
        *,
        partial_chars: Callable[[], int] | None = None,
    ) -> AsyncIterator[bytes]:
        """Yield chunks from ``source`` until exhausted or a deadline fires.

        The pending receive is cancelled when a deadline fires and ``source``
        is closed on every exit path.
        """

        iterator = source.__aiter__()
        received = False
        try:
            while True:
                timeout = self.stall_timeout if received else self._first_token_remaining()
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError:
                    if not received:
                        raise self._first_token_error() from None
                    count = partial_chars() if partial_chars is not None else 0
                    raise self._stall_error(count) from None
                if not chunk:
                    continue
                received = True
                yield chunk
        finally:
            closer = getattr(iterator, "aclose", None)
            if closer is not None:
                await closer()

    def _first_token_error(self) -> FirstTokenTimeoutError:
        LOGGER.warning("no content from %s within %.3fs", self.model or "backend", self.first_token_timeout)
        msg = f"no content received within {self.first_token_timeout:.3f}s"
        return FirstTokenTimeoutError(msg, model=self.model)

    def _stall_error(self, partial_char_count: int) -> StreamStalledError:
        LOGGER.warning(
            "stream from %s stalled for %.3fs after %d characters",
            self.model or "backend",
            self.stall_timeout,
            partial_char_count,
        )
        msg = f"stream stalled for more than {self.stall_timeout:.3f}s after {partial_char_count} characters"
        return StreamStalledError(msg, partial_char_count=partial_char_count, model=self.model)
