"""Per-model exponential backoff for backends answering HTTP 429."""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Delay is ``base ** min(n, max_exponent)`` seconds plus jitter.

    ``jitter_ms`` is exclusive: the default adds 0-999 ms.
    """

    base: float = 2.0
    max_exponent: int = 6
    jitter_ms: int = 1000

    def __post_init__(self) -> None:
        if self.base < 1:
            msg = "backoff base must be at least 1"
            raise ValueError(msg)
        if self.max_exponent < 0 or self.jitter_ms < 0:
            msg = "backoff exponent cap and jitter must be non-negative"
            raise ValueError(msg)

    def delay(self, consecutive_429s: int, jitter_ms: int) -> float:
        return self.base ** min(consecutive_429s, self.max_exponent) + jitter_ms / 1000.0


@dataclass(frozen=True, slots=True)
class RateLimitState:
    backoff_until: float | None = None
    consecutive_429s: int = 0


@dataclass(slots=True)
class _ModelEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    backoff_until: float | None = None
    consecutive_429s: int = 0


class ModelRateLimiter:
    """Track backoff independently per model name.

    Entries are created lazily under a registry lock and each has its own lock,
    so bookkeeping for one model never contends with another. Locks are held
    only for arithmetic; waiting happens outside them.
    """

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or BackoffPolicy()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._entries: dict[str, _ModelEntry] = {}
        self._registry_lock = threading.Lock()

    def _entry(self, model: str, *, create: bool) -> _ModelEntry | None:
        with self._registry_lock:
            entry = self._entries.get(model)
            if entry is None and create:
                entry = self._entries[model] = _ModelEntry()
            return entry

    def _remaining(self, model: str) -> float:
        entry = self._entry(model, create=False)
        if entry is None:
            return 0.0
        with entry.lock:
            if entry.backoff_until is None:
                return 0.0
            return max(entry.backoff_until - self._clock(), 0.0)

    async def acquire(self, model: str) -> None:
        """Suspend the calling task until ``model`` is out of backoff."""

        remaining = self._remaining(model)
        while remaining > 0:
            LOGGER.info("model %s in backoff, waiting %.2fs", model, remaining)
            await self._sleep(remaining)
            remaining = self._remaining(model)

    def record_429(self, model: str) -> float:
        """Register a rate-limit response and return the backoff delay."""

        entry = self._entry(model, create=True)
        assert entry is not None
        jitter = self._rng.randrange(self.policy.jitter_ms) if self.policy.jitter_ms else 0
        with entry.lock:
            entry.consecutive_429s += 1
            delay = self.policy.delay(entry.consecutive_429s, jitter)
            entry.backoff_until = self._clock() + delay
            count = entry.consecutive_429s
        LOGGER.warning("model %s rate limited (%d consecutive), backing off %.2fs", model, count, delay)
        return delay

    def record_success(self, model: str) -> None:
        entry = self._entry(model, create=False)
        if entry is None:
            return
        with entry.lock:
            entry.consecutive_429s = 0
            entry.backoff_until = None

    def is_in_backoff(self, model: str) -> bool:
        return self._remaining(model) > 0

    def snapshot(self, model: str) -> RateLimitState:
        entry = self._entry(model, create=False)
        if entry is None:
            return RateLimitState()
        with entry.lock:
            return RateLimitState(entry.backoff_until, entry.consecutive_429s)
