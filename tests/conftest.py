from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for path in (ROOT, SRC):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from switchboard.core.rate_limiter import ModelRateLimiter  # noqa: E402

from tests.fixtures.http_fake import FakeClock  # noqa: E402


@pytest.fixture(autouse=True)
def clear_provider_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep real credentials and mock knobs from leaking into tests."""

    for name in ("OPENAI_API_KEY", "OPENROUTER_API_KEY", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("SWITCHBOARD_MOCK_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(fake_clock: FakeClock) -> ModelRateLimiter:
    """Rate limiter whose backoff waits complete instantly."""

    return ModelRateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
