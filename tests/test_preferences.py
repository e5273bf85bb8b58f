from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from switchboard.core.preferences import EndpointPreferenceCache


def test_missing_file_loads_empty(tmp_path: Path) -> None:
    cache = EndpointPreferenceCache(tmp_path / "nested" / "cache.json")

    assert cache.get("gpt-5") is None
    assert cache.items() == []


@pytest.mark.parametrize("content", ["", "{not json", "[1, 2]", '{"gpt-5": '])
def test_corrupt_file_loads_empty(tmp_path: Path, content: str, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "cache.json"
    path.write_text(content, encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        cache = EndpointPreferenceCache(path)

    assert cache.items() == []
    assert any("endpoint cache" in record.getMessage() for record in caplog.records)


def test_set_persists_atomically_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "cache.json"
    cache = EndpointPreferenceCache(path)

    cache.set("gpt-5", "responses")
    cache.set("o3-mini", "chat_max_completion_tokens")

    assert json.loads(path.read_text(encoding="utf-8")) == {
        "gpt-5": "responses",
        "o3-mini": "chat_max_completion_tokens",
    }
    assert sorted(p.name for p in path.parent.iterdir()) == ["cache.json"]
    assert EndpointPreferenceCache(path).get("o3-mini") == "chat_max_completion_tokens"


def test_set_overwrites_and_forget_removes(tmp_path: Path) -> None:
    path = tmp_path / "cache.json"
    cache = EndpointPreferenceCache(path)
    cache.set("gpt-5", "responses")
    cache.set("gpt-5", "responses_max_completion_tokens")

    assert cache.get("gpt-5") == "responses_max_completion_tokens"
    assert cache.forget("gpt-5") is True
    assert cache.forget("gpt-5") is False
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_non_string_entries_are_dropped(tmp_path: Path) -> None:
    path = tmp_path / "cache.json"
    path.write_text(json.dumps({"good": "chat", "bad": 3}), encoding="utf-8")

    cache = EndpointPreferenceCache(path)

    assert cache.items() == [("good", "chat")]
