"""Persistent per-model record of the wire shape that last succeeded."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class EndpointPreferenceCache:
    """JSON-backed ``{model: shape}`` mapping.

    A missing, truncated or unparseable file loads as an empty cache. Writes go
    to a temporary file that replaces the target, so readers never observe a
    partial document. Entries never expire; they change only through
    :meth:`set` or :meth:`forget`.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._entries = self._load()

    def _load(self) -> dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            LOGGER.warning("cannot read endpoint cache %s: %s", self.path, exc)
            return {}

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            LOGGER.warning("ignoring corrupt endpoint cache %s: %s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("ignoring endpoint cache %s: expected a JSON object", self.path)
            return {}

        entries = {str(key): value for key, value in payload.items() if isinstance(value, str)}
        if len(entries) != len(payload):
            LOGGER.warning("dropped %d malformed endpoint cache entries", len(payload) - len(entries))
        return entries

    def get(self, model: str) -> str | None:
        with self._lock:
            return self._entries.get(model)

    def items(self) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(self._entries.items())

    def set(self, model: str, shape: str) -> None:
        with self._lock:
            if self._entries.get(model) == shape:
                return
            self._entries[model] = shape
        self._persist()

    def forget(self, model: str) -> bool:
        with self._lock:
            if model not in self._entries:
                return False
            del self._entries[model]
        self._persist()
        return True

    def _persist(self) -> None:
        with self._write_lock:
            with self._lock:
                snapshot = dict(self._entries)
            self._write(snapshot)

    def _write(self, snapshot: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(snapshot, handle, indent=2, sort_keys=True)
                    handle.write("\n")
                os.replace(temp_name, self.path)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            LOGGER.warning("could not persist endpoint cache %s: %s", self.path, exc)
