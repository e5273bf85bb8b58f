"""Rotating JSON-lines transcript of provider calls."""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from .config import LlmLoggingConfig
from .core.adapters.base import Provider
from .core.errors import ProviderError
from .core.message import GenerateRequest
from .core.stream import EventCallback, GenerateResult

LOGGER = logging.getLogger(__name__)

TRANSCRIPT_FILE = "llm_transcript.log"
SUMMARY_LENGTH = 100


def summarize(text: str, limit: int = SUMMARY_LENGTH) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= limit:
        return flattened
    return flattened[: limit - 3] + "..."


def transcript_logger_name(path: Path) -> str:
    """Logger name for a transcript file, stable across instances."""

    return f"{__name__}.{path.resolve().as_posix().replace('.', '_')}"


class LlmTranscript:
    """Write one JSON object per request, response or failure.

    Entries go to a dedicated non-propagating logger backed by a
    :class:`RotatingFileHandler` under ``config.log_dir``.
    """

    def __init__(self, config: LlmLoggingConfig) -> None:
        self.config = config
        self.path = config.log_dir / TRANSCRIPT_FILE
        self._logger = logging.getLogger(transcript_logger_name(self.path))
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        # one handler set per file; a second transcript on the same path replaces it
        self.close()

        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            self.path,
            maxBytes=config.max_log_size_mb * 1024 * 1024,
            backupCount=config.log_files_to_keep,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(file_handler)
        if config.console_logging:
            console = logging.StreamHandler(sys.stderr)
            console.setFormatter(logging.Formatter("[llm] %(message)s"))
            self._logger.addHandler(console)
        LOGGER.debug("writing llm transcript to %s", self.path)

    def _write(self, entry: dict[str, Any]) -> None:
        entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        self._logger.info(json.dumps(entry, ensure_ascii=False))

    def log_request(self, *, provider: str, model: str, request: GenerateRequest, streaming: bool) -> str:
        call_id = uuid.uuid4().hex
        prompt = request.prompt_text()
        self._write(
            {
                "kind": "request",
                "call_id": call_id,
                "provider": provider,
                "model": model,
                "streaming": streaming,
                "prompt": prompt if self.config.include_full_prompts else summarize(prompt),
                "prompt_chars": len(prompt),
                "tools": [tool.name for tool in request.tools or ()],
            }
        )
        return call_id

    def log_response(self, call_id: str, result: GenerateResult, *, duration: float) -> None:
        usage = result.usage
        self._write(
            {
                "kind": "response",
                "call_id": call_id,
                "duration_ms": round(duration * 1000),
                "response": result.text if self.config.include_full_responses else summarize(result.text),
                "response_chars": len(result.text),
                "tool_calls": [call.name for call in result.tool_calls],
                "input_tokens": usage.input_tokens if usage else None,
                "output_tokens": usage.output_tokens if usage else None,
            }
        )

    def log_failure(self, call_id: str, error: ProviderError, *, duration: float) -> None:
        self._write(
            {
                "kind": "error",
                "call_id": call_id,
                "duration_ms": round(duration * 1000),
                "error_kind": error.kind.value,
                "message": str(error),
                "partial_chars": len(error.partial_text),
            }
        )

    def close(self) -> None:
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()


class LoggedProvider:
    """Wrap a provider so every call lands in a :class:`LlmTranscript`."""

    def __init__(self, inner: Provider, transcript: LlmTranscript, *, provider: str) -> None:
        self.inner = inner
        self.transcript = transcript
        self.provider = provider
        self.model = inner.model

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        call_id = self.transcript.log_request(
            provider=self.provider, model=self.model, request=request, streaming=False
        )
        started = time.monotonic()
        try:
            result = await self.inner.generate(request)
        except ProviderError as exc:
            self.transcript.log_failure(call_id, exc, duration=time.monotonic() - started)
            raise
        self.transcript.log_response(call_id, result, duration=time.monotonic() - started)
        return result

    async def generate_streaming(self, request: GenerateRequest, on_event: EventCallback) -> GenerateResult:
        call_id = self.transcript.log_request(
            provider=self.provider, model=self.model, request=request, streaming=True
        )
        started = time.monotonic()
        try:
            result = await self.inner.generate_streaming(request, on_event)
        except ProviderError as exc:
            self.transcript.log_failure(call_id, exc, duration=time.monotonic() - started)
            raise
        self.transcript.log_response(call_id, result, duration=time.monotonic() - started)
        return result
