"""Test harness utilities for adapter validation."""

from .adapter_harness import StreamRun, collect, collect_async

__all__ = [
    "StreamRun",
    "collect",
    "collect_async",
]
