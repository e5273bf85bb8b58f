"""Adapter interfaces and provider implementations."""

from __future__ import annotations

from .anthropic import AnthropicAdapter, AnthropicStreamNormalizer
from .base import Provider, ProviderOptions
from .mock import MockAdapter, MockBehavior, MockProfile
from .openai import OpenAIAdapter, OpenAIChatNormalizer, OpenAIResponsesNormalizer, WireShape
from .transport import HttpTransport

__all__ = [
    "AnthropicAdapter",
    "AnthropicStreamNormalizer",
    "HttpTransport",
    "MockAdapter",
    "MockBehavior",
    "MockProfile",
    "OpenAIAdapter",
    "OpenAIChatNormalizer",
    "OpenAIResponsesNormalizer",
    "Provider",
    "ProviderOptions",
    "WireShape",
]
