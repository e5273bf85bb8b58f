"""Resilient multi-provider LLM client layer.

One :class:`~switchboard.core.adapters.base.Provider` contract covers OpenAI
chat/responses endpoints, OpenRouter, Anthropic messages and a deterministic
mock. Adapters share a per-model rate limiter, a persisted endpoint
preference cache and first-token/stall timeout handling for streams.
"""

from __future__ import annotations

from .config import LlmLoggingConfig, ProviderConfig, SwitchboardConfig, load_config
from .core import (
    ConfigurationError,
    EndpointPreferenceCache,
    Error,
    ErrorKind,
    Finished,
    FirstTokenTimeoutError,
    GenerateRequest,
    GenerateResult,
    ImageUrlPart,
    MalformedEventError,
    Message,
    MissingCredentialError,
    ModelRateLimiter,
    ParameterIncompatibleError,
    ProviderError,
    RateLimitedError,
    Role,
    StreamEvent,
    StreamStalledError,
    TextDelta,
    TextPart,
    ToolCall,
    ToolChoice,
    ToolSpec,
    UpstreamError,
    Usage,
)
from .core.adapters import Provider
from .factory import ProviderFactory, create_provider

__all__ = [
    "ConfigurationError",
    "EndpointPreferenceCache",
    "Error",
    "ErrorKind",
    "Finished",
    "FirstTokenTimeoutError",
    "GenerateRequest",
    "GenerateResult",
    "ImageUrlPart",
    "LlmLoggingConfig",
    "MalformedEventError",
    "Message",
    "MissingCredentialError",
    "ModelRateLimiter",
    "ParameterIncompatibleError",
    "Provider",
    "ProviderConfig",
    "ProviderError",
    "ProviderFactory",
    "RateLimitedError",
    "Role",
    "StreamEvent",
    "StreamStalledError",
    "SwitchboardConfig",
    "TextDelta",
    "TextPart",
    "ToolCall",
    "ToolChoice",
    "ToolSpec",
    "UpstreamError",
    "Usage",
    "create_provider",
    "load_config",
]

__version__ = "0.1.0"
