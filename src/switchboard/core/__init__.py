"""Canonical model, stream primitives and shared per-model state."""

from __future__ import annotations

from .errors import (
    ConfigurationError,
    ErrorKind,
    FirstTokenTimeoutError,
    MalformedEventError,
    MissingCredentialError,
    ParameterIncompatibleError,
    ProviderError,
    RateLimitedError,
    StreamStalledError,
    UpstreamError,
)
from .message import (
    GenerateRequest,
    ImageUrlPart,
    Message,
    Role,
    TextPart,
    ToolChoice,
    ToolChoiceMode,
    ToolSpec,
)
from .preferences import EndpointPreferenceCache
from .rate_limiter import BackoffPolicy, ModelRateLimiter, RateLimitState
from .stream import (
    Error,
    Finished,
    GenerateResult,
    StreamAccumulator,
    StreamEvent,
    TextDelta,
    ToolCall,
    Usage,
)
from .timeouts import StreamTimeoutGuard

__all__ = [
    "BackoffPolicy",
    "ConfigurationError",
    "EndpointPreferenceCache",
    "Error",
    "ErrorKind",
    "Finished",
    "FirstTokenTimeoutError",
    "GenerateRequest",
    "GenerateResult",
    "ImageUrlPart",
    "MalformedEventError",
    "Message",
    "MissingCredentialError",
    "ModelRateLimiter",
    "ParameterIncompatibleError",
    "ProviderError",
    "RateLimitState",
    "RateLimitedError",
    "Role",
    "StreamAccumulator",
    "StreamEvent",
    "StreamStalledError",
    "StreamTimeoutGuard",
    "TextDelta",
    "TextPart",
    "ToolCall",
    "ToolChoice",
    "ToolChoiceMode",
    "ToolSpec",
    "Usage",
    "UpstreamError",
]
