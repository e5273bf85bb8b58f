"""Typed failures raised by provider adapters and their collaborators."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Distinguishable failure categories surfaced to callers."""

    MISSING_CREDENTIAL = "missing_credential"
    CONFIGURATION = "configuration"
    RATE_LIMITED = "rate_limited"
    PARAMETER_INCOMPATIBLE = "parameter_incompatible"
    FIRST_TOKEN_TIMEOUT = "first_token_timeout"
    STREAM_STALLED = "stream_stalled"
    UPSTREAM_ERROR = "upstream_error"
    MALFORMED_EVENT = "malformed_event"


class ProviderError(RuntimeError):
    """Base class for every failure scoped to a single provider call.

    ``model`` and ``shape`` describe the attempted request when known so the
    caller can log or retry at a higher level. ``partial_text`` holds any text
    accumulated before a streaming call was aborted.
    """

    kind: ErrorKind = ErrorKind.UPSTREAM_ERROR

    def __init__(
        self,
        message: str,
        *,
        model: str | None = None,
        shape: str | None = None,
        partial_text: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.model = model
        self.shape = shape
        self.partial_text = partial_text

    def with_context(self, *, model: str | None = None, shape: str | None = None) -> ProviderError:
        """Fill in missing request context and return ``self`` for re-raising."""

        if self.model is None:
            self.model = model
        if self.shape is None:
            self.shape = shape
        return self


class ConfigurationError(ProviderError):
    """Raised when a provider configuration cannot be turned into an adapter."""

    kind = ErrorKind.CONFIGURATION


class MissingCredentialError(ConfigurationError):
    """Raised at construction time when a required credential is absent."""

    kind = ErrorKind.MISSING_CREDENTIAL

    def __init__(self, var_name: str, *, alternatives: tuple[str, ...] = ()) -> None:
        message = f"missing credential: set {var_name}"
        if alternatives:
            message += f" (or one of {', '.join(alternatives)})"
        super().__init__(message)
        self.var_name = var_name
        self.alternatives = alternatives


class RateLimitedError(ProviderError):
    """A backend answered HTTP 429; absorbed by the rate-limit retry loop."""

    kind = ErrorKind.RATE_LIMITED


class ParameterIncompatibleError(ProviderError):
    """A backend rejected a request parameter and named an alternative."""

    kind = ErrorKind.PARAMETER_INCOMPATIBLE

    def __init__(self, message: str, *, suggested_param: str | None, **context: str | None) -> None:
        super().__init__(message, **context)
        self.suggested_param = suggested_param


class FirstTokenTimeoutError(ProviderError):
    """No content arrived before the first-token deadline."""

    kind = ErrorKind.FIRST_TOKEN_TIMEOUT


class StreamStalledError(ProviderError):
    """The gap between two stream chunks exceeded the stall deadline."""

    kind = ErrorKind.STREAM_STALLED

    def __init__(self, message: str, *, partial_char_count: int, **context: str | None) -> None:
        super().__init__(message, **context)
        self.partial_char_count = partial_char_count


class UpstreamError(ProviderError):
    """Any backend failure that does not match a recognized recovery pattern."""

    kind = ErrorKind.UPSTREAM_ERROR

    def __init__(self, message: str, *, status: int | None = None, **context: str | None) -> None:
        super().__init__(message, **context)
        self.status = status


class MalformedEventError(ProviderError):
    """A stream frame or JSON payload could not be parsed."""

    kind = ErrorKind.MALFORMED_EVENT
