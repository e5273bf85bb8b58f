"""Build provider adapters from configuration, owning process-wide state."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import httpx

from .config import DEFAULT_LOG_DIR, LlmLoggingConfig, ProviderConfig
from .core.adapters.anthropic import AnthropicAdapter, anthropic_headers
from .core.adapters.base import Provider
from .core.adapters.mock import MockAdapter, MockProfile
from .core.adapters.openai import OpenAIAdapter
from .core.adapters.transport import HttpTransport, merge_headers
from .core.errors import ConfigurationError, MissingCredentialError
from .core.preferences import EndpointPreferenceCache
from .core.rate_limiter import ModelRateLimiter
from .transcript import LlmTranscript, LoggedProvider

LOGGER = logging.getLogger(__name__)

UNPINNED = frozenset({"", "default"})


@dataclass(frozen=True, slots=True)
class ProviderInfo:
    env_var: str | None
    base_url: str
    default_model: str
    cache_file: str | None = None


PROVIDERS: dict[str, ProviderInfo] = {
    "openai": ProviderInfo(
        "OPENAI_API_KEY", "https://api.openai.com/v1", "gpt-4o-mini", "openai_endpoint_cache.json"
    ),
    "openrouter": ProviderInfo(
        "OPENROUTER_API_KEY", "https://openrouter.ai/api/v1", "openai/gpt-4o-mini", "openrouter_endpoint_cache.json"
    ),
    "anthropic": ProviderInfo("ANTHROPIC_API_KEY", "https://api.anthropic.com/v1", "claude-3-5-sonnet-latest"),
    "mock": ProviderInfo(None, "", "mock-model"),
}

# order in which an unpinned configuration probes the environment
DEFAULT_ORDER = ("openrouter", "openai", "anthropic")


class ProviderFactory:
    """Create adapters that share one rate limiter and per-family caches.

    Construction of adapters is synchronous and performs no network I/O.
    ``environ`` and ``transport`` are injectable for tests.
    """

    def __init__(
        self,
        *,
        rate_limiter: ModelRateLimiter | None = None,
        cache_dir: Path | str | None = None,
        environ: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logging_config: LlmLoggingConfig | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter or ModelRateLimiter()
        self.cache_dir = Path(cache_dir) if cache_dir is not None else DEFAULT_LOG_DIR
        self._environ = environ
        self._transport = transport
        self._logging_config = logging_config
        self._transcript: LlmTranscript | None = None
        self._caches: dict[str, EndpointPreferenceCache] = {}
        self._lock = threading.Lock()

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def preference_cache(self, provider: str) -> EndpointPreferenceCache:
        info = PROVIDERS[provider]
        if info.cache_file is None:
            msg = f"provider {provider!r} has no endpoint preference cache"
            raise ConfigurationError(msg)
        with self._lock:
            cache = self._caches.get(info.cache_file)
            if cache is None:
                cache = self._caches[info.cache_file] = EndpointPreferenceCache(self.cache_dir / info.cache_file)
            return cache

    def resolve_provider(self, config: ProviderConfig) -> str:
        """Return the provider name, choosing from the environment when unpinned."""

        if config.provider not in UNPINNED:
            if config.provider not in PROVIDERS:
                known = ", ".join(sorted(PROVIDERS))
                msg = f"unknown provider {config.provider!r}; expected one of {known}"
                raise ConfigurationError(msg)
            return config.provider

        for candidate in DEFAULT_ORDER:
            env_var = PROVIDERS[candidate].env_var
            if env_var and self.environ.get(env_var, "").strip():
                LOGGER.info("no provider pinned; selected %s from %s", candidate, env_var)
                return candidate
        if config.secret() is not None:
            LOGGER.info("no provider pinned; explicit api_key routed to %s", DEFAULT_ORDER[0])
            return DEFAULT_ORDER[0]
        first, *rest = (PROVIDERS[name].env_var for name in DEFAULT_ORDER)
        raise MissingCredentialError(str(first), alternatives=tuple(str(name) for name in rest))

    def credential(self, provider: str, config: ProviderConfig) -> str:
        explicit = config.secret()
        if explicit is not None:
            return explicit
        env_var = PROVIDERS[provider].env_var
        assert env_var is not None
        value = self.environ.get(env_var, "").strip()
        if not value:
            raise MissingCredentialError(env_var)
        return value

    def create(self, config: ProviderConfig) -> Provider:
        provider = self.resolve_provider(config)
        info = PROVIDERS[provider]
        model = config.model or info.default_model
        options = config.options()

        adapter: Provider
        if provider == "mock":
            adapter = MockAdapter(
                model=model,
                profile=MockProfile.from_env(self.environ),
                options=options,
                rate_limiter=self.rate_limiter,
            )
        else:
            api_key = self.credential(provider, config)
            if provider == "anthropic":
                auth = anthropic_headers(api_key)
            else:
                auth = {"Authorization": f"Bearer {api_key}"}
            transport = HttpTransport(
                config.base_url or info.base_url,
                model=model,
                rate_limiter=self.rate_limiter,
                headers=merge_headers(auth, config.headers),
                transport=self._transport,
                timeout=config.request_timeout_s,
                max_rate_limit_retries=config.max_rate_limit_retries,
                recognize_parameters=provider != "anthropic",
            )
            if provider == "anthropic":
                adapter = AnthropicAdapter(transport, options=options)
            else:
                adapter = OpenAIAdapter(
                    transport,
                    options=options,
                    preferences=self.preference_cache(provider),
                    provider_name=provider,
                )

        LOGGER.debug("created %s adapter for model %s", provider, model)
        transcript = self.transcript()
        if transcript is not None:
            return LoggedProvider(adapter, transcript, provider=provider)
        return adapter

    def transcript(self) -> LlmTranscript | None:
        if self._logging_config is None or not self._logging_config.enabled:
            return None
        with self._lock:
            if self._transcript is None:
                self._transcript = LlmTranscript(self._logging_config)
            return self._transcript


_default_factory: ProviderFactory | None = None
_default_lock = threading.Lock()


def default_factory() -> ProviderFactory:
    global _default_factory
    with _default_lock:
        if _default_factory is None:
            _default_factory = ProviderFactory()
        return _default_factory


def create_provider(config: ProviderConfig) -> Provider:
    """Create an adapter using the process-wide factory."""

    return default_factory().create(config)
