"""Configuration models for providers, transcripts and cache locations."""

from __future__ import annotations

import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from .core.adapters.base import ProviderOptions
from .core.errors import ConfigurationError
from .core.timeouts import ms_to_seconds

DEFAULT_LOG_DIR = Path("logs/llm")
DEFAULT_PROFILE = "default"


class ReasoningEffort(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProviderConfig(BaseModel):
    """Settings for one backend connection."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    provider: str = Field("", description="Backend identifier; empty or 'default' selects one from the environment.")
    api_key: Optional[SecretStr] = Field(None, description="Explicit credential; empty or 'env' reads the provider's environment variable.")
    model: str = Field("", description="Model identifier sent to the backend; empty uses the provider default.")
    max_tokens: int = Field(1024, gt=0, description="Default max output tokens when a request sets none.")
    temperature: Optional[float] = Field(0.7, ge=0.0, le=2.0, description="Default sampling temperature.")
    base_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("base_url", "api_base"),
        description="Override of the provider's default API base URL.",
    )
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers sent with every request.")
    enable_streaming: bool = Field(True, description="When false, streaming calls replay a non-streaming answer.")
    first_token_timeout_ms: Optional[int] = Field(None, gt=0, description="First-token deadline; absent means unbounded.")
    stall_timeout_ms: Optional[int] = Field(None, gt=0, description="Inter-chunk stall deadline; absent means unbounded.")
    request_timeout_s: float = Field(120.0, gt=0, description="HTTP connect/read timeout for each attempt.")
    enable_thinking: bool = Field(False, description="Request extended thinking where the model supports it.")
    reasoning_effort: Optional[ReasoningEffort] = Field(None, description="Reasoning effort hint for reasoning models.")
    reasoning_budget_tokens: Optional[int] = Field(None, gt=0, description="Token budget for reasoning or thinking.")
    max_rate_limit_retries: int = Field(8, ge=0, description="Consecutive 429 answers absorbed before failing.")

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower()

    def secret(self) -> str | None:
        """Explicit credential, or ``None`` when it must come from the environment."""

        if self.api_key is None:
            return None
        value = self.api_key.get_secret_value().strip()
        if not value or value.lower() == "env":
            return None
        return value

    def options(self) -> ProviderOptions:
        return ProviderOptions(
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            enable_streaming=self.enable_streaming,
            first_token_timeout=ms_to_seconds(self.first_token_timeout_ms),
            stall_timeout=ms_to_seconds(self.stall_timeout_ms),
            enable_thinking=self.enable_thinking,
            reasoning_effort=self.reasoning_effort.value if self.reasoning_effort else None,
            reasoning_budget_tokens=self.reasoning_budget_tokens,
        )


class LlmLoggingConfig(BaseModel):
    """Where and how much of each call is written to the transcript log."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = Field(False, description="Write request and response transcripts.")
    log_dir: Path = Field(DEFAULT_LOG_DIR, description="Directory holding transcript files.")
    console_logging: bool = Field(False, description="Echo transcript entries to stderr.")
    include_full_prompts: bool = Field(False, description="Log prompts verbatim instead of a summary.")
    include_full_responses: bool = Field(False, description="Log responses verbatim instead of a summary.")
    max_log_size_mb: int = Field(10, gt=0, description="Size at which the transcript file rotates.")
    log_files_to_keep: int = Field(5, ge=0, description="Rotated transcript files retained.")


class SwitchboardConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    llm: Dict[str, ProviderConfig] = Field(default_factory=dict, description="Named provider profiles.")
    llm_logging: LlmLoggingConfig = Field(default_factory=LlmLoggingConfig)
    cache_dir: Path = Field(DEFAULT_LOG_DIR, description="Directory holding endpoint preference caches.")

    def profile(self, name: str | None = None) -> ProviderConfig:
        """Return the named profile, falling back to ``default`` or a lone profile."""

        if name is not None:
            try:
                return self.llm[name]
            except KeyError:
                known = ", ".join(sorted(self.llm)) or "none"
                msg = f"unknown llm profile {name!r} (configured: {known})"
                raise ConfigurationError(msg) from None
        if DEFAULT_PROFILE in self.llm:
            return self.llm[DEFAULT_PROFILE]
        if len(self.llm) == 1:
            return next(iter(self.llm.values()))
        if not self.llm:
            return ProviderConfig()
        msg = "several llm profiles are configured; choose one explicitly"
        raise ConfigurationError(msg)


def _profiles(table: Any) -> Any:
    # a flat [llm] table is shorthand for [llm.default]
    if isinstance(table, dict) and table and not all(isinstance(value, dict) for value in table.values()):
        return {DEFAULT_PROFILE: table}
    return table


def parse_config(data: dict[str, Any]) -> SwitchboardConfig:
    payload = dict(data)
    if "llm" in payload:
        payload["llm"] = _profiles(payload["llm"])
    try:
        return SwitchboardConfig.model_validate(payload)
    except ValidationError as exc:
        msg = f"invalid configuration: {exc}"
        raise ConfigurationError(msg) from exc


def load_config(path: Path | str) -> SwitchboardConfig:
    """Read a TOML file with ``[llm.<profile>]`` and ``[llm_logging]`` tables."""

    config_path = Path(path)
    try:
        with config_path.open("rb") as handle:
            data = tomllib.load(handle)
    except FileNotFoundError as exc:
        msg = f"configuration file not found: {config_path}"
        raise ConfigurationError(msg) from exc
    except tomllib.TOMLDecodeError as exc:
        msg = f"configuration file {config_path} is not valid TOML: {exc}"
        raise ConfigurationError(msg) from exc
    return parse_config(data)
