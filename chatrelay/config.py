from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.logging import get_logger

logger = get_logger(__name__)


class ProviderFamily(str, Enum):
    """Upstream wire-protocol shapes a connection can speak."""

    OPENAI = "openai"
    AZURE_OPENAI = "azure_openai"
    OLLAMA = "ollama"


class AuthType(str, Enum):
    """How a connection authenticates against its provider."""

    BEARER = "bearer"
    NONE = "none"
    SYSTEM_OAUTH = "system_oauth"


class DeploymentEnv(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional ``.env`` file.

    Fields marked "overridable" act as fallbacks: the same key stored in the
    system settings table wins when present.
    """

    shared_fs_root: str = env_field("/srv/chatrelay", "SHARED_FS_ROOT")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    app_env: DeploymentEnv = env_field(DeploymentEnv.DEVELOPMENT, "APP_ENV")
    host: str = env_field("127.0.0.1", "CHATRELAY_HOST")
    port: int = env_field(8000, "CHATRELAY_PORT")
    log_level: str = env_field("info", "LOG_LEVEL")

    # Quota
    anonymous_daily_quota: int = env_field(
        20, "ANONYMOUS_DAILY_QUOTA", description="Shared anonymous pool limit (overridable)"
    )
    default_user_daily_quota: int = env_field(
        200, "DEFAULT_USER_DAILY_QUOTA", description="Per-user daily limit (overridable)"
    )

    # Context and completion budgets
    max_context_tokens: int = env_field(
        4000, "MAX_CONTEXT_TOKENS", description="Last-resort context window (overridable)"
    )
    reasoning_max_output_tokens_default: int = env_field(
        32000, "REASONING_MAX_OUTPUT_TOKENS_DEFAULT"
    )

    # Provider calls
    provider_timeout_ms: int = env_field(
        300000, "PROVIDER_TIMEOUT_MS", description="Deadline for one provider call (overridable)"
    )
    provider_backoff_429_ms: int = env_field(15000, "PROVIDER_BACKOFF_429_MS")
    provider_backoff_5xx_ms: int = env_field(2000, "PROVIDER_BACKOFF_5XX_MS")
    system_oauth_token: str | None = env_field(None, "SYSTEM_OAUTH_TOKEN")

    # Request shaping
    chat_system_prompt: str | None = env_field(None, "CHAT_SYSTEM_PROMPT")
    temperature_default: float | None = env_field(None, "TEMPERATURE_DEFAULT")
    reasoning_enabled: bool = env_field(True, "REASONING_ENABLED")
    openai_reasoning_effort: str = env_field("", "OPENAI_REASONING_EFFORT")
    ollama_think: bool = env_field(False, "OLLAMA_THINK")

    # Compression
    context_compression_enabled: bool = env_field(True, "CONTEXT_COMPRESSION_ENABLED")
    context_compression_threshold_ratio: float = env_field(
        0.5, "CONTEXT_COMPRESSION_THRESHOLD_RATIO"
    )
    context_compression_tail_messages: int = env_field(
        12, "CONTEXT_COMPRESSION_TAIL_MESSAGES"
    )

    # Task traces
    task_trace_enabled: bool = env_field(False, "TASK_TRACE_ENABLED")
    task_trace_default_on: bool = env_field(False, "TASK_TRACE_DEFAULT_ON")
    task_trace_admin_only: bool = env_field(True, "TASK_TRACE_ADMIN_ONLY")
    task_trace_env: str = env_field("dev", "TASK_TRACE_ENV")
    task_trace_retention_days: int = env_field(7, "TASK_TRACE_RETENTION_DAYS")
    task_trace_max_events: int = env_field(2000, "TASK_TRACE_MAX_EVENTS")
    task_trace_log_dir: str | None = env_field(None, "TASK_TRACE_LOG_DIR")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> DeploymentEnv:
        if isinstance(value, DeploymentEnv):
            return value
        normalized = str(value or "").strip().lower()
        if normalized in {"prod", "production"}:
            return DeploymentEnv.PRODUCTION
        return DeploymentEnv.DEVELOPMENT

    @field_validator("redis_url", "system_oauth_token", "chat_system_prompt", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("temperature_default", mode="before")
    @classmethod
    def _blank_temperature(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("anonymous_daily_quota", "default_user_daily_quota")
    @classmethod
    def _non_negative_quota(cls, value: int) -> int:
        if value < 0:
            logger.warning("quota_default_negative", value=value)
            return 0
        return value

    def fallback_settings(self) -> dict[str, Any]:
        """Values that seed the system-settings view before store overrides."""

        keys = (
            "anonymous_daily_quota",
            "default_user_daily_quota",
            "max_context_tokens",
            "reasoning_max_output_tokens_default",
            "provider_timeout_ms",
            "chat_system_prompt",
            "temperature_default",
            "reasoning_enabled",
            "openai_reasoning_effort",
            "ollama_think",
            "context_compression_enabled",
            "context_compression_threshold_ratio",
            "context_compression_tail_messages",
            "task_trace_enabled",
            "task_trace_default_on",
            "task_trace_admin_only",
            "task_trace_env",
            "task_trace_retention_days",
            "task_trace_max_events",
        )
        return {key: getattr(self, key) for key in keys if getattr(self, key) is not None}


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
