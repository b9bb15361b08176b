from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from greenagent.logging import get_logger

logger = get_logger(__name__)


class ActionClass(str, Enum):
    """Rate-limited action classes."""

    MESSAGE = "message"
    COMMAND = "command"
    SUBMISSION = "submission"
    VOICE = "voice"
    APPROVAL = "approval"
    WALLET = "wallet"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the agent core."""

    # Credential vault
    encryption_secret: str | None = env_field(
        None,
        "ENCRYPTION_SECRET",
        description="Master secret for custodial key encryption",
    )
    bot_token: str | None = env_field(
        None,
        "TELEGRAM_BOT_TOKEN",
        description="Fallback secret source when ENCRYPTION_SECRET is unset",
    )
    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/greenagent", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    data_root: str = env_field("/srv/greenagent", "DATA_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    # Rate limits (max requests per window)
    rate_limit_message_max: int = env_field(10, "RATE_LIMIT_MESSAGE_MAX")
    rate_limit_message_window_seconds: int = env_field(
        60, "RATE_LIMIT_MESSAGE_WINDOW_SECONDS"
    )
    rate_limit_command_max: int = env_field(20, "RATE_LIMIT_COMMAND_MAX")
    rate_limit_command_window_seconds: int = env_field(
        60, "RATE_LIMIT_COMMAND_WINDOW_SECONDS"
    )
    rate_limit_submission_max: int = env_field(5, "RATE_LIMIT_SUBMISSION_MAX")
    rate_limit_submission_window_seconds: int = env_field(
        300, "RATE_LIMIT_SUBMISSION_WINDOW_SECONDS"
    )
    rate_limit_voice_max: int = env_field(3, "RATE_LIMIT_VOICE_MAX")
    rate_limit_voice_window_seconds: int = env_field(
        60, "RATE_LIMIT_VOICE_WINDOW_SECONDS"
    )
    rate_limit_approval_max: int = env_field(30, "RATE_LIMIT_APPROVAL_MAX")
    rate_limit_approval_window_seconds: int = env_field(
        60, "RATE_LIMIT_APPROVAL_WINDOW_SECONDS"
    )
    rate_limit_wallet_max: int = env_field(5, "RATE_LIMIT_WALLET_MAX")
    rate_limit_wallet_window_seconds: int = env_field(
        300, "RATE_LIMIT_WALLET_WINDOW_SECONDS"
    )
    rate_limit_sweep_interval_seconds: int = env_field(
        60, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS"
    )
    # Voice service settings
    voice_api_key: str | None = env_field(None, "VOICE_API_KEY")
    voice_transcription_model: str = env_field("whisper-1", "VOICE_TRANSCRIPTION_MODEL")
    # Ledger gateway
    ledger_api_url: str = env_field(
        "http://localhost:8787",
        "LEDGER_API_URL",
        description="Attestation gateway base URL",
    )
    ledger_api_key: str | None = env_field(None, "LEDGER_API_KEY")
    ledger_chain_id: int = env_field(42161, "LEDGER_CHAIN_ID")
    ledger_cache_ttl_seconds: int = env_field(60, "LEDGER_CACHE_TTL_SECONDS")
    # Outbound notifications
    notifier_webhook_url: str | None = env_field(None, "NOTIFIER_WEBHOOK_URL")
    external_call_timeout_seconds: float = env_field(
        30.0,
        "EXTERNAL_CALL_TIMEOUT_SECONDS",
        description="Upper bound for any single call to an external collaborator",
    )
    pending_page_size: int = env_field(10, "PENDING_PAGE_SIZE")

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

    @field_validator(
        "rate_limit_message_max",
        "rate_limit_command_max",
        "rate_limit_submission_max",
        "rate_limit_voice_max",
        "rate_limit_approval_max",
        "rate_limit_wallet_max",
        "rate_limit_message_window_seconds",
        "rate_limit_command_window_seconds",
        "rate_limit_submission_window_seconds",
        "rate_limit_voice_window_seconds",
        "rate_limit_approval_window_seconds",
        "rate_limit_wallet_window_seconds",
        "pending_page_size",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("encryption_secret")
    @classmethod
    def _warn_short_secret(cls, value: str | None) -> str | None:
        if value and len(value) < 32:
            logger.warning(
                "encryption_secret_short",
                length=len(value),
                message="ENCRYPTION_SECRET should be at least 32 characters",
            )
        return value

    def rate_limit_overrides(self) -> dict[ActionClass, tuple[int, int]]:
        """Return ``{action: (max_requests, window_ms)}`` for every class."""
        overrides: dict[ActionClass, tuple[int, int]] = {}
        for action in ActionClass:
            max_requests = getattr(self, f"rate_limit_{action.value}_max")
            window_seconds = getattr(self, f"rate_limit_{action.value}_window_seconds")
            overrides[action] = (max_requests, window_seconds * 1000)
        return overrides


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
