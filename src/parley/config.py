"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Settings live in parley.toml. Environment variables override it using ``__``
as the nested delimiter (e.g. ``RUNNER__DEFAULT_PERMISSION_MODE``).

Priority (highest wins): init args > env vars > .env > parley.toml

Usage::

    from parley.config import get_settings

    s = get_settings()
    print(s.runner.setting_sources)
    print(s.watchdog.active_run_max_age_ms)
"""

from __future__ import annotations

import re
from functools import cached_property
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

PermissionMode = Literal["default", "acceptEdits", "plan", "bypassPermissions"]
SettingSource = Literal["user", "project", "local"]

DEFAULT_SYSTEM_PROMPT_POLICY = " ".join(
    [
        "You are running inside a chat bridge host.",
        "You CAN return files to the user via this host.",
        "When you want the bridge to attach a file, include a standalone line: ATTACH: <path>.",
        "When asked to return an artifact, create or modify a real file and keep it on disk.",
        "Prefer writing outputs in the current project directory unless asked otherwise.",
    ]
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in parley.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class RunnerConfig(_StrictModel):
    default_permission_mode: PermissionMode = "bypassPermissions"
    setting_sources: list[SettingSource] = ["user", "project", "local"]
    safe_mode_setting_sources: list[SettingSource] = []  # minimal-trust scope
    mcp_config_path: str = ".claude/mcp.json"  # relative to the request's cwd
    # Matches "exited with code 1" (CLI) and "exit code 1" / "exit code: 1" (SDK)
    retryable_error_pattern: str = r"\bexit(?:ed with)? code:? 1\b"
    system_prompt_policy: str = DEFAULT_SYSTEM_PROMPT_POLICY
    interrupted_text: str = "Interrupted."

    @field_validator("retryable_error_pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"Invalid retryable_error_pattern: {exc}") from exc
        return v


class WatchdogConfig(_StrictModel):
    active_run_max_age_ms: int = 1800000  # 30 minutes
    interval_ms: int = 60000  # 1 minute

    @field_validator("active_run_max_age_ms", "interval_ms")
    @classmethod
    def clamp_positive(cls, v: int) -> int:
        return max(1, v)


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="parley.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    runner: RunnerConfig = RunnerConfig()
    watchdog: WatchdogConfig = WatchdogConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > parley.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def retryable_error_re(self) -> re.Pattern[str]:
        return re.compile(self.runner.retryable_error_pattern, re.IGNORECASE)

    @cached_property
    def watchdog_interval(self) -> float:
        return self.watchdog.interval_ms / 1000


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
