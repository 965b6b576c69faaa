"""Configuration management for tmux-crew."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class CrewSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    state_dir: Path = Field(default=Path(".crew/state"), validation_alias="CREW_STATE_DIR")
    trusted_cli_dirs: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="CREW_TRUSTED_CLI_DIRS"
    )
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="CREW_PROFILE_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="CREW_LOG_LEVEL")
    heartbeat_max_age_ms: int = Field(default=30_000, validation_alias="CREW_HEARTBEAT_MAX_AGE_MS")
    shell_ready_timeout_ms: int = Field(
        default=10_000, validation_alias="CREW_SHELL_READY_TIMEOUT_MS"
    )
    layout_debounce_ms: int = Field(default=150, validation_alias="CREW_LAYOUT_DEBOUNCE_MS")
    at_risk_error_threshold: int = Field(default=2, validation_alias="CREW_AT_RISK_ERRORS")
    task_timeout_s: float = Field(default=600.0, validation_alias="CREW_TASK_TIMEOUT_S")
    tmux_command_timeout_s: float = Field(default=10.0, validation_alias="CREW_TMUX_TIMEOUT_S")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CREW_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError("CREW_PROFILE_PATHS must be a list of paths or a path-separated string")

    @field_validator("trusted_cli_dirs", mode="before")
    @classmethod
    def _parse_trusted_dirs(cls, value):
        # Relative entries are dropped so cwd never becomes a trusted prefix.
        if value is None or value == "":
            return ()
        if isinstance(value, str):
            value = value.split(":")
        if isinstance(value, (list, tuple)):
            entries = [str(item).strip() for item in value]
            return tuple(entry for entry in entries if entry and os.path.isabs(entry))
        raise TypeError("CREW_TRUSTED_CLI_DIRS must be a colon-separated string")

    @field_validator(
        "heartbeat_max_age_ms",
        "shell_ready_timeout_ms",
        "at_risk_error_threshold",
        "task_timeout_s",
        "tmux_command_timeout_s",
    )
    @classmethod
    def _require_positive(cls, value, info):
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("layout_debounce_ms")
    @classmethod
    def _validate_debounce(cls, value: int) -> int:
        if value < 0:
            raise ValueError("CREW_LAYOUT_DEBOUNCE_MS must be >= 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> CrewSettings:
    """Return cached settings instance."""

    settings = CrewSettings()
    settings.state_dir = settings.state_dir.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["CrewSettings", "get_settings"]
