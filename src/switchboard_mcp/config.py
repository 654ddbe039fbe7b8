"""Configuration management for Switchboard."""

from __future__ import annotations

import logging
import shlex
import sys
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _default_worker_command() -> tuple[str, ...]:
    return (sys.executable, "-m", "switchboard_mcp.worker")


class SwitchboardSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = Field(default="INFO", validation_alias="SWITCHBOARD_LOG_LEVEL")

    # Worker process supervision
    worker_command: Annotated[tuple[str, ...], NoDecode] = Field(
        default_factory=_default_worker_command, validation_alias="SWITCHBOARD_WORKER_COMMAND"
    )
    tenant_env_var: str = Field(
        default="SWITCHBOARD_TENANT_ID", validation_alias="SWITCHBOARD_TENANT_ENV_VAR"
    )
    graceful_shutdown_timeout: float = Field(
        default=5.0, validation_alias="SWITCHBOARD_GRACEFUL_SHUTDOWN_TIMEOUT"
    )
    recovery_delay: float = Field(default=2.0, validation_alias="SWITCHBOARD_RECOVERY_DELAY")

    # Directory service
    directory_backend: str = Field(default="chroma", validation_alias="SWITCHBOARD_DIRECTORY_BACKEND")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    directory_collection: str = Field(
        default="tenant_sessions", validation_alias="SWITCHBOARD_DIRECTORY_COLLECTION"
    )
    watch_poll_interval: float = Field(
        default=1.0, validation_alias="SWITCHBOARD_WATCH_POLL_INTERVAL"
    )
    auth_dir: Path = Field(default=Path("./.auth"), validation_alias="SWITCHBOARD_AUTH_DIR")
    legacy_session_prefix: str = Field(
        default="switchboard", validation_alias="SWITCHBOARD_LEGACY_SESSION_PREFIX"
    )

    # Generation CLI
    generation_enabled: bool = Field(default=True, validation_alias="GENERATION_CLI_ENABLED")
    generation_command: str = Field(default="claude", validation_alias="GENERATION_CLI_COMMAND")
    generation_path: str | None = Field(default=None, validation_alias="GENERATION_CLI_PATH")
    generation_print_flag: str = Field(default="--print", validation_alias="GENERATION_CLI_PRINT_FLAG")
    generation_timeout: float = Field(default=120.0, validation_alias="GENERATION_CLI_TIMEOUT")
    generation_warmup: float = Field(default=8.0, validation_alias="GENERATION_CLI_WARMUP")
    restart_delay: float = Field(default=2.0, validation_alias="GENERATION_CLI_RESTART_DELAY")
    max_restart_attempts: int = Field(default=3, validation_alias="GENERATION_CLI_MAX_RESTARTS")
    rate_limit_max_requests: int = Field(default=10, validation_alias="GENERATION_CLI_MAX_REQUESTS")
    rate_limit_window: float = Field(default=60.0, validation_alias="GENERATION_CLI_WINDOW")

    # Conversation sessions
    history_limit: int = Field(default=10, validation_alias="SWITCHBOARD_HISTORY_LIMIT")
    max_queue: int = Field(default=32, validation_alias="SWITCHBOARD_MAX_QUEUE")
    scratch_root: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()), validation_alias="SWITCHBOARD_SCRATCH_ROOT"
    )
    media_dir: Path = Field(default=Path("./temp"), validation_alias="SWITCHBOARD_MEDIA_DIR")
    prompt_profile_path: Path | None = Field(default=None, validation_alias="SWITCHBOARD_PROMPT_PROFILE")
    transport_factory: str | None = Field(default=None, validation_alias="SWITCHBOARD_TRANSPORT")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "SWITCHBOARD_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("worker_command", mode="before")
    @classmethod
    def _parse_worker_command(cls, value):
        if value is None or value == "":
            return _default_worker_command()
        if isinstance(value, str):
            parts = shlex.split(value)
            if not parts:
                return _default_worker_command()
            return tuple(parts)
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        raise TypeError("SWITCHBOARD_WORKER_COMMAND must be a command string or a list of arguments")

    @field_validator("directory_backend")
    @classmethod
    def _validate_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"chroma", "memory"}:
            raise ValueError("SWITCHBOARD_DIRECTORY_BACKEND must be 'chroma' or 'memory'")
        return normalized

    @field_validator(
        "graceful_shutdown_timeout",
        "generation_timeout",
        "rate_limit_window",
        "watch_poll_interval",
    )
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts and windows must be > 0")
        return value

    @field_validator("recovery_delay", "generation_warmup", "restart_delay")
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("delays must be >= 0")
        return value

    @field_validator("rate_limit_max_requests", "history_limit", "max_queue")
    @classmethod
    def _validate_at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("limits must be >= 1")
        return value

    @field_validator("max_restart_attempts")
    @classmethod
    def _validate_restart_attempts(cls, value: int) -> int:
        if value < 0:
            raise ValueError("GENERATION_CLI_MAX_RESTARTS must be >= 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> SwitchboardSettings:
    """Return cached settings instance."""

    settings = SwitchboardSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.auth_dir = settings.auth_dir.expanduser().resolve()
    settings.media_dir = settings.media_dir.expanduser().resolve()
    return settings


LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    """Configure root logging for Switchboard processes."""

    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


__all__ = ["LOG_FORMAT", "SwitchboardSettings", "configure_logging", "get_settings"]
