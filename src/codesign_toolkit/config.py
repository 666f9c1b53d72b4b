"""Configuration for the code-signing toolkit.

Settings come from environment variables, optionally seeded from a ``.env``
file in the working directory, and are read once per process.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class TrackerSettings(BaseModel):
    """Jira connection used for audit tickets and the ``jira`` commands."""

    url: str | None = Field(default=None, description="Base URL of the Jira instance")
    user: str | None = Field(default=None)
    token: str | None = Field(default=None, description="API token or password")
    project: str | None = Field(default=None, description="Project key for audit tickets")
    timeout_seconds: float = Field(default=15.0, gt=0, le=300)

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.user and self.token)

    @property
    def audit_enabled(self) -> bool:
        return self.enabled and bool(self.project)


class TimestampSettings(BaseModel):
    timeout_seconds: float = Field(default=10.0, gt=0, le=300)


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    tracker: TrackerSettings = Field(default_factory=TrackerSettings)
    timestamp: TimestampSettings = Field(default_factory=TimestampSettings)


ENV_KEYS = {
    "log_level": "CODESIGN_LOG_LEVEL",
    "log_file": "CODESIGN_LOG_FILE",
    "jira_url": "JIRA_URL",
    "jira_user": "JIRA_USER",
    "jira_token": "JIRA_TOKEN",
    "jira_project": "JIRA_PROJECT",
    "jira_timeout": "JIRA_TIMEOUT_SECONDS",
    "timestamp_timeout": "CODESIGN_TIMESTAMP_TIMEOUT",
}


def _env_str(key: str) -> str | None:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


def reset_settings() -> None:
    """Forget the cached settings so the next load re-reads the environment."""
    _load_settings_cached.cache_clear()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=Path.cwd() / ".env")
    jira_url = _env_str(ENV_KEYS["jira_url"])

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _env_str(ENV_KEYS["log_file"]),
        },
        "tracker": {
            "url": jira_url.rstrip("/") if jira_url else None,
            "user": _env_str(ENV_KEYS["jira_user"]),
            "token": _env_str(ENV_KEYS["jira_token"]),
            "project": _env_str(ENV_KEYS["jira_project"]),
            "timeout_seconds": _env_float(
                ENV_KEYS["jira_timeout"], TrackerSettings().timeout_seconds
            ),
        },
        "timestamp": {
            "timeout_seconds": _env_float(
                ENV_KEYS["timestamp_timeout"], TimestampSettings().timeout_seconds
            ),
        },
    }

    try:
        return Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc


__all__ = [
    "ENV_KEYS",
    "LoggingSettings",
    "Settings",
    "TimestampSettings",
    "TrackerSettings",
    "load_settings",
    "reset_settings",
]
