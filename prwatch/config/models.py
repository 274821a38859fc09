"""Pydantic configuration models for prwatch.

The configuration hierarchy:
- Config: root
- SystemConfig: logging and debug switches
- GitHubConfig: API endpoint, optional initial token, request limits
- MonitorConfig: poll loop tuning
- StorageConfig: where the tracked list and settings are kept

String values may reference environment variables as ${VAR_NAME} or
${VAR_NAME:default}.
"""

import os
import re
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from prwatch.database.connection import DEFAULT_DATABASE_URL
from prwatch.github.client import GitHubClientConfig
from prwatch.models.settings import DEFAULT_REFRESH_INTERVAL_SECONDS
from prwatch.monitor.scheduler import SchedulerConfig

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


class LogLevel(str, Enum):
    """Supported logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class BaseConfigModel(BaseModel):
    """Base configuration model with environment variable substitution."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def substitute_env_vars(cls, values: Any) -> Any:
        """Substitute environment variables in string values.

        Supports formats:
        - ${VAR_NAME} - Required environment variable
        - ${VAR_NAME:default} - Optional with default value

        Raises:
            ValueError: If a required environment variable is missing
        """

        def replacer(match: re.Match[str]) -> str:
            var_name, default_value = match.group(1), match.group(2)
            env_value = os.getenv(var_name)
            if env_value is not None:
                return env_value
            if default_value is not None:
                return default_value
            raise ValueError(f"Required environment variable '{var_name}' not found")

        def substitute_value(value: Any) -> Any:
            if isinstance(value, str):
                return _ENV_PATTERN.sub(replacer, value)
            if isinstance(value, dict):
                return {k: substitute_value(v) for k, v in value.items()}
            if isinstance(value, list):
                return [substitute_value(item) for item in value]
            return value

        if not isinstance(values, dict):
            return values
        return {key: substitute_value(value) for key, value in values.items()}


class SystemConfig(BaseConfigModel):
    """Core system configuration settings."""

    log_level: LogLevel = Field(
        default=LogLevel.INFO, description="System-wide logging level"
    )

    debug_mode: bool = Field(
        default=False, description="Log at DEBUG regardless of log_level"
    )


class GitHubConfig(BaseConfigModel):
    """GitHub API access."""

    base_url: str = Field(
        default="https://api.github.com", description="REST API base URL"
    )

    web_url: str = Field(
        default="https://github.com",
        description="Browsable host used to build pull request links",
    )

    token: str | None = Field(
        default=None,
        description="Initial access token, used only when none is stored yet",
    )

    timeout_seconds: float = Field(
        default=30.0, gt=0, le=300, description="Timeout for a single fetch"
    )

    user_agent: str = Field(default="prwatch/1.0", description="User-Agent header")

    max_concurrent_requests: int = Field(
        default=10, ge=1, le=100, description="Client-wide request concurrency"
    )

    rate_limit_buffer: int = Field(
        default=0,
        ge=0,
        description="Stop issuing requests when remaining quota reaches this",
    )

    @field_validator("base_url", "web_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Require an http(s) URL."""
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid URL: {v}")
        return v.rstrip("/")

    @field_validator("token")
    @classmethod
    def normalize_token(cls, v: str | None) -> str | None:
        """Treat blank tokens as absent."""
        if v is None or not v.strip():
            return None
        return v.strip()

    @property
    def web_host(self) -> str:
        """Host part of ``web_url``."""
        return urlparse(self.web_url).netloc

    def to_client_config(self) -> GitHubClientConfig:
        """Build the HTTP client configuration."""
        return GitHubClientConfig(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            rate_limit_buffer=self.rate_limit_buffer,
            user_agent=self.user_agent,
            max_concurrent_requests=self.max_concurrent_requests,
        )


class MonitorConfig(BaseConfigModel):
    """Poll loop configuration."""

    default_refresh_interval_seconds: int = Field(
        default=DEFAULT_REFRESH_INTERVAL_SECONDS,
        ge=1,
        description="Refresh interval used until the user picks one",
    )

    max_concurrent_fetches: int = Field(
        default=4, ge=1, le=16, description="Fetches in flight per cycle"
    )

    extend_delay_on_rate_limit: bool = Field(
        default=True,
        description="Push the next cycle past the rate limit reset when known",
    )

    max_rate_limit_delay_seconds: float = Field(
        default=3600.0, ge=0, description="Upper bound for the extended delay"
    )

    stop_on_unauthorized: bool = Field(
        default=False, description="Stop monitoring when the token is rejected"
    )

    autostart: bool = Field(
        default=True, description="Start monitoring when the process starts"
    )

    def to_scheduler_config(self, fetch_timeout_seconds: float) -> SchedulerConfig:
        """Build the scheduler configuration."""
        return SchedulerConfig(
            max_concurrent_fetches=self.max_concurrent_fetches,
            fetch_timeout_seconds=fetch_timeout_seconds,
            extend_delay_on_rate_limit=self.extend_delay_on_rate_limit,
            max_rate_limit_delay_seconds=self.max_rate_limit_delay_seconds,
            stop_on_unauthorized=self.stop_on_unauthorized,
        )


class StorageConfig(BaseConfigModel):
    """Where the tracked list and settings live."""

    url: str | None = Field(
        default=DEFAULT_DATABASE_URL,
        description="SQLAlchemy async URL; null keeps state in memory only",
    )

    echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    @field_validator("url")
    @classmethod
    def validate_database_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is None:
            return None
        if not v.strip():
            raise ValueError("Database URL cannot be empty")

        scheme = urlparse(v).scheme
        if not scheme:
            raise ValueError("Database URL must include scheme")
        if scheme.split("+")[0] not in ("sqlite", "postgresql", "mysql"):
            raise ValueError(f"Unsupported database scheme: {scheme}")
        return v

    @property
    def in_memory(self) -> bool:
        """Check if state is kept in memory only."""
        return self.url is None


class Config(BaseConfigModel):
    """Root configuration."""

    system: SystemConfig = Field(default_factory=SystemConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
