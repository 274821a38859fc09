"""Configuration management for prwatch.

Example usage:
    from prwatch.config import load_config

    config = load_config("prwatch.yaml")
    interval = config.monitor.default_refresh_interval_seconds
"""

from .exceptions import (
    ConfigurationError,
    ConfigurationFileError,
    ConfigurationValidationError,
)
from .loader import (
    ConfigurationLoader,
    get_config,
    load_config,
)
from .models import (
    Config,
    GitHubConfig,
    LogLevel,
    MonitorConfig,
    StorageConfig,
    SystemConfig,
)

__all__ = [
    "Config",
    "ConfigurationError",
    "ConfigurationFileError",
    "ConfigurationLoader",
    "ConfigurationValidationError",
    "GitHubConfig",
    "LogLevel",
    "MonitorConfig",
    "StorageConfig",
    "SystemConfig",
    "get_config",
    "load_config",
]
