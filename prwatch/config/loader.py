"""Configuration loading.

Configuration comes from, in increasing priority:
1. Default values of the pydantic models
2. A YAML configuration file
3. Environment variables referenced from that file as ${VAR} / ${VAR:default}
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .exceptions import (
    ConfigurationError,
    ConfigurationFileError,
    ConfigurationValidationError,
)
from .models import Config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "prwatch.yaml"
CONFIG_PATH_ENV_VAR = "PRWATCH_CONFIG_PATH"


class ConfigurationLoader:
    """Handles loading and validation of configuration from various sources."""

    def __init__(self) -> None:
        """Initialize configuration loader."""
        self._config: Config | None = None
        self._config_file_path: Path | None = None
        self._loaded_from_sources: dict[str, bool] = {
            "file": False,
            "dict": False,
            "defaults": True,
        }

    def load_from_file(self, config_path: str | Path) -> Config:
        """Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Loaded and validated configuration

        Raises:
            ConfigurationFileError: If file cannot be read or parsed
            ConfigurationValidationError: If configuration validation fails
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise ConfigurationFileError(
                f"Configuration file not found: {config_path}", str(config_path)
            )

        if not config_path.is_file():
            raise ConfigurationFileError(
                f"Configuration path is not a file: {config_path}", str(config_path)
            )

        try:
            with open(config_path, encoding="utf-8") as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationFileError(
                f"Failed to parse YAML configuration: {e}", str(config_path)
            ) from e
        except OSError as e:
            raise ConfigurationFileError(
                f"Failed to read configuration file: {e}", str(config_path)
            ) from e

        if config_data is None:
            config_data = {}
        if not isinstance(config_data, dict):
            raise ConfigurationFileError(
                "Configuration file must contain a mapping at the top level",
                str(config_path),
            )

        self._config = self._build(config_data)
        self._config_file_path = config_path.resolve()
        self._loaded_from_sources["file"] = True
        logger.info(f"Loaded configuration from {self._config_file_path}")
        return self._config

    def load_from_dict(self, config_data: dict[str, Any]) -> Config:
        """Load configuration from a dictionary.

        Raises:
            ConfigurationValidationError: If configuration validation fails
        """
        self._config = self._build(config_data)
        self._loaded_from_sources["dict"] = True
        return self._config

    def load_default(self) -> Config:
        """Load configuration with default values only."""
        self._config = self._build({})
        return self._config

    @staticmethod
    def _build(config_data: dict[str, Any]) -> Config:
        try:
            return Config(**config_data)
        except ValidationError as e:
            raise ConfigurationValidationError(
                f"Configuration validation failed: {e}",
                validation_errors=e.errors(),
            ) from e

    def find_config_file(self, filename: str = DEFAULT_CONFIG_FILENAME) -> Path | None:
        """Find a configuration file in standard locations.

        Search order:
        1. Current working directory
        2. PRWATCH_CONFIG_PATH environment variable (file or directory)
        3. ~/.prwatch/

        Returns:
            Path to found configuration file, or None if not found
        """
        search_paths = [Path.cwd() / filename]

        env_path_str = os.getenv(CONFIG_PATH_ENV_VAR)
        if env_path_str:
            env_path = Path(env_path_str)
            search_paths.append(env_path if env_path.is_file() else env_path / filename)

        search_paths.append(Path.home() / ".prwatch" / filename)

        for path in search_paths:
            if path.is_file():
                return path
        return None

    def auto_load(self, config_filename: str = DEFAULT_CONFIG_FILENAME) -> Config:
        """Load configuration from standard locations, falling back to defaults."""
        config_path = self.find_config_file(config_filename)
        if config_path is None:
            logger.info("No configuration file found, using defaults")
            return self.load_default()
        return self.load_from_file(config_path)

    @property
    def config(self) -> Config | None:
        """Get the loaded configuration."""
        return self._config

    @property
    def config_file_path(self) -> Path | None:
        """Get the path to the loaded configuration file."""
        return self._config_file_path

    @property
    def is_loaded(self) -> bool:
        """Check if configuration has been loaded."""
        return self._config is not None

    def get_loading_info(self) -> dict[str, Any]:
        """Describe where the configuration came from, without secrets."""
        summary = None
        if self._config is not None:
            summary = {
                "log_level": self._config.system.log_level.value,
                "github_base_url": self._config.github.base_url,
                "token_configured": self._config.github.token is not None,
                "storage": "memory" if self._config.storage.in_memory else "database",
                "autostart": self._config.monitor.autostart,
            }
        return {
            "loaded": self.is_loaded,
            "config_file": str(self._config_file_path)
            if self._config_file_path
            else None,
            "sources": self._loaded_from_sources.copy(),
            "config_summary": summary,
        }


# Global configuration loader instance
_loader = ConfigurationLoader()


def load_config(
    config_path: str | Path | None = None, auto_discover: bool = True
) -> Config:
    """Load configuration from file or auto-discovery.

    Args:
        config_path: Explicit path to configuration file
        auto_discover: Whether to search standard locations when no path is given

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If configuration cannot be loaded or is invalid
    """
    try:
        if config_path:
            return _loader.load_from_file(config_path)
        if auto_discover:
            return _loader.auto_load()
        return _loader.load_default()
    except (ConfigurationFileError, ConfigurationValidationError) as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e


def get_config() -> Config:
    """Get the currently loaded configuration.

    Raises:
        ConfigurationError: If no configuration has been loaded
    """
    if _loader.config is None:
        raise ConfigurationError("No configuration loaded. Call load_config() first.")
    return _loader.config
