"""
Configuration loader module for message synchronization.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Basic validation of configuration structure
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from msgsync.utils import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load()

        # Load from specific file
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.msgsync/ or $MSGSYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Returns an empty dict if the file doesn't exist.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary containing configuration values

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)

            if config is None:
                logger.debug(f"Configuration file is empty: {path}")
                return {}

            if not isinstance(config, dict):
                raise ConfigError(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(config).__name__}"
                )

            logger.debug(f"Loaded configuration from {path}")
            return config

        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate top-level configuration keys and value types.

        Nested sections (retry, identity, gmail) are validated by the
        dataclasses in msgsync.config.sync_config.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        valid_keys: dict[str, type[Any] | tuple[type[Any], ...]] = {
            # Storage
            "database_path": str,
            "blob_dir": str,
            # Logging
            "log_dir": str,
            "log_level": str,
            "verbose": bool,
            "file_logging": bool,
            "keep_log_files": int,
            # Sync behavior
            "platforms": list,
            "organization_domain": str,
            "account_pause_seconds": (int, float),
            "max_account_workers": int,
            "max_fetch_workers": int,
            "max_pages": int,
            "page_size": int,
            "download_attachments": bool,
            "propagate_identities": bool,
            # Nested sections
            "retry": dict,
            "identity": dict,
            "gmail": dict,
        }

        for key, value in config.items():
            if key not in valid_keys:
                logger.warning(f"Ignoring unknown configuration key '{key}'")
                continue
            expected_type = valid_keys[key]
            # bool is a subclass of int, reject it for numeric keys
            if isinstance(value, bool) and expected_type is not bool:
                raise ConfigError(
                    f"Invalid type for '{key}': expected a number, got bool"
                )
            if not isinstance(value, expected_type):
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        positive_int_keys = [
            "max_account_workers",
            "max_fetch_workers",
            "max_pages",
            "page_size",
        ]
        for key in positive_int_keys:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        if "keep_log_files" in config and config["keep_log_files"] < 0:
            raise ConfigError(
                f"keep_log_files must be >= 0, got {config['keep_log_files']}"
            )

        if "account_pause_seconds" in config and config["account_pause_seconds"] < 0:
            raise ConfigError(
                f"account_pause_seconds must be >= 0, "
                f"got {config['account_pause_seconds']}"
            )

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
