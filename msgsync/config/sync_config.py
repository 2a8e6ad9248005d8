"""
Typed sync configuration.

Turns the raw configuration dictionary (see msgsync.config.loader) into
dataclasses used by the orchestrator, the identity resolver and the
platform connectors.

Configuration file format (config.yaml):

    database_path: ~/.msgsync/msgsync.db   # relative paths are under the config dir
    blob_dir: blobs
    log_dir: logs
    log_level: info
    keep_log_files: 10
    organization_domain: example.com
    platforms: [gmail, chat]
    account_pause_seconds: 2
    max_account_workers: 1
    max_fetch_workers: 4
    retry:
      max_retries: 5
      initial_delay: 1.0
      max_delay: 60.0
    identity:
      resolution_depth: directory
      min_stored_confidence: 50
      low_confidence_threshold: 50
    gmail:
      labels: [INBOX, SENT]
      lookback_days: 30

Notes:
    - Every key is optional; missing keys fall back to the defaults below
    - resolution_depth "local" never queries the directory service
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from msgsync.config.loader import ConfigError, ConfigLoader
from msgsync.utils.logging import DEFAULT_KEEP_LOG_FILES, LOG_LEVELS

logger = logging.getLogger(__name__)


class ResolutionDepth(str, Enum):
    """How far the identity resolver may go before falling back."""

    LOCAL = "local"  # Cache, store, email address, placeholder
    DIRECTORY = "directory"  # Additionally query the platform directory


VALID_RESOLUTION_DEPTHS = {depth.value for depth in ResolutionDepth}

# Platforms the orchestrator knows how to sync
PLATFORM_GMAIL = "gmail"
PLATFORM_CHAT = "chat"
VALID_PLATFORMS = (PLATFORM_GMAIL, PLATFORM_CHAT)

DEFAULT_DATABASE_PATH = "~/.msgsync/msgsync.db"
DEFAULT_BLOB_DIR = "~/.msgsync/blobs"
DEFAULT_PLACEHOLDER_DOMAIN = "unresolved.invalid"
DEFAULT_GMAIL_LABELS = ("INBOX", "SENT")
DEFAULT_MAX_PAGES = 50


class SyncConfigError(ConfigError):
    """Raised when sync configuration validation fails."""

    pass


def _require_type(section: str, key: str, value: Any, expected: type | tuple) -> Any:
    if isinstance(value, bool) and expected not in (bool, (bool,)):
        raise SyncConfigError(f"{section}.{key} must not be a boolean")
    if not isinstance(value, expected):
        raise SyncConfigError(
            f"{section}.{key} has invalid type {type(value).__name__}"
        )
    return value


def _require_section(name: str, data: Any) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SyncConfigError(
            f"{name} configuration must be a dictionary, got {type(data).__name__}"
        )
    return data


@dataclass
class RetryConfig:
    """
    Backoff settings for transient upstream errors.

    Attributes:
        max_retries: Total attempts per call, including the first one
        initial_delay: First backoff delay in seconds, doubled per attempt
        max_delay: Upper bound for a single backoff delay in seconds
    """

    max_retries: int = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RetryConfig:
        data = _require_section("retry", data)
        config = cls(
            max_retries=_require_type(
                "retry", "max_retries", data.get("max_retries", 5), int
            ),
            initial_delay=float(
                _require_type(
                    "retry", "initial_delay", data.get("initial_delay", 1.0),
                    (int, float),
                )
            ),
            max_delay=float(
                _require_type(
                    "retry", "max_delay", data.get("max_delay", 60.0), (int, float)
                )
            ),
        )
        if config.max_retries < 1:
            raise SyncConfigError(
                f"retry.max_retries must be >= 1, got {config.max_retries}"
            )
        if config.initial_delay < 0 or config.max_delay < 0:
            raise SyncConfigError("retry delays must be >= 0")
        return config


@dataclass
class IdentityConfig:
    """
    Identity resolution settings.

    Attributes:
        resolution_depth: "local" or "directory"
        min_stored_confidence: Stored mappings below this confidence do not
            stop the cascade when the directory may still be queried
        low_confidence_threshold: Display names below this confidence are
            treated as placeholders by callers
        placeholder_domain: Domain used for synthesized placeholder emails.
            Defaults to the organization domain when one is configured.
    """

    resolution_depth: ResolutionDepth = ResolutionDepth.DIRECTORY
    min_stored_confidence: int = 50
    low_confidence_threshold: int = 50
    placeholder_domain: str = DEFAULT_PLACEHOLDER_DOMAIN

    @classmethod
    def from_dict(
        cls, data: dict[str, Any] | None, organization_domain: str | None = None
    ) -> IdentityConfig:
        data = _require_section("identity", data)

        depth = data.get("resolution_depth", ResolutionDepth.DIRECTORY.value)
        if depth not in VALID_RESOLUTION_DEPTHS:
            raise SyncConfigError(
                f"identity.resolution_depth must be one of "
                f"{sorted(VALID_RESOLUTION_DEPTHS)}, got {depth!r}"
            )

        thresholds = {}
        for key in ("min_stored_confidence", "low_confidence_threshold"):
            value = _require_type("identity", key, data.get(key, 50), int)
            if not 0 <= value <= 100:
                raise SyncConfigError(
                    f"identity.{key} must be between 0 and 100, got {value}"
                )
            thresholds[key] = value

        placeholder_domain = data.get(
            "placeholder_domain", organization_domain or DEFAULT_PLACEHOLDER_DOMAIN
        )
        _require_type("identity", "placeholder_domain", placeholder_domain, str)
        if not placeholder_domain.strip():
            raise SyncConfigError("identity.placeholder_domain cannot be empty")

        return cls(
            resolution_depth=ResolutionDepth(depth),
            placeholder_domain=placeholder_domain.strip().lower(),
            **thresholds,
        )


@dataclass
class GmailConfig:
    """
    Gmail fetch settings.

    Attributes:
        labels: Labels fetched independently; their threads are grouped
        outgoing_label: Label whose messages were sent by the account
        lookback_days: Only messages newer than this many days are listed
    """

    labels: tuple[str, ...] = DEFAULT_GMAIL_LABELS
    outgoing_label: str = "SENT"
    lookback_days: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GmailConfig:
        data = _require_section("gmail", data)

        labels = data.get("labels", list(DEFAULT_GMAIL_LABELS))
        if not isinstance(labels, list) or not labels:
            raise SyncConfigError("gmail.labels must be a non-empty list")
        for label in labels:
            if not isinstance(label, str) or not label.strip():
                raise SyncConfigError(f"gmail.labels contains invalid label {label!r}")

        outgoing_label = _require_type(
            "gmail", "outgoing_label", data.get("outgoing_label", "SENT"), str
        )
        lookback_days = _require_type(
            "gmail", "lookback_days", data.get("lookback_days", 30), int
        )
        if lookback_days < 1:
            raise SyncConfigError(
                f"gmail.lookback_days must be >= 1, got {lookback_days}"
            )

        return cls(
            labels=tuple(label.strip() for label in labels),
            outgoing_label=outgoing_label,
            lookback_days=lookback_days,
        )


@dataclass
class SyncConfig:
    """
    Top-level sync configuration.

    Usage:
        # Defaults
        config = SyncConfig()

        # From a parsed YAML dictionary
        config = SyncConfig.from_dict({"organization_domain": "example.com"})

        # From the config directory
        config = load_config()
    """

    database_path: str = DEFAULT_DATABASE_PATH
    blob_dir: str = DEFAULT_BLOB_DIR
    log_dir: str | None = None
    log_level: str | None = None
    verbose: bool = False
    file_logging: bool = True
    keep_log_files: int = DEFAULT_KEEP_LOG_FILES
    platforms: tuple[str, ...] = VALID_PLATFORMS
    organization_domain: str | None = None
    account_pause_seconds: float = 2.0
    max_account_workers: int = 1
    max_fetch_workers: int = 4
    max_pages: int = DEFAULT_MAX_PAGES
    page_size: int = 100
    download_attachments: bool = False
    propagate_identities: bool = True
    retry: RetryConfig = field(default_factory=RetryConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    gmail: GmailConfig = field(default_factory=GmailConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """
        Create a SyncConfig from a configuration dictionary.

        Args:
            data: Dictionary as returned by ConfigLoader

        Returns:
            SyncConfig with defaults for missing keys

        Raises:
            SyncConfigError: If the structure or a value is invalid
        """
        if not isinstance(data, dict):
            raise SyncConfigError(
                f"Configuration must be a dictionary, got {type(data).__name__}"
            )

        platforms = data.get("platforms", list(VALID_PLATFORMS))
        if not isinstance(platforms, list) or not platforms:
            raise SyncConfigError("platforms must be a non-empty list")
        for platform in platforms:
            if platform not in VALID_PLATFORMS:
                raise SyncConfigError(
                    f"Unknown platform {platform!r}. "
                    f"Must be one of: {', '.join(VALID_PLATFORMS)}"
                )

        log_level = data.get("log_level")
        if log_level is not None and log_level.strip().upper() not in LOG_LEVELS:
            raise SyncConfigError(
                f"Unknown log_level {log_level!r}. "
                f"Must be one of: {', '.join(LOG_LEVELS)}"
            )

        organization_domain = data.get("organization_domain")
        if organization_domain is not None:
            organization_domain = organization_domain.strip().lower() or None

        return cls(
            database_path=data.get("database_path", DEFAULT_DATABASE_PATH),
            blob_dir=data.get("blob_dir", DEFAULT_BLOB_DIR),
            log_dir=data.get("log_dir"),
            log_level=log_level,
            verbose=data.get("verbose", False),
            file_logging=data.get("file_logging", True),
            keep_log_files=data.get("keep_log_files", DEFAULT_KEEP_LOG_FILES),
            platforms=tuple(platforms),
            organization_domain=organization_domain,
            account_pause_seconds=float(data.get("account_pause_seconds", 2.0)),
            max_account_workers=data.get("max_account_workers", 1),
            max_fetch_workers=data.get("max_fetch_workers", 4),
            max_pages=data.get("max_pages", DEFAULT_MAX_PAGES),
            page_size=data.get("page_size", 100),
            download_attachments=data.get("download_attachments", False),
            propagate_identities=data.get("propagate_identities", True),
            retry=RetryConfig.from_dict(data.get("retry")),
            identity=IdentityConfig.from_dict(
                data.get("identity"), organization_domain=organization_domain
            ),
            gmail=GmailConfig.from_dict(data.get("gmail")),
        )


def load_config(config_dir: Path | str | None = None) -> SyncConfig:
    """
    Load the sync configuration from a config directory.

    Resolution order for the config directory:
    1. Explicit config_dir parameter (if provided)
    2. MSGSYNC_CONFIG_DIR environment variable (if set)
    3. Default: ~/.msgsync

    Args:
        config_dir: Configuration directory path

    Returns:
        SyncConfig instance. Defaults are returned when config.yaml is missing.

    Raises:
        ConfigError: If config.yaml cannot be parsed
        SyncConfigError: If config.yaml has an invalid structure
    """
    loader = ConfigLoader(config_dir=Path(config_dir) if config_dir else None)
    data = loader.load_and_validate()
    logger.debug(f"Loading sync config from directory: {loader.config_dir}")
    return SyncConfig.from_dict(data)
