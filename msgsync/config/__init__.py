"""
msgsync.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from msgsync.config.loader import ConfigError, ConfigLoader
from msgsync.config.sync_config import (
    GmailConfig,
    IdentityConfig,
    ResolutionDepth,
    RetryConfig,
    SyncConfig,
    SyncConfigError,
    load_config,
)

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "GmailConfig",
    "IdentityConfig",
    "ResolutionDepth",
    "RetryConfig",
    "SyncConfig",
    "SyncConfigError",
    "load_config",
]
