"""
msgsync.utils - Utility module

Common utilities including normalization, paths and logging configuration.
"""

from msgsync.utils.normalization import (
    canonical_identifier,
    email_domain,
    identifier_candidates,
    is_email,
    normalize_email,
    normalize_string,
)
from msgsync.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = [
    "canonical_identifier",
    "email_domain",
    "identifier_candidates",
    "is_email",
    "normalize_email",
    "normalize_string",
    "resolve_config_dir",
    "DEFAULT_CONFIG_DIR",
]
