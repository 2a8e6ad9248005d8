"""
Tests for the config module.

Tests configuration loading and validation, including YAML parsing, error
handling and conversion into the typed SyncConfig dataclasses.
"""

import os
from unittest.mock import patch

import pytest
import yaml

from msgsync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from msgsync.config.sync_config import (
    DEFAULT_PLACEHOLDER_DOMAIN,
    GmailConfig,
    IdentityConfig,
    ResolutionDepth,
    RetryConfig,
    SyncConfig,
    SyncConfigError,
    load_config,
)


def write_config(directory, data):
    path = directory / DEFAULT_CONFIG_FILE
    path.write_text(yaml.safe_dump(data) if not isinstance(data, str) else data)
    return path


class TestConfigLoaderInitialization:
    """Tests for ConfigLoader initialization."""

    def test_custom_config_dir_via_argument(self, tmp_path):
        """Test that custom config dir can be passed as argument."""
        loader = ConfigLoader(config_dir=tmp_path / "custom")
        assert loader.config_dir == (tmp_path / "custom").resolve()

    def test_config_dir_from_environment_variable(self, tmp_path):
        """Test that config dir can be set via environment variable."""
        with patch.dict(os.environ, {"MSGSYNC_CONFIG_DIR": str(tmp_path)}):
            loader = ConfigLoader()
            assert loader.config_dir == tmp_path.resolve()

    def test_default_config_file_name(self, tmp_path):
        """Test that default config file name is set correctly."""
        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.config_file == DEFAULT_CONFIG_FILE == "config.yaml"


class TestConfigLoading:
    """Tests for loading YAML files."""

    @pytest.fixture
    def loader(self, tmp_path):
        return ConfigLoader(config_dir=tmp_path)

    def test_missing_file_returns_empty_dict(self, loader):
        """Test that a missing config file is not an error."""
        assert loader.load() == {}

    def test_empty_file_returns_empty_dict(self, loader, tmp_path):
        """Test that an empty config file yields defaults."""
        write_config(tmp_path, "")
        assert loader.load() == {}

    def test_loads_dictionary(self, loader, tmp_path):
        """Test loading a valid configuration."""
        write_config(tmp_path, {"organization_domain": "example.com", "max_pages": 3})
        assert loader.load() == {"organization_domain": "example.com", "max_pages": 3}

    def test_non_dictionary_raises(self, loader, tmp_path):
        """Test that a YAML list is rejected."""
        write_config(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigError, match="must contain a YAML dictionary"):
            loader.load()

    def test_invalid_yaml_raises(self, loader, tmp_path):
        """Test that unparseable YAML is reported."""
        write_config(tmp_path, "key: [unclosed")
        with pytest.raises(ConfigError, match="Failed to parse YAML"):
            loader.load()

    def test_load_from_explicit_file(self, loader, tmp_path):
        """Test loading a file outside the config directory."""
        path = tmp_path / "other.yaml"
        path.write_text("page_size: 10\n")
        assert loader.load_from_file(path) == {"page_size": 10}


class TestConfigValidation:
    """Tests for top-level validation."""

    @pytest.fixture
    def loader(self, tmp_path):
        return ConfigLoader(config_dir=tmp_path)

    def test_valid_config_passes(self, loader):
        """Test that a complete valid configuration passes."""
        loader.validate(
            {
                "database_path": "/tmp/msgsync.db",
                "platforms": ["gmail"],
                "account_pause_seconds": 0.5,
                "max_account_workers": 2,
                "download_attachments": True,
                "retry": {"max_retries": 3},
            }
        )

    def test_unknown_keys_are_ignored(self, loader):
        """Test that unknown keys only produce a warning."""
        loader.validate({"unknown_key": 1})

    def test_wrong_type_raises(self, loader):
        """Test that a value of the wrong type is rejected."""
        with pytest.raises(ConfigError, match="expected int"):
            loader.validate({"max_pages": "ten"})

    def test_negative_keep_log_files(self, loader):
        """Test that keep_log_files must not be negative."""
        with pytest.raises(ConfigError, match="keep_log_files must be >= 0"):
            loader.validate({"keep_log_files": -1})

    def test_bool_rejected_for_numbers(self, loader):
        """Test that booleans are not accepted as numbers."""
        with pytest.raises(ConfigError, match="got bool"):
            loader.validate({"max_fetch_workers": True})

    @pytest.mark.parametrize(
        "key", ["max_account_workers", "max_fetch_workers", "max_pages", "page_size"]
    )
    def test_positive_keys(self, loader, key):
        """Test that worker and page settings must be at least 1."""
        with pytest.raises(ConfigError, match=f"{key} must be >= 1"):
            loader.validate({key: 0})

    def test_negative_pause_raises(self, loader):
        """Test that a negative pause is rejected."""
        with pytest.raises(ConfigError, match="account_pause_seconds"):
            loader.validate({"account_pause_seconds": -1})

    def test_non_dict_raises(self, loader):
        """Test that validate rejects non-dictionaries."""
        with pytest.raises(ConfigError):
            loader.validate(["a"])

    def test_load_and_validate(self, loader, tmp_path):
        """Test that load_and_validate validates loaded files."""
        write_config(tmp_path, {"page_size": 0})
        with pytest.raises(ConfigError):
            loader.load_and_validate()


class TestRetryConfig:
    """Tests for RetryConfig.from_dict."""

    def test_defaults(self):
        """Test defaults for a missing section."""
        config = RetryConfig.from_dict(None)
        assert (config.max_retries, config.initial_delay, config.max_delay) == (5, 1.0, 60.0)

    def test_values_are_coerced_to_float(self):
        """Test that integer delays become floats."""
        config = RetryConfig.from_dict({"max_retries": 2, "initial_delay": 1, "max_delay": 8})
        assert config.initial_delay == 1.0
        assert isinstance(config.max_delay, float)

    def test_max_retries_must_be_positive(self):
        """Test that at least one attempt is required."""
        with pytest.raises(SyncConfigError, match="max_retries must be >= 1"):
            RetryConfig.from_dict({"max_retries": 0})

    def test_bool_rejected(self):
        """Test that a boolean is not a retry count."""
        with pytest.raises(SyncConfigError, match="must not be a boolean"):
            RetryConfig.from_dict({"max_retries": True})

    def test_section_must_be_dict(self):
        """Test that a scalar section is rejected."""
        with pytest.raises(SyncConfigError, match="must be a dictionary"):
            RetryConfig.from_dict(3)


class TestIdentityConfig:
    """Tests for IdentityConfig.from_dict."""

    def test_defaults(self):
        """Test defaults for a missing section."""
        config = IdentityConfig.from_dict(None)

        assert config.resolution_depth == ResolutionDepth.DIRECTORY
        assert config.min_stored_confidence == 50
        assert config.placeholder_domain == DEFAULT_PLACEHOLDER_DOMAIN

    def test_placeholder_domain_defaults_to_organization(self):
        """Test that the organization domain is used for placeholders."""
        config = IdentityConfig.from_dict({}, organization_domain="example.com")
        assert config.placeholder_domain == "example.com"

    def test_explicit_placeholder_domain_wins(self):
        """Test that an explicit placeholder domain is normalized and kept."""
        config = IdentityConfig.from_dict(
            {"placeholder_domain": " Corp.Example "}, organization_domain="example.com"
        )
        assert config.placeholder_domain == "corp.example"

    def test_local_depth(self):
        """Test parsing the local resolution depth."""
        config = IdentityConfig.from_dict({"resolution_depth": "local"})
        assert config.resolution_depth == ResolutionDepth.LOCAL

    def test_invalid_depth(self):
        """Test that unknown depths are rejected."""
        with pytest.raises(SyncConfigError, match="resolution_depth"):
            IdentityConfig.from_dict({"resolution_depth": "everything"})

    def test_threshold_range(self):
        """Test that confidence thresholds stay within 0-100."""
        with pytest.raises(SyncConfigError, match="between 0 and 100"):
            IdentityConfig.from_dict({"low_confidence_threshold": 101})

    def test_empty_placeholder_domain(self):
        """Test that a blank placeholder domain is rejected."""
        with pytest.raises(SyncConfigError, match="cannot be empty"):
            IdentityConfig.from_dict({"placeholder_domain": "  "})


class TestGmailConfig:
    """Tests for GmailConfig.from_dict."""

    def test_defaults(self):
        """Test default labels and lookback."""
        config = GmailConfig.from_dict(None)
        assert config.labels == ("INBOX", "SENT")
        assert config.outgoing_label == "SENT"
        assert config.lookback_days == 30

    def test_custom_labels(self):
        """Test that labels are stripped and kept in order."""
        config = GmailConfig.from_dict({"labels": [" IMPORTANT ", "SENT"]})
        assert config.labels == ("IMPORTANT", "SENT")

    @pytest.mark.parametrize("labels", [[], "INBOX", ["INBOX", ""], [3]])
    def test_invalid_labels(self, labels):
        """Test that label lists must hold non-empty strings."""
        with pytest.raises(SyncConfigError):
            GmailConfig.from_dict({"labels": labels})

    def test_lookback_must_be_positive(self):
        """Test that lookback_days must be at least 1."""
        with pytest.raises(SyncConfigError, match="lookback_days"):
            GmailConfig.from_dict({"lookback_days": 0})


class TestSyncConfigFromDict:
    """Tests for SyncConfig.from_dict."""

    def test_empty_dict_gives_defaults(self):
        """Test that an empty configuration uses every default."""
        config = SyncConfig.from_dict({})

        assert config.platforms == ("gmail", "chat")
        assert config.account_pause_seconds == 2.0
        assert config.max_account_workers == 1
        assert config.max_fetch_workers == 4
        assert config.propagate_identities is True
        assert config.download_attachments is False

    def test_full_config(self):
        """Test a configuration with every section."""
        config = SyncConfig.from_dict(
            {
                "database_path": ":memory:",
                "organization_domain": " Example.COM ",
                "platforms": ["chat"],
                "account_pause_seconds": 0,
                "max_account_workers": 3,
                "retry": {"max_retries": 2},
                "identity": {"resolution_depth": "local"},
                "gmail": {"lookback_days": 7},
            }
        )

        assert config.organization_domain == "example.com"
        assert config.platforms == ("chat",)
        assert config.account_pause_seconds == 0.0
        assert config.max_account_workers == 3
        assert config.retry.max_retries == 2
        assert config.identity.resolution_depth == ResolutionDepth.LOCAL
        assert config.identity.placeholder_domain == "example.com"
        assert config.gmail.lookback_days == 7

    def test_unknown_platform(self):
        """Test that unknown platforms are rejected."""
        with pytest.raises(SyncConfigError, match="Unknown platform 'slack'"):
            SyncConfig.from_dict({"platforms": ["gmail", "slack"]})

    def test_empty_platforms(self):
        """Test that at least one platform is required."""
        with pytest.raises(SyncConfigError, match="non-empty list"):
            SyncConfig.from_dict({"platforms": []})

    def test_non_dict(self):
        """Test that the configuration must be a dictionary."""
        with pytest.raises(SyncConfigError):
            SyncConfig.from_dict("gmail")

    def test_sync_config_error_is_config_error(self):
        """Test that callers can catch every configuration error at once."""
        assert issubclass(SyncConfigError, ConfigError)

    def test_logging_keys(self):
        """Test that logging settings are read and defaulted."""
        config = SyncConfig.from_dict(
            {"log_level": "warning", "keep_log_files": 3, "file_logging": False}
        )

        assert config.log_level == "warning"
        assert config.keep_log_files == 3
        assert config.file_logging is False
        assert config.verbose is False
        assert SyncConfig.from_dict({}).keep_log_files == 10

    def test_unknown_log_level(self):
        """Test that an unknown log level is rejected."""
        with pytest.raises(SyncConfigError, match="Unknown log_level loud"):
            SyncConfig.from_dict({"log_level": "loud"})


class TestLoadConfigFunction:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path):
        """Test that a missing config.yaml yields the defaults."""
        assert load_config(tmp_path) == SyncConfig()

    def test_loads_from_directory(self, tmp_path):
        """Test loading a configuration file from a directory."""
        write_config(tmp_path, {"platforms": ["gmail"], "gmail": {"labels": ["INBOX"]}})

        config = load_config(str(tmp_path))

        assert config.platforms == ("gmail",)
        assert config.gmail.labels == ("INBOX",)

    def test_uses_environment_directory(self, tmp_path, monkeypatch):
        """Test that MSGSYNC_CONFIG_DIR is honored."""
        write_config(tmp_path, {"max_pages": 4})
        monkeypatch.setenv("MSGSYNC_CONFIG_DIR", str(tmp_path))

        assert load_config().max_pages == 4

    def test_invalid_file_raises(self, tmp_path):
        """Test that validation errors propagate."""
        write_config(tmp_path, {"retry": {"max_retries": -1}})

        with pytest.raises(SyncConfigError):
            load_config(tmp_path)
