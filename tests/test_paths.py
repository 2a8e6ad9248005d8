"""Tests for config directory and data path resolution."""

from pathlib import Path

from msgsync.utils.paths import (
    CONFIG_DIR_ENV_VAR,
    DEFAULT_CONFIG_DIR,
    resolve_config_dir,
    resolve_data_path,
    resolve_database_path,
    resolve_log_dir,
)


class TestResolveConfigDir:
    """Test resolve_config_dir function."""

    def test_explicit_path_wins_over_env(self, tmp_path, monkeypatch):
        """An explicit directory is used even when the env var is set."""
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(tmp_path / "env"))
        explicit = tmp_path / "explicit"
        assert resolve_config_dir(str(explicit)) == explicit.resolve()

    def test_env_var(self, tmp_path, monkeypatch):
        """MSGSYNC_CONFIG_DIR is used without an explicit directory."""
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(tmp_path))
        assert resolve_config_dir() == tmp_path.resolve()

    def test_default(self, monkeypatch):
        """~/.msgsync is the fallback, also for an empty env var."""
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, "")
        assert resolve_config_dir() == DEFAULT_CONFIG_DIR.resolve()
        assert DEFAULT_CONFIG_DIR == Path.home() / ".msgsync"

    def test_relative_is_made_absolute(self, tmp_path, monkeypatch):
        """Relative directories are resolved against the working directory."""
        monkeypatch.chdir(tmp_path)
        assert resolve_config_dir("conf") == tmp_path.resolve() / "conf"


class TestResolveDataPath:
    """Test resolution of paths found in config.yaml."""

    def test_relative_is_under_config_dir(self, tmp_path):
        """Relative paths hang off the config directory."""
        assert resolve_data_path("blobs", tmp_path) == tmp_path.resolve() / "blobs"

    def test_absolute_is_kept(self, tmp_path):
        """Absolute paths ignore the config directory."""
        target = tmp_path / "elsewhere" / "msgsync.db"
        assert resolve_data_path(str(target), tmp_path / "conf") == target.resolve()

    def test_home_is_expanded(self, tmp_path, monkeypatch):
        """~ expands to the home directory."""
        monkeypatch.setenv("HOME", str(tmp_path))
        assert resolve_data_path("~/data", Path("/unused")) == tmp_path.resolve() / "data"

    def test_memory_database_untouched(self, tmp_path):
        """The in-memory database name is not a path."""
        assert resolve_database_path(":memory:", tmp_path) == ":memory:"
        assert resolve_database_path("msgsync.db", tmp_path) == str(
            tmp_path.resolve() / "msgsync.db"
        )


class TestResolveLogDir:
    """Test resolve_log_dir function."""

    def test_default_is_logs_subdir(self, tmp_path):
        """Without a configured directory logs go to <config_dir>/logs."""
        assert resolve_log_dir(None, tmp_path) == tmp_path / "logs"
        assert resolve_log_dir("", tmp_path) == tmp_path / "logs"

    def test_configured_directory(self, tmp_path):
        """A configured directory is resolved like any data path."""
        assert resolve_log_dir("var/log", tmp_path) == tmp_path.resolve() / "var" / "log"
