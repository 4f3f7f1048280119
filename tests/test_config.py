"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for settings files.
"""

import os
import tempfile

import pytest
import yaml

from usage_monitor.config.loader import (
    ApiConfig,
    LoggingConfig,
    Settings,
    SyncConfig,
    load_settings,
)


class TestSettingsLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_full_config(self):
        path = self._write_config({
            "api": {"token": "abc", "page_size": 50, "timeout_seconds": 10, "max_retries": 1},
            "sync": {"workers": 3, "fetch_timeout_seconds": 90, "default_sync_type": "incremental"},
            "database": {"path": "/tmp/bills.db"},
            "logging": {"level": "DEBUG", "json": True},
        })

        settings = load_settings(path)

        assert settings.api.token == "abc"
        assert settings.api.page_size == 50
        assert settings.api.base_url == "https://bigmodel.cn/api/finance/expenseBill"
        assert settings.sync.workers == 3
        assert settings.sync.stale_after_minutes == 10
        assert settings.sync.default_sync_type == "incremental"
        assert settings.database.path == "/tmp/bills.db"
        assert settings.logging.level == "debug"
        assert settings.logging.json is True

    def test_defaults(self):
        settings = Settings()
        assert settings.api.page_size == 100
        assert settings.api.timeout_seconds == 30
        assert settings.sync.workers == 5
        assert settings.sync.fetch_timeout_seconds == 60

    def test_empty_file_gives_defaults(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()
        assert load_settings(path) == Settings()

    def test_partial_section(self):
        settings = load_settings(self._write_config({"sync": {"workers": 2}}))
        assert settings.sync.workers == 2
        assert settings.api == ApiConfig()

    def test_explicit_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_settings(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("api: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_settings(path)

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_settings(self._write_config({"apii": {}}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in sync"):
            load_settings(self._write_config({"sync": {"worker": 5}}))

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a dictionary"):
            load_settings(self._write_config({"api": "token"}))

    def test_wrong_value_type(self):
        with pytest.raises(ValueError, match="wrong type"):
            load_settings(self._write_config({"api": {"page_size": "100"}}))

    def test_bool_is_not_an_int(self):
        with pytest.raises(ValueError, match="wrong type"):
            load_settings(self._write_config({"sync": {"workers": True}}))


class TestSectionValidation:
    """Test dataclass value checks."""

    @pytest.mark.parametrize("kwargs", [
        {"page_size": 0},
        {"page_size": 101},
        {"timeout_seconds": 0},
        {"max_retries": -1},
        {"base_url": ""},
    ])
    def test_invalid_api(self, kwargs):
        with pytest.raises(ValueError):
            ApiConfig(**kwargs)

    @pytest.mark.parametrize("kwargs", [
        {"workers": 0},
        {"fetch_timeout_seconds": 0},
        {"stale_after_minutes": 0},
        {"default_sync_type": "weekly"},
    ])
    def test_invalid_sync(self, kwargs):
        with pytest.raises(ValueError):
            SyncConfig(**kwargs)

    def test_invalid_log_level(self):
        with pytest.raises(ValueError):
            LoggingConfig(level="verbose")
