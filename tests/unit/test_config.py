"""
Unit tests for configuration loading.
"""

import json
import pytest
from pathlib import Path

from fieldsync.utils.config import ConfigLoader, FieldSyncConfig, SyncConfig, load_config
from fieldsync.utils.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's FIELDSYNC_* variables out of the tests."""
    import os
    for key in list(os.environ):
        if key.startswith("FIELDSYNC_"):
            monkeypatch.delenv(key)


class TestDefaults:
    """Test built-in defaults."""

    def test_defaults(self):
        config = FieldSyncConfig()

        assert config.sync.max_retries == 5
        assert config.sync.auto_resolve_threshold_ms == 5000
        assert config.sync.conflict_timeout == 300.0
        assert config.storage.entity_types == ["case", "person", "evidence"]
        assert config.storage.path.is_absolute()
        assert config.remote.conflict_status == 409
        assert config.logging.level == "INFO"

    def test_base_url_trailing_slash(self):
        config = FieldSyncConfig(remote={"base_url": "https://api.example.org/"})
        assert config.remote.base_url == "https://api.example.org"

    def test_comma_separated_entity_types(self):
        config = FieldSyncConfig(storage={"entity_types": "case, vehicle ,"})
        assert config.storage.entity_types == ["case", "vehicle"]


class TestConfigLoader:
    """Test file sources, priorities and environment overrides."""

    def test_yaml_source(self, tmp_path):
        path = tmp_path / "fieldsync.yaml"
        path.write_text("sync:\n  max_retries: 3\nremote:\n  base_url: https://sync.example.org\n")

        loader = ConfigLoader()
        loader.add_source(path)
        config = loader.load()

        assert config.sync.max_retries == 3
        assert config.remote.base_url == "https://sync.example.org"
        assert loader.get_config() is config

    def test_priority_order(self, tmp_path):
        low = tmp_path / "low.json"
        low.write_text(json.dumps({"sync": {"max_retries": 2, "item_delay": 0.5}}))
        high = tmp_path / "high.toml"
        high.write_text("[sync]\nmax_retries = 9\n")

        loader = ConfigLoader()
        loader.add_source(high, priority=20)
        loader.add_source(low, priority=10)
        config = loader.load()

        assert config.sync.max_retries == 9
        assert config.sync.item_delay == 0.5

    def test_env_file(self, tmp_path):
        path = tmp_path / "settings.env"
        path.write_text("# comment\nFIELDSYNC_SYNC__MAX_RETRIES=7\nBACKGROUND__ENABLED=false\n")

        loader = ConfigLoader()
        loader.add_source(path)
        config = loader.load()

        assert config.sync.max_retries == 7
        assert config.background.enabled is False

    def test_environment_wins(self, tmp_path, monkeypatch):
        path = tmp_path / "fieldsync.yaml"
        path.write_text("sync:\n  max_retries: 3\n")
        monkeypatch.setenv("FIELDSYNC_SYNC__MAX_RETRIES", "8")
        monkeypatch.setenv("FIELDSYNC_SYNC__CONFLICT_TIMEOUT", "12.5")

        config = load_config([path])

        assert config.sync.max_retries == 8
        assert config.sync.conflict_timeout == 12.5

    def test_missing_file_is_skipped(self, tmp_path):
        loader = ConfigLoader()
        loader.add_source(tmp_path / "absent.yaml")

        assert loader.load().sync.max_retries == 5

    def test_unknown_file_type(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigLoader().add_source(tmp_path / "config.ini")

    def test_invalid_value(self):
        loader = ConfigLoader()
        loader.add_source({"sync": {"max_retries": 0}})

        with pytest.raises(ConfigurationError, match="sync.max_retries"):
            loader.load()

    def test_malformed_file(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        loader = ConfigLoader()
        loader.add_source(path)

        with pytest.raises(ConfigurationError):
            loader.load()

    def test_get_config_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().get_config()

    def test_extra_config(self):
        config = load_config(extra_config={"sync": {"item_delay": 0}})
        assert config.sync.item_delay == 0

    def test_extra_config_beats_environment(self, monkeypatch):
        monkeypatch.setenv("FIELDSYNC_LOGGING__LEVEL", "WARNING")
        monkeypatch.setenv("FIELDSYNC_SYNC__MAX_RETRIES", "8")

        config = load_config(extra_config={"logging": {"level": "DEBUG"}})

        assert config.logging.level == "DEBUG"
        assert config.sync.max_retries == 8

    def test_low_priority_dict_yields_to_environment(self, monkeypatch):
        monkeypatch.setenv("FIELDSYNC_SYNC__MAX_RETRIES", "8")

        loader = ConfigLoader()
        loader.add_source({"sync": {"max_retries": 2}}, priority=20)

        assert loader.load().sync.max_retries == 8


class TestSyncConfig:
    def test_rejects_non_positive_intervals(self):
        with pytest.raises(Exception):
            SyncConfig(auto_sync_interval=0)
