"""Unit tests for config.py - Configuration management."""

import os
import pytest
from unittest.mock import patch

import config
from config import (
    APIConfig,
    Config,
    ControllerConfig,
    DatabaseConfig,
    PluginConfig,
    get_config,
    load_config,
    reset_config,
)


@pytest.fixture(autouse=True)
def clean_config():
    reset_config()
    yield
    reset_config()


class TestDatabaseConfig:
    """Tests for DatabaseConfig class."""

    def test_default_values(self):
        cfg = DatabaseConfig()
        assert cfg.host == "localhost"
        assert cfg.port == 5432
        assert cfg.database == "tug_operator"
        assert cfg.user == "operator"
        assert cfg.password == ""

    def test_from_env(self):
        env_vars = {
            "DB_HOST": "envhost",
            "DB_PORT": "5434",
            "DB_NAME": "envdb",
            "DB_USER": "envuser",
            "DB_PASSWORD": "envpassword",
            "DB_MIN_POOL_SIZE": "3",
            "DB_MAX_POOL_SIZE": "15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = DatabaseConfig.from_env()
        assert cfg.host == "envhost"
        assert cfg.port == 5434
        assert cfg.database == "envdb"
        assert cfg.user == "envuser"
        assert cfg.password == "envpassword"
        assert cfg.min_pool_size == 3
        assert cfg.max_pool_size == 15

    def test_from_env_missing_password_raises(self):
        with patch.dict(os.environ, {"DB_PASSWORD": ""}, clear=True):
            with pytest.raises(ValueError, match="DB_PASSWORD"):
                DatabaseConfig.from_env()

    def test_password_not_in_repr(self):
        assert "secret123" not in repr(DatabaseConfig(password="secret123"))


class TestControllerConfig:
    """Tests for ControllerConfig class."""

    def test_default_values(self):
        cfg = ControllerConfig()
        assert cfg.poll_interval == 60
        assert cfg.scan_interval == 5
        assert cfg.max_concurrent_reconciles == 5
        assert cfg.backoff_base_delay == 5
        assert cfg.backoff_max_delay == 300
        assert cfg.backoff_jitter_factor == 0.1

    def test_from_env(self):
        env_vars = {
            "POLL_INTERVAL": "30",
            "SCAN_INTERVAL": "2",
            "MAX_CONCURRENT_RECONCILES": "8",
            "BACKOFF_BASE_DELAY": "1",
            "BACKOFF_MAX_DELAY": "60",
            "BACKOFF_JITTER_FACTOR": "0.25",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = ControllerConfig.from_env()
        assert cfg.poll_interval == 30
        assert cfg.scan_interval == 2
        assert cfg.max_concurrent_reconciles == 8
        assert cfg.backoff_base_delay == 1
        assert cfg.backoff_max_delay == 60
        assert cfg.backoff_jitter_factor == 0.25

    def test_from_env_invalid_int(self):
        with patch.dict(os.environ, {"POLL_INTERVAL": "soon"}, clear=False):
            with pytest.raises(ValueError):
                ControllerConfig.from_env()


class TestAPIConfig:
    def test_from_env(self):
        env_vars = {"API_HOST": "127.0.0.1", "API_PORT": "9000", "LOG_LEVEL": "debug"}
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = APIConfig.from_env()
        assert cfg.host == "127.0.0.1"
        assert cfg.port == 9000
        assert cfg.log_level == "DEBUG"


class TestPluginConfig:
    def test_defaults(self):
        cfg = PluginConfig()
        assert cfg.enabled_providers == []
        assert cfg.enabled_input_plugins == []
        assert cfg.get_plugin_config("tug") == {}

    def test_from_env(self):
        env_vars = {
            "ENABLED_PROVIDERS": "tug, other ,",
            "ENABLED_INPUT_PLUGINS": "http",
            "PLUGIN_CONFIGS": '{"tug": {"require_provider_config": true}}',
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = PluginConfig.from_env()
        assert cfg.enabled_providers == ["tug", "other"]
        assert cfg.enabled_input_plugins == ["http"]
        assert cfg.get_plugin_config("tug") == {"require_provider_config": True}

    def test_invalid_plugin_configs_ignored(self, caplog):
        with patch.dict(os.environ, {"PLUGIN_CONFIGS": "{not json"}, clear=False):
            cfg = PluginConfig.from_env()
        assert cfg.plugin_configs == {}
        assert "Ignoring invalid PLUGIN_CONFIGS" in caplog.text


class TestConfigAccessors:
    def test_default(self):
        cfg = Config.default()
        assert isinstance(cfg.database, DatabaseConfig)
        assert isinstance(cfg.controller, ControllerConfig)
        assert isinstance(cfg.api, APIConfig)
        assert isinstance(cfg.plugins, PluginConfig)

    def test_load_config_is_singleton(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "pw"}, clear=False):
            first = load_config()
            second = get_config()
        assert first is second
        assert config.config is first

    def test_reset_config(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "pw"}, clear=False):
            first = get_config()
            reset_config()
            assert config.config is None
            assert get_config() is not first
