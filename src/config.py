"""
Configuration module for the tug operator.

Loads configuration from environment variables. Providers and input plugins
load their own settings; PLUGIN_CONFIGS can override them.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "tug_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "tug_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Control loop configuration."""

    poll_interval: int = 60  # seconds
    scan_interval: int = 5  # seconds between due-resource scans
    max_concurrent_reconciles: int = 5

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            poll_interval=int(os.getenv("POLL_INTERVAL", "60")),
            scan_interval=int(os.getenv("SCAN_INTERVAL", "5")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class APIConfig:
    """API server and logging configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # Enabled plugin names (empty = use all registered plugins)
    enabled_providers: List[str] = field(default_factory=list)
    enabled_input_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configuration overrides keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        plugin_configs = {}
        raw = os.getenv("PLUGIN_CONFIGS")
        if raw:
            try:
                plugin_configs = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid PLUGIN_CONFIGS: {e}")

        return cls(
            enabled_providers=_split_csv(os.getenv("ENABLED_PROVIDERS", "")),
            enabled_input_plugins=_split_csv(os.getenv("ENABLED_INPUT_PLUGINS", "")),
            plugin_configs=plugin_configs,
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration overrides for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            plugins=PluginConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
