"""
Configuration module for the playbook operator.

Loads configuration from environment variables. Plugin-specific settings
come from each plugin's own environment variables, overridden by the
PLUGIN_CONFIGS JSON object.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from parameters import validate_parameter_schema


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "playbook_operator"
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
            database=os.getenv("DB_NAME", "playbook_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Reconciliation controller configuration."""

    action_plugin: str = "ansible"
    max_concurrent_reconciles: int = 5
    status_update_attempts: int = 5
    max_status_message_length: int = 32768
    shutdown_grace_period: float = 30.0  # seconds
    parameter_schema: Optional[Dict[str, Any]] = None

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        parameter_schema = None
        raw_schema = os.getenv("PARAMETER_SCHEMA", "").strip()
        if raw_schema:
            try:
                parameter_schema = json.loads(raw_schema)
            except json.JSONDecodeError as e:
                raise ValueError(f"PARAMETER_SCHEMA is not valid JSON: {e}") from e
            is_valid, error = validate_parameter_schema(parameter_schema)
            if not is_valid:
                raise ValueError(f"PARAMETER_SCHEMA is invalid: {error}")

        max_concurrent = int(os.getenv("MAX_CONCURRENT_RECONCILES", "5"))
        if max_concurrent < 1:
            raise ValueError("MAX_CONCURRENT_RECONCILES must be at least 1")

        return cls(
            action_plugin=os.getenv("ACTION_PLUGIN", "ansible"),
            max_concurrent_reconciles=max_concurrent,
            status_update_attempts=int(os.getenv("STATUS_UPDATE_ATTEMPTS", "5")),
            max_status_message_length=int(
                os.getenv("MAX_STATUS_MESSAGE_LENGTH", "32768")
            ),
            shutdown_grace_period=float(os.getenv("SHUTDOWN_GRACE_PERIOD", "30")),
            parameter_schema=parameter_schema,
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class MetricsConfig:
    """Prometheus metrics endpoint configuration."""

    enabled: bool = True
    port: int = 8080

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enabled=_env_bool("METRICS_ENABLED", "true"),
            port=int(os.getenv("METRICS_PORT", "8080")),
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # Enabled input plugin names (empty = all registered input plugins)
    enabled_input_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configurations keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_inputs_str = os.getenv("ENABLED_INPUT_PLUGINS", "")
        enabled_inputs = [p.strip() for p in enabled_inputs_str.split(",") if p.strip()]

        plugin_configs: Dict[str, Dict[str, Any]] = {}
        raw_configs = os.getenv("PLUGIN_CONFIGS", "").strip()
        if raw_configs:
            try:
                plugin_configs = json.loads(raw_configs)
            except json.JSONDecodeError as e:
                raise ValueError(f"PLUGIN_CONFIGS is not valid JSON: {e}") from e
            if not isinstance(plugin_configs, dict):
                raise ValueError("PLUGIN_CONFIGS must be a JSON object")

        return cls(
            enabled_input_plugins=enabled_inputs,
            plugin_configs=plugin_configs,
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    metrics: MetricsConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            metrics=MetricsConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            metrics=MetricsConfig(),
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
