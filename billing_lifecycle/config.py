"""Configuration management - loads settings.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from billing_lifecycle.models import AppConfig, EngineSettings, GatewayDefinition


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader and manager.

    Loads settings.yaml and provides validated access to:
    - Payment gateway definitions
    - Engine settings (schedule margins, staging detection, cancellation behavior)
    - Pub/Sub configuration
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to settings.yaml file. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/settings.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._app_config: Optional[AppConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/settings.yaml")

    def _load_config(self) -> None:
        """Load and validate settings.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/settings.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            self._app_config = AppConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e
        except TypeError as e:
            raise ConfigurationError(f"Configuration must be a mapping: {e}") from e

    @property
    def settings(self) -> AppConfig:
        """Get validated configuration."""
        if self._app_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._app_config

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def engine_settings(self) -> EngineSettings:
        """Get engine behavior settings.

        Returns:
            EngineSettings object with schedule and staging settings
        """
        return self.settings.engine

    @property
    def gateways(self) -> list[GatewayDefinition]:
        """Get configured payment gateways."""
        return self.settings.gateways

    def get_gateway_by_id(self, gateway_id: str) -> Optional[GatewayDefinition]:
        """Get gateway definition by ID.

        Args:
            gateway_id: Gateway identifier (e.g., "stripe")

        Returns:
            GatewayDefinition if found, None otherwise
        """
        for gateway in self.settings.gateways:
            if gateway.id == gateway_id:
                return gateway
        return None

    @property
    def has_pubsub(self) -> bool:
        return self.settings.pubsub is not None

    @property
    def pubsub_project_id(self) -> str:
        """Get Pub/Sub project ID.

        Raises:
            ConfigurationError: If no pubsub section is configured
        """
        return self._require_pubsub().project_id

    @property
    def pubsub_topic(self) -> str:
        """Get Pub/Sub topic name (e.g., "subscription-events")."""
        return self._require_pubsub().topic

    @property
    def pubsub_subscription(self) -> str:
        """Get default Pub/Sub subscription name."""
        return self._require_pubsub().default_subscription

    def _require_pubsub(self):
        if self.settings.pubsub is None:
            raise ConfigurationError("Pub/Sub is not configured")
        return self.settings.pubsub

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()
