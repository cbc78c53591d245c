"""
Configuration Management

Provides configuration classes and environment-based configuration loading.
"""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .constants import (
    DEFAULT_DISCOVERY_URL,
    DEFAULT_RELAY_URL,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_DISCOVERY_TIMEOUT,
    DEFAULT_RELAY_REQUEST_TIMEOUT,
    DEFAULT_RELAY_HANDSHAKE_TIMEOUT,
    DEFAULT_RELAY_HANDSHAKE_POLL_INTERVAL,
    DEFAULT_RELAY_POLL_INTERVAL,
    DEFAULT_SOCKET_TIMEOUT,
    DEFAULT_RECEIVER_JOIN_TIMEOUT,
    DEFAULT_POLLER_JOIN_TIMEOUT,
    DEFAULT_SHUTDOWN_GRACE_PERIOD,
    DEFAULT_WORKER_POOL_SIZE,
    DEFAULT_BUFFER_SIZE,
)
from .exceptions import ConfigurationError


# Float settings that must be strictly positive, with their env variable names
_TIMING_FIELDS = {
    "connect_timeout": "CHAT_BRIDGE_CONNECT_TIMEOUT",
    "handshake_timeout": "CHAT_BRIDGE_HANDSHAKE_TIMEOUT",
    "discovery_timeout": "CHAT_BRIDGE_DISCOVERY_TIMEOUT",
    "relay_request_timeout": "CHAT_BRIDGE_RELAY_REQUEST_TIMEOUT",
    "relay_handshake_timeout": "CHAT_BRIDGE_RELAY_HANDSHAKE_TIMEOUT",
    "relay_handshake_poll_interval": "CHAT_BRIDGE_RELAY_HANDSHAKE_POLL_INTERVAL",
    "relay_poll_interval": "CHAT_BRIDGE_RELAY_POLL_INTERVAL",
    "socket_timeout": "CHAT_BRIDGE_SOCKET_TIMEOUT",
    "receiver_join_timeout": "CHAT_BRIDGE_RECEIVER_JOIN_TIMEOUT",
    "poller_join_timeout": "CHAT_BRIDGE_POLLER_JOIN_TIMEOUT",
    "shutdown_grace_period": "CHAT_BRIDGE_SHUTDOWN_GRACE_PERIOD",
}


@dataclass
class ClientConfig:
    """Client configuration settings."""

    discovery_url: str = DEFAULT_DISCOVERY_URL
    relay_url: str = DEFAULT_RELAY_URL

    # Direct transport
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    socket_timeout: float = DEFAULT_SOCKET_TIMEOUT
    buffer_size: int = DEFAULT_BUFFER_SIZE
    receiver_join_timeout: float = DEFAULT_RECEIVER_JOIN_TIMEOUT

    # HTTP services
    discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    relay_request_timeout: float = DEFAULT_RELAY_REQUEST_TIMEOUT
    relay_handshake_timeout: float = DEFAULT_RELAY_HANDSHAKE_TIMEOUT
    relay_handshake_poll_interval: float = DEFAULT_RELAY_HANDSHAKE_POLL_INTERVAL
    relay_poll_interval: float = DEFAULT_RELAY_POLL_INTERVAL
    poller_join_timeout: float = DEFAULT_POLLER_JOIN_TIMEOUT

    # Worker pool
    worker_pool_size: int = DEFAULT_WORKER_POOL_SIZE
    shutdown_grace_period: float = DEFAULT_SHUTDOWN_GRACE_PERIOD

    def __post_init__(self) -> None:
        # Base URLs are joined with endpoint names, so drop trailing slashes
        if isinstance(self.discovery_url, str):
            self.discovery_url = self.discovery_url.rstrip("/")
        if isinstance(self.relay_url, str):
            self.relay_url = self.relay_url.rstrip("/")

    def validate(self) -> None:
        """Validate configuration values."""
        errors: List[str] = []

        for name in ("discovery_url", "relay_url"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.startswith(("http://", "https://")):
                errors.append(f"{name} must be an http(s) URL")

        for name in _TIMING_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"{name} must be a positive number")

        if not isinstance(self.buffer_size, int) or self.buffer_size < 256:
            errors.append("buffer_size must be at least 256 bytes")

        if not isinstance(self.worker_pool_size, int) or self.worker_pool_size < 1:
            errors.append("worker_pool_size must be a positive integer")

        if errors:
            raise ConfigurationError(f"Client configuration validation failed: {'; '.join(errors)}")

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Load configuration from environment variables."""
        try:
            timings = {
                name: float(os.getenv(env_name, str(getattr(cls, name))))
                for name, env_name in _TIMING_FIELDS.items()
            }
            config = cls(
                discovery_url=os.getenv("CHAT_BRIDGE_DISCOVERY_URL", cls.discovery_url),
                relay_url=os.getenv("CHAT_BRIDGE_RELAY_URL", cls.relay_url),
                buffer_size=int(os.getenv("CHAT_BRIDGE_BUFFER_SIZE", str(cls.buffer_size))),
                worker_pool_size=int(
                    os.getenv("CHAT_BRIDGE_WORKER_POOL_SIZE", str(cls.worker_pool_size))
                ),
                **timings,
            )
            config.validate()
            return config
        except ValueError as e:
            raise ConfigurationError(f"Failed to load client configuration from environment: {e}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientConfig":
        """Create configuration from dictionary."""
        try:
            # Filter only known fields
            field_names = {f.name for f in fields(cls)}
            filtered_data = {k: v for k, v in data.items() if k in field_names}
            config = cls(**filtered_data)
            config.validate()
            return config
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Failed to create client configuration from dictionary: {e}")


class ConfigurationLoader:
    """Configuration loader with support for multiple sources."""

    DEFAULT_CONFIG_PATHS = [
        "chat_bridge.json",
        ".chat_bridge.json",
        "chat_bridge.yaml",
        ".chat_bridge.yaml",
        "chat_bridge.yml",
        ".chat_bridge.yml",
    ]

    @staticmethod
    def load_from_file(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
        """
        Load configuration from a JSON or YAML file.

        Args:
            config_path: Path to configuration file. If None, looks for default locations.

        Returns:
            Dictionary containing configuration values.

        Raises:
            ConfigurationError: If file cannot be loaded or parsed.
        """
        if config_path is None:
            for path in ConfigurationLoader.DEFAULT_CONFIG_PATHS:
                if os.path.exists(path):
                    config_path = path
                    break

        if config_path is None:
            return {}

        config_path = Path(config_path)

        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                if config_path.suffix == '.json':
                    data = json.load(f)
                elif config_path.suffix in ('.yml', '.yaml'):
                    try:
                        import yaml
                    except ImportError:
                        raise ConfigurationError("PyYAML is required for YAML configuration files. Install with: pip install PyYAML")
                    data = yaml.safe_load(f) or {}
                else:
                    raise ConfigurationError(f"Unsupported configuration file format: {config_path.suffix}")
        except ConfigurationError:
            raise
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file {config_path}: {e}")
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration from {config_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
        return data

    @staticmethod
    def load_client_config(
        config_path: Optional[Union[str, Path]] = None,
        use_env: bool = True
    ) -> ClientConfig:
        """
        Load client configuration from file and/or environment.

        Args:
            config_path: Path to configuration file.
            use_env: Whether to load from environment variables.

        Returns:
            ClientConfig instance.
        """
        config_data: Dict[str, Any] = {}

        file_config = ConfigurationLoader.load_from_file(config_path)
        config_data.update(file_config.get('client', {}) or {})

        if config_data:
            config = ClientConfig.from_dict(config_data)
        else:
            config = ClientConfig()

        # Override with environment variables if requested
        if use_env:
            env_config = ClientConfig.from_env()
            # Only override non-default values from environment
            default_config = ClientConfig()
            for field in fields(ClientConfig):
                env_value = getattr(env_config, field.name)
                default_value = getattr(default_config, field.name)
                if env_value != default_value:
                    setattr(config, field.name, env_value)

        config.validate()
        return config


def load_client_config(config_path: Optional[Union[str, Path]] = None, use_env: bool = True) -> ClientConfig:
    """Convenience wrapper around ConfigurationLoader.load_client_config."""
    return ConfigurationLoader.load_client_config(config_path, use_env)
