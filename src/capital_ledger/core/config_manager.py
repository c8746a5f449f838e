"""
Configuration management for the capital ledger.
"""

import copy
import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .config_schema import LedgerAppConfig, validate_config_dict


def _env_placeholder(value: Any) -> Optional[str]:
    """Return the variable name of a ``${VAR}`` placeholder, else None."""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return value[2:-1]
    return None


def _resolve_placeholders(node: Any) -> Any:
    """Replace ``${VAR}`` placeholders recursively; unset variables drop the key."""
    if isinstance(node, dict):
        resolved = {}
        for key, value in node.items():
            env_var = _env_placeholder(value)
            if env_var is not None:
                if env_var in os.environ:
                    resolved[key] = os.environ[env_var]
                continue
            resolved[key] = _resolve_placeholders(value)
        return resolved
    if isinstance(node, list):
        return [_resolve_placeholders(item) for item in node]
    return node


class ConfigManager:
    """Manages application configuration from YAML files and environment variables."""

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        validate: bool = True,
        config_dict: Optional[dict[str, Any]] = None,
    ):
        """Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file. If None, uses default.
            validate: Whether to validate configuration against schema.
            config_dict: In-memory configuration; skips reading a file.
        """
        self.config_path = (
            Path(config_path) if config_path else self._get_default_config_path()
        )
        self._config: Optional[dict[str, Any]] = None
        self._validated_config: Optional[LedgerAppConfig] = None

        if config_dict is not None:
            self._config = copy.deepcopy(config_dict)
        else:
            self._load_config()

        if validate:
            self._validate_config()

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any], validate: bool = True) -> "ConfigManager":
        """Build a manager from an in-memory dictionary (used by tests and embedding)."""
        return cls(config_dict=config_dict, validate=validate)

    def _get_default_config_path(self) -> Path:
        """Get the default configuration file path."""
        env_path = os.getenv("CAPITAL_LEDGER_CONFIG")
        if env_path:
            return Path(env_path)
        return Path(__file__).parent.parent.parent.parent / "config" / "default.yaml"

    def _load_config(self) -> None:
        """Load configuration from YAML file."""
        try:
            with open(self.config_path, encoding="utf-8") as file:
                self._config = yaml.safe_load(file) or {}
        except FileNotFoundError as e:
            raise FileNotFoundError(
                f"Configuration file not found: {self.config_path}"
            ) from e
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML configuration: {e}") from e

    def _validate_config(self) -> None:
        """Validate configuration against schema."""
        if self._config is None:
            raise ValueError("No configuration loaded")

        try:
            self._validated_config = validate_config_dict(
                _resolve_placeholders(self._config)
            )
        except ValueError as e:
            raise ValueError(
                f"Configuration validation failed in {self.config_path}:\n{e}"
            ) from e

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by key with dotted path support.

        Args:
            key: Configuration key (supports dot notation like 'ledger.dev_mode')
            default: Default value if key not found

        Returns:
            Configuration value or default

        Examples:
            >>> config.get('reconciliation.grace_period_sec')  # Returns 300
            >>> config.get('nonexistent.key', 'default')  # Returns 'default'
        """
        if self._config is None:
            return default

        value = self._config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        env_var = _env_placeholder(value)
        if env_var is not None:
            return os.getenv(env_var, default)

        return value

    def get_section(self, section: str) -> dict[str, Any]:
        """Get an entire configuration section."""
        return self.get(section, {})

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value with dotted path support.

        Args:
            key: Configuration key (supports dot notation)
            value: New value
        """
        if self._config is None:
            self._config = {}

        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if not isinstance(config.get(k), dict):
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

        if self._validated_config is not None:
            self._validate_config()

    def has(self, key: str) -> bool:
        """Check if a configuration key exists."""
        if self._config is None:
            return False

        value = self._config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return False
        return True

    def save(self) -> None:
        """Save configuration to file."""
        if self._config is None:
            return

        with open(self.config_path, "w", encoding="utf-8") as file:
            yaml.dump(
                self._config, file, default_flow_style=False, indent=2, sort_keys=False
            )

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()
        if self._validated_config is not None:
            self._validate_config()

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return self._config or {}

    def get_validated_config(self) -> LedgerAppConfig:
        """Get the validated configuration object.

        Raises:
            ValueError: If configuration is not validated
        """
        if self._validated_config is None:
            raise ValueError("Configuration has not been validated")
        return self._validated_config

    def is_validated(self) -> bool:
        """Check if configuration has been validated."""
        return self._validated_config is not None

    def is_dev_mode(self) -> bool:
        """Dev mode comes from ``ledger.dev_mode`` or ``DEV_MODE=true``."""
        if os.getenv("DEV_MODE", "").lower() == "true":
            return True
        if self._validated_config is not None:
            return self._validated_config.ledger.dev_mode
        return bool(self.get("ledger.dev_mode", False))

    @property
    def config(self) -> dict[str, Any]:
        """Get the entire configuration dictionary."""
        return self._config or {}
