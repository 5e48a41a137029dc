"""Configuration management for tenantauth.

Configuration is assembled from, in order of precedence:
- Environment variables (``.env`` is loaded first if present)
- A YAML or TOML configuration file
- Built-in defaults

Includes validation so misconfigured deployments fail loudly at startup.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv


@dataclass
class ValidationResult:
    """Result of configuration validation."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        """Add an error message."""
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)

    def __str__(self) -> str:
        lines = []
        if self.errors:
            lines.append("Errors:")
            lines.extend(f"  - {e}" for e in self.errors)
        if self.warnings:
            lines.append("Warnings:")
            lines.extend(f"  - {w}" for w in self.warnings)
        if not lines:
            return "Configuration is valid."
        return "\n".join(lines)


DEFAULTS: Dict[str, Dict[str, Any]] = {
    "logging": {
        "level": "INFO",
        "directory": "logs",
        "json_format": False,
    },
    "database": {"path": "data/tenantauth.db"},
    "api": {
        "host": "127.0.0.1",
        "port": 8000,
        "cors_origins": ["*"],
    },
    "auth": {
        "secret_key": "",
        "algorithm": "HS256",
        "session_ttl_hours": 24 * 7,
        "cookie_name": "session_token",
        "password_min_length": 8,
    },
    "two_factor": {
        "issuer": "SaaS App",
        "window": 2,
        "backup_code_count": 10,
        "backup_code_length": 8,
    },
    "rate_limit": {
        "two_factor": {"max_attempts": 5, "window_minutes": 15, "lockout_minutes": 15},
        "account_lockout": {"max_attempts": 3, "window_minutes": 60, "lockout_minutes": 15},
    },
    "api_keys": {"prefix": "sk_"},
    "organizations": {"invite_ttl_days": 7},
    "email": {
        "enabled": False,
        "smtp_host": "localhost",
        "smtp_port": 587,
        "smtp_user": "",
        "smtp_password": "",
        "from_address": "noreply@localhost",
        "use_tls": True,
        "app_url": "http://localhost:3000",
    },
}


def _coerce(raw: str, default: Any) -> Any:
    """Convert an environment string to the type of ``default``."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError:
            return default
    if isinstance(default, float):
        try:
            return float(raw)
        except ValueError:
            return default
    if isinstance(default, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


class Config:
    """Configuration manager for tenantauth."""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to YAML or TOML config file (optional)
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self._config: Dict[str, Any] = {}

        env_path = Path(".env")
        if env_path.exists():
            load_dotenv(env_path)
            self.logger.info("Loaded environment variables from .env")

        if config_file:
            self._load_config_file(config_file)
        else:
            self._auto_load_config()

        self._load_defaults()

    def _load_config_file(self, config_file: str) -> None:
        """Load configuration from YAML or TOML file."""
        config_path = Path(config_file)

        if not config_path.exists():
            self.logger.warning(f"Config file not found: {config_file}")
            return

        try:
            with open(config_path, "rb") as f:
                if config_file.endswith((".yaml", ".yml")):
                    self._config = yaml.safe_load(f) or {}
                    self.logger.info(f"Loaded YAML config from {config_file}")
                elif config_file.endswith(".toml"):
                    self._config = tomllib.load(f)
                    self.logger.info(f"Loaded TOML config from {config_file}")
                else:
                    self.logger.error(f"Unsupported config format: {config_file}")
        except (OSError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
            self.logger.error(f"Failed to load config file {config_file}: {e}")

    def _auto_load_config(self) -> None:
        """Find and load the first config file present."""
        config_dir = Path("config")
        candidates = [
            config_dir / "tenantauth.yaml",
            config_dir / "tenantauth.yml",
            config_dir / "tenantauth.toml",
            Path("tenantauth.yaml"),
            Path("tenantauth.yml"),
            Path("tenantauth.toml"),
        ]

        for candidate in candidates:
            if candidate.exists():
                self._load_config_file(str(candidate))
                return

        self.logger.debug("No config file found, using defaults and environment variables")

    def _load_defaults(self) -> None:
        """Merge defaults under the loaded config (loaded values win)."""
        for key, value in DEFAULTS.items():
            if key not in self._config:
                self._config[key] = {k: v for k, v in value.items()}
            elif isinstance(value, dict):
                self._config[key] = {**value, **(self._config.get(key) or {})}

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Supports dot notation for nested keys: ``"auth.session_ttl_hours"``.
        An environment variable named after the key (``AUTH_SESSION_TTL_HOURS``)
        takes precedence and is converted to the type of the configured value.

        Args:
            key: Configuration key (supports dot notation)
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split(".")
        value: Any = self._config
        found = True
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                found = False
                break

        env_value = os.getenv(key.upper().replace(".", "_"))
        if env_value is not None:
            return _coerce(env_value, value if found else default)

        return value if found else default

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value at runtime.

        Args:
            key: Configuration key (supports dot notation)
            value: Value to set
        """
        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value
        self.logger.debug(f"Set config {key} = {value}")

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Get entire configuration section.

        Args:
            section: Section name (e.g., "auth", "two_factor")

        Returns:
            Dictionary with section configuration
        """
        return self._config.get(section, {})

    def to_dict(self) -> Dict[str, Any]:
        """Get all configuration as dictionary."""
        return self._config.copy()

    def reload(self, config_file: Optional[str] = None) -> None:
        """
        Reload configuration from file.

        Args:
            config_file: Path to config file (optional)
        """
        self._config = {}
        if config_file:
            self._load_config_file(config_file)
        else:
            self._auto_load_config()
        self._load_defaults()
        self.logger.info("Configuration reloaded")

    def validate(self) -> ValidationResult:
        """
        Validate the configuration.

        Returns:
            ValidationResult with errors and warnings
        """
        result = ValidationResult(is_valid=True)

        log_level = str(self.get("logging.level", "INFO"))
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if log_level.upper() not in valid_levels:
            result.add_error(
                f"Invalid logging level '{log_level}'. Must be one of: {', '.join(valid_levels)}"
            )

        ttl = self.get("auth.session_ttl_hours", 168)
        if not isinstance(ttl, int) or ttl < 1:
            result.add_error("auth.session_ttl_hours must be a positive integer")

        if not self.get("auth.secret_key", ""):
            result.add_warning(
                "auth.secret_key is not set; sessions will not survive a restart"
            )

        window = self.get("two_factor.window", 2)
        if not isinstance(window, int) or window < 0:
            result.add_error("two_factor.window must be a non-negative integer")
        elif window > 4:
            result.add_warning(f"two_factor.window={window} accepts codes far from current time")

        count = self.get("two_factor.backup_code_count", 10)
        if not isinstance(count, int) or count < 1:
            result.add_error("two_factor.backup_code_count must be a positive integer")

        for preset in ("two_factor", "account_lockout"):
            section = self.get(f"rate_limit.{preset}", {}) or {}
            for name in ("max_attempts", "window_minutes", "lockout_minutes"):
                value = section.get(name)
                if not isinstance(value, int) or value < 1:
                    result.add_error(f"rate_limit.{preset}.{name} must be a positive integer")

        prefix = self.get("api_keys.prefix", "sk_")
        if not isinstance(prefix, str) or not prefix:
            result.add_error("api_keys.prefix must be a non-empty string")

        invite_ttl = self.get("organizations.invite_ttl_days", 7)
        if not isinstance(invite_ttl, int) or invite_ttl < 1:
            result.add_error("organizations.invite_ttl_days must be a positive integer")

        db_path = self.get("database.path", "")
        if db_path and db_path != ":memory:":
            db_dir = Path(db_path).parent
            if str(db_dir) != "." and not db_dir.exists():
                result.add_warning(f"Database directory does not exist: {db_dir}")

        if not result.is_valid:
            for error in result.errors:
                self.logger.error(f"Config validation error: {error}")
        for warning in result.warnings:
            self.logger.warning(f"Config validation warning: {warning}")

        return result

    def validate_and_raise(self) -> None:
        """
        Validate configuration and raise exception if invalid.

        Raises:
            ValueError: If configuration is invalid
        """
        result = self.validate()
        if not result.is_valid:
            raise ValueError(f"Invalid configuration:\n{result}")


_global_config: Optional[Config] = None


def get_config(config_file: Optional[str] = None) -> Config:
    """
    Get global configuration instance.

    Args:
        config_file: Path to config file (only used on first call)

    Returns:
        Config instance
    """
    global _global_config

    if _global_config is None:
        _global_config = Config(config_file)

    return _global_config


def reload_config(config_file: Optional[str] = None) -> None:
    """
    Reload global configuration.

    Args:
        config_file: Path to config file (optional)
    """
    global _global_config

    if _global_config is not None:
        _global_config.reload(config_file)
    else:
        _global_config = Config(config_file)
