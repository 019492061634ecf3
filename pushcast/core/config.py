"""
Pushcast Configuration - loads and merges config from multiple sources.

Precedence (highest to lowest):
1. Explicit overrides (passed in code)
2. Environment variables (PUSHCAST_*)
3. Project config (./pushcast.toml)
4. User config (~/.pushcast/config.toml)
5. Defaults (hardcoded)

Environment variable mapping:
    PUSHCAST_TRANSPORT_PROVIDER → transport.provider
    PUSHCAST_FCM_PROJECT_ID → transport.project_id
    PUSHCAST_FCM_SERVICE_ACCOUNT → transport.service_account
    PUSHCAST_FCM_ACCESS_TOKEN → transport.access_token
    PUSHCAST_SCHEDULER_POLL_INTERVAL → scheduler.poll_interval
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from pushcast.core.errors import ConfigError

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Sub-Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

MAX_BATCH_SIZE = 500


class TransportConfig(BaseModel):
    """Push transport configuration."""

    provider: str = "log"
    project_id: str = ""
    service_account: str = ""  # key file path, JSON, or base64 JSON
    access_token: str = ""
    endpoint: str = "https://fcm.googleapis.com"
    timeout: float = 10.0
    max_connections: int = 100

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        if value not in ("fcm", "log"):
            raise ValueError(f"unknown transport provider {value!r}")
        return value

    @property
    def configured(self) -> bool:
        if self.service_account:
            return True
        return bool(self.project_id and self.access_token)


class DispatchConfig(BaseModel):
    """Multicast batching configuration."""

    batch_size: int = MAX_BATCH_SIZE
    max_concurrent_batches: int = 4

    @field_validator("batch_size")
    @classmethod
    def _within_transport_limit(cls, value: int) -> int:
        if not 1 <= value <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        return value


class SchedulerConfig(BaseModel):
    """Scheduler configuration."""

    enabled: bool = True
    db_path: str = "~/.pushcast/pushcast.db"
    poll_interval: int = 60  # seconds
    claim_lease: int = 600  # seconds


class RegistryConfig(BaseModel):
    """Device token registry configuration."""

    db_path: str = "~/.pushcast/tokens.db"


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class LoggingConfig(BaseModel):
    """Log output configuration."""

    dir: str = "~/.pushcast/logs"
    console_level: str = "WARNING"
    file_level: str = "DEBUG"

    @field_validator("console_level", "file_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(_LOG_LEVELS)}")
        return level


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Main Config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PushcastConfig(BaseModel):
    """Root configuration for Pushcast."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @staticmethod
    def load(
        overrides: dict[str, Any] | None = None,
        project_path: Path | None = None,
        user_path: Path | None = None,
    ) -> PushcastConfig:
        """
        Load configuration from all sources and merge.

        Precedence: overrides > env vars > project toml > user toml > defaults
        """
        merged: dict[str, Any] = {}

        # Layer 1: User config (~/.pushcast/config.toml)
        user_config_path = user_path or Path.home() / ".pushcast" / "config.toml"
        if user_config_path.exists():
            _deep_merge(merged, _load_toml(user_config_path))

        # Layer 2: Project config (./pushcast.toml)
        project_config_path = project_path or Path.cwd() / "pushcast.toml"
        if project_config_path.exists():
            _deep_merge(merged, _load_toml(project_config_path))

        # Layer 3: Environment variables
        _deep_merge(merged, _load_from_env())

        # Layer 4: Explicit overrides
        if overrides:
            _deep_merge(merged, overrides)

        _substitute_env_vars(merged)

        try:
            return PushcastConfig(**merged)
        except Exception as e:
            raise ConfigError(f"Invalid configuration: {e}") from e


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Internal Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


_RAW_STRING_KEYS = {"project_id", "access_token", "service_account", "db_path", "dir"}


def _load_from_env() -> dict[str, Any]:
    """Load configuration from PUSHCAST_* environment variables."""
    result: dict[str, Any] = {}

    env_mapping = {
        "PUSHCAST_TRANSPORT_PROVIDER": ("transport", "provider"),
        "PUSHCAST_FCM_PROJECT_ID": ("transport", "project_id"),
        "PUSHCAST_FCM_ACCESS_TOKEN": ("transport", "access_token"),
        "PUSHCAST_FCM_SERVICE_ACCOUNT": ("transport", "service_account"),
        "PUSHCAST_TRANSPORT_TIMEOUT": ("transport", "timeout"),
        "PUSHCAST_DISPATCH_BATCH_SIZE": ("dispatch", "batch_size"),
        "PUSHCAST_SCHEDULER_POLL_INTERVAL": ("scheduler", "poll_interval"),
        "PUSHCAST_SCHEDULER_DB_PATH": ("scheduler", "db_path"),
        "PUSHCAST_REGISTRY_DB_PATH": ("registry", "db_path"),
        "PUSHCAST_LOG_LEVEL": ("logging", "console_level"),
        "PUSHCAST_LOG_DIR": ("logging", "dir"),
    }

    for env_var, (section, key) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        # Credentials and paths stay strings even when they look numeric
        if key not in _RAW_STRING_KEYS:
            value = _convert_value(value)
        result.setdefault(section, {})[key] = value

    return result


def _convert_value(value: str) -> Any:
    """Convert string value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


def _deep_merge(base: dict, override: dict) -> None:
    """Deep merge override into base (mutates base)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _substitute_env_vars(data: dict) -> None:
    """Recursively substitute ${ENV_VAR} patterns in string values."""
    pattern = re.compile(r"\$\{([^}]+)\}")

    for key, value in data.items():
        if isinstance(value, dict):
            _substitute_env_vars(value)
        elif isinstance(value, str):
            for var_name in pattern.findall(value):
                value = value.replace(f"${{{var_name}}}", os.environ.get(var_name, ""))
            data[key] = value
