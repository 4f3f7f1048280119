"""
Configuration management and loading.

Handles application settings read from a YAML file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from usage_monitor.client.billing_api import DEFAULT_BASE_URL
from usage_monitor.storage.db import DEFAULT_DB_PATH
from usage_monitor.storage.models import SYNC_TYPES

DEFAULT_CONFIG_PATH = str(Path.home() / ".usage-monitor" / "config.yaml")
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass(frozen=True)
class ApiConfig:
    """Metering API connection settings."""
    base_url: str = DEFAULT_BASE_URL
    token: Optional[str] = None
    page_size: int = 100
    timeout_seconds: float = 30
    max_retries: int = 2
    retry_delay_seconds: float = 1.0

    def __post_init__(self):
        """Validate API values."""
        if not self.base_url:
            raise ValueError("api.base_url cannot be empty")
        if not 1 <= self.page_size <= 100:
            raise ValueError("api.page_size must be between 1 and 100")
        if self.timeout_seconds <= 0:
            raise ValueError("api.timeout_seconds must be > 0")
        if self.max_retries < 0:
            raise ValueError("api.max_retries cannot be negative")
        if self.retry_delay_seconds < 0:
            raise ValueError("api.retry_delay_seconds cannot be negative")


@dataclass(frozen=True)
class SyncConfig:
    """Sync engine limits."""
    workers: int = 5
    fetch_timeout_seconds: float = 60
    stale_after_minutes: int = 10
    default_sync_type: str = "full"

    def __post_init__(self):
        """Validate sync values."""
        if self.workers <= 0:
            raise ValueError("sync.workers must be > 0")
        if self.fetch_timeout_seconds <= 0:
            raise ValueError("sync.fetch_timeout_seconds must be > 0")
        if self.stale_after_minutes <= 0:
            raise ValueError("sync.stale_after_minutes must be > 0")
        if self.default_sync_type not in SYNC_TYPES:
            raise ValueError(f"sync.default_sync_type must be one of: {list(SYNC_TYPES)}")


@dataclass(frozen=True)
class DatabaseConfig:
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"
    json: bool = False

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of: {list(LOG_LEVELS)}")


@dataclass(frozen=True)
class Settings:
    """Complete application configuration."""
    api: ApiConfig = field(default_factory=ApiConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = {
    "api": (ApiConfig, {
        "base_url": str,
        "token": str,
        "page_size": int,
        "timeout_seconds": (int, float),
        "max_retries": int,
        "retry_delay_seconds": (int, float),
    }),
    "sync": (SyncConfig, {
        "workers": int,
        "fetch_timeout_seconds": (int, float),
        "stale_after_minutes": int,
        "default_sync_type": str,
    }),
    "database": (DatabaseConfig, {
        "path": str,
    }),
    "logging": (LoggingConfig, {
        "level": str,
        "json": bool,
    }),
}


def load_settings(path: Optional[str] = None) -> Settings:
    """Load and validate settings from a YAML file.

    A missing file at the default location yields default settings; an
    explicitly named file must exist. Unknown keys are rejected so a typo
    never silently falls back to a default.

    Args:
        path: Path to YAML configuration file (defaults to ~/.usage-monitor/config.yaml)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path or DEFAULT_CONFIG_PATH).expanduser()
    if not config_path.exists():
        if path is not None:
            raise FileNotFoundError(f"Config file not found: {path}")
        return Settings()

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if raw_config is None:
        return Settings()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(name, raw_config[name])
        for name in _SECTIONS
        if name in raw_config
    }
    return Settings(**sections)


def _parse_section(name: str, data: Any):
    """Parse one top-level section into its dataclass.

    Raises:
        ValueError: If the section is not a mapping, has unknown keys or a
            value of the wrong type
    """
    section_cls, schema = _SECTIONS[name]
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, value in data.items():
        expected = schema[key]
        if value is None:
            continue
        # bool is an int subclass; only accept it where bool is expected
        if isinstance(value, bool) and expected is not bool:
            raise ValueError(f"'{name}.{key}' has the wrong type")
        if not isinstance(value, expected):
            raise ValueError(f"'{name}.{key}' has the wrong type")
        values[key] = value.lower() if key in ("level", "default_sync_type") else value

    return section_cls(**values)
