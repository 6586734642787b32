"""
Configuration management and loading.

Handles engine settings for reconciliation, caching and logging.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import yaml

from usage_reconciler.core.reconciler import DEFAULT_PRIMARY_MODEL, DEFAULT_REQUEST_LIMIT
from usage_reconciler.storage.db import DEFAULT_DB_PATH

LOG_LEVELS = ("debug", "info", "warning", "error")


class CacheBackend(Enum):
    """Where team membership decisions are cached."""
    SQLITE = "sqlite"
    JSON = "json"
    MEMORY = "memory"


@dataclass(frozen=True)
class UsageConfig:
    """Which usage entry carries premium request counters."""
    primary_model: str = DEFAULT_PRIMARY_MODEL
    default_request_limit: int = DEFAULT_REQUEST_LIMIT

    def __post_init__(self):
        """Validate usage settings."""
        if not self.primary_model or not self.primary_model.strip():
            raise ValueError("primary_model cannot be empty")
        if self.default_request_limit <= 0:
            raise ValueError("default_request_limit must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Team membership cache location."""
    backend: CacheBackend = CacheBackend.SQLITE
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"

    def __post_init__(self):
        """Validate log level."""
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {list(LOG_LEVELS)}")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    usage: UsageConfig
    cache: CacheConfig
    logging: LoggingConfig

    @classmethod
    def default(cls) -> "EngineConfig":
        """Configuration used when no file is given."""
        return cls(usage=UsageConfig(), cache=CacheConfig(), logging=LoggingConfig())


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Unknown keys are rejected so a typo cannot silently fall back to a
    default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _reject_unknown_keys(raw_config, {'usage', 'cache', 'logging'}, "configuration")

    usage_data = _section(raw_config, 'usage')
    _reject_unknown_keys(usage_data, {'primary_model', 'default_request_limit'}, "usage")

    primary_model = usage_data.get('primary_model', DEFAULT_PRIMARY_MODEL)
    if not isinstance(primary_model, str):
        raise ValueError("'primary_model' in usage must be a string")

    limit = usage_data.get('default_request_limit', DEFAULT_REQUEST_LIMIT)
    if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
        raise ValueError("'default_request_limit' in usage must be a positive integer")

    usage = UsageConfig(primary_model=primary_model, default_request_limit=limit)

    cache_data = _section(raw_config, 'cache')
    _reject_unknown_keys(cache_data, {'backend', 'path'}, "cache")

    backend_str = cache_data.get('backend', CacheBackend.SQLITE.value)
    if not isinstance(backend_str, str):
        raise ValueError("'backend' in cache must be a string")
    try:
        backend = CacheBackend(backend_str.lower())
    except ValueError:
        valid_backends = [backend.value for backend in CacheBackend]
        raise ValueError(f"'backend' in cache must be one of: {valid_backends}")

    cache_path = cache_data.get('path', DEFAULT_DB_PATH)
    if not isinstance(cache_path, str) or not cache_path.strip():
        raise ValueError("'path' in cache must be a non-empty string")

    logging_data = _section(raw_config, 'logging')
    _reject_unknown_keys(logging_data, {'level'}, "logging")

    level = logging_data.get('level', "info")
    if not isinstance(level, str):
        raise ValueError("'level' in logging must be a string")

    return EngineConfig(
        usage=usage,
        cache=CacheConfig(backend=backend, path=cache_path),
        logging=LoggingConfig(level=level.lower())
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown_keys(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
