"""
Configuration loader for the PARK session engine.

This module provides configuration management with:
- Multiple configuration sources (JSON/YAML/TOML files, dicts, env vars)
- Schema validation through pydantic
- Type coercion of environment values
- Priority-ordered deep merging
"""

import os
import json
import yaml
import toml
from pathlib import Path
from typing import Optional, Dict, Any, List, Union
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("park-engine.config")

PARK_ROOT = Path.home() / ".park-agent-launcher"
ENV_PREFIX = "PARK_"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ServerConfig(BaseModel):
    """HTTP/WebSocket listener configuration."""
    host: str = "localhost"
    port: int = 3000

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 0 <= v <= 65535:
            raise ValueError(f"Invalid port: {v}")
        return v


class ShellConfig(BaseModel):
    """Shell used to run interactive sessions."""
    default_shell: str = "/bin/bash"
    default_cwd: Path = Field(default_factory=Path.home)


class DatabaseConfig(BaseModel):
    """Session record store configuration."""
    path: Path = Field(default_factory=lambda: PARK_ROOT / "config" / "park.db")

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        """Ensure path is absolute."""
        return Path(v).expanduser().absolute()


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: PARK_ROOT / "logs")
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class SessionConfig(BaseModel):
    """Session execution engine configuration."""
    buffer_capacity: int = Field(default=1000, gt=0)
    observer_queue_size: int = Field(default=10000, gt=0)
    shutdown_timeout: float = Field(default=5.0, ge=0)
    pty_cols: int = Field(default=80, gt=0)
    pty_rows: int = Field(default=30, gt=0)


class ParkConfig(BaseModel):
    """Main engine configuration."""
    app_name: str = "park-engine"
    debug: bool = False

    server: ServerConfig = Field(default_factory=ServerConfig)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )


def deep_merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _validate(data: Dict[str, Any]) -> ParkConfig:
    try:
        return ParkConfig(**data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            field = ".".join(str(x) for x in error["loc"])
            errors.append(f"{field}: {error['msg']}")
        raise ConfigurationError(
            f"Configuration validation failed: {'; '.join(errors)}"
        ) from e


def update_config(config: ParkConfig, changes: Dict[str, Any]) -> ParkConfig:
    """
    Apply a partial update to a configuration.

    ``changes`` is deep-merged over ``config`` and the result validated as a
    whole, so an invalid change leaves ``config`` untouched. Unknown sections
    are rejected.
    """
    unknown = sorted(set(changes) - set(ParkConfig.model_fields))
    if unknown:
        raise ConfigurationError(f"Unknown configuration sections: {', '.join(unknown)}")

    updated = _validate(deep_merge(config.model_dump(), changes))
    logger.info("configuration_updated", sections=sorted(changes))
    return updated


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self._sources: List[ConfigSource] = []
        self._config: Optional[ParkConfig] = None
        self._env_prefix = env_prefix

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> ParkConfig:
        """
        Load configuration from all sources.

        Sources are merged lowest priority first, then PARK_* environment
        variables are applied on top.
        """
        merged_data: Dict[str, Any] = {}

        for source in self._sources:
            try:
                data = self._load_source(source)
            except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
                raise ConfigurationError(
                    f"Failed to load {source.path or 'dict source'}: {e}"
                ) from e
            merged_data = deep_merge(merged_data, data)

        merged_data = deep_merge(merged_data, self._load_env_vars())

        self._config = _validate(merged_data)
        logger.info("configuration_loaded", sources=len(self._sources))
        return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        if source.source_type == "json":
            return json.loads(content)
        elif source.source_type == "yaml":
            return yaml.safe_load(content) or {}
        elif source.source_type == "toml":
            return toml.loads(content)
        else:
            raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _load_env_vars(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        PARK_SERVER_PORT=4000 becomes {"server": {"port": 4000}}. The first
        segment after the prefix names the section, the rest is the key.
        """
        result: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(self._env_prefix):
                continue
            key = key[len(self._env_prefix):].lower()
            section, _, name = key.partition("_")
            if not name:
                result[section] = self._convert_value(value)
                continue
            result.setdefault(section, {})
            if isinstance(result[section], dict):
                result[section][name] = self._convert_value(value)

        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        if value.startswith("~"):
            return Path(value).expanduser()

        return value

    def get_config(self) -> ParkConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


DEFAULT_CONFIG_PATHS = [
    PARK_ROOT / "config" / "config.json",
    PARK_ROOT / "config" / "config.yaml",
    Path("./park.yaml"),
]


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    search_defaults: bool = True,
) -> ParkConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths (override defaults)
        extra_config: Extra configuration to merge (highest priority)
        search_defaults: Whether to look at the default config locations

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader()

    if search_defaults:
        for path in DEFAULT_CONFIG_PATHS:
            if path.exists():
                loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return loader.load()


__all__ = [
    'ParkConfig',
    'ServerConfig',
    'ShellConfig',
    'DatabaseConfig',
    'LoggingConfig',
    'SessionConfig',
    'ConfigLoader',
    'load_config',
    'update_config',
    'deep_merge',
]
