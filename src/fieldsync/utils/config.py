"""
Configuration loader for fieldsync.

This module provides configuration management with:
- Multiple configuration sources (JSON, YAML, TOML, .env files, dicts)
- Environment variable overrides (FIELDSYNC_SECTION__KEY=value)
- Schema validation through pydantic
- Priority-based merging
"""

import os
import json
from pathlib import Path
from typing import Optional, Dict, Any, List, Union
import yaml
import toml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("fieldsync.config")

ENV_PREFIX = "FIELDSYNC_"
ENV_NESTING = "__"
# Environment variables override files but not explicit overrides above this
ENV_PRIORITY = 50


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class StorageConfig(BaseModel):
    """Local store configuration."""
    path: Path = Field(default_factory=lambda: Path.home() / ".fieldsync" / "fieldsync.db")
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"
    entity_types: List[str] = Field(default_factory=lambda: ["case", "person", "evidence"])

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        """Ensure path is absolute."""
        return Path(v).expanduser().absolute()

    @field_validator('entity_types', mode='before')
    @classmethod
    def parse_entity_types(cls, v):
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return v


class SyncConfig(BaseModel):
    """Orchestrator configuration."""
    max_retries: int = Field(default=5, ge=1)
    auto_sync_interval: float = Field(default=30.0, gt=0)  # seconds
    auto_sync_max_interval: float = Field(default=300.0, gt=0)  # backoff cap
    conflict_timeout: float = Field(default=300.0, gt=0)  # 5 minutes
    auto_resolve_threshold_ms: int = Field(default=5000, ge=0)
    item_delay: float = Field(default=0.1, ge=0)  # pause between drained items


class RemoteConfig(BaseModel):
    """Remote collaborator endpoints."""
    base_url: str = "http://localhost:3000"
    sync_path: str = "/api/sync"
    entity_path: str = "/api/{entity_type}s/{entity_id}"
    probe_path: str = "/api/sync"
    timeout: float = 30.0
    conflict_status: int = 409
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")


class BackgroundConfig(BaseModel):
    """Background trigger configuration."""
    enabled: bool = True
    sync_tag: str = "fieldsync-sync"
    periodic_tag: str = "fieldsync-periodic-sync"
    periodic_min_interval: float = 24 * 60 * 60  # 24 hours
    poll_interval: float = 30.0
    connectivity_check_interval: float = 30.0


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: Path.home() / ".fieldsync" / "logs")
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


class FieldSyncConfig(BaseModel):
    """Main fieldsync configuration."""
    app_name: str = "fieldsync"

    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(validate_assignment=True)


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self._sources: List[ConfigSource] = []
        self._config: Optional[FieldSyncConfig] = None
        self.env_prefix = env_prefix

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
        elif suffix == ".env":
            return "env"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> FieldSyncConfig:
        """
        Load configuration from all sources.

        Sources are merged lowest priority first. Environment variables
        sit at ENV_PRIORITY: they override every file but not sources
        added above it, such as command-line overrides.

        Returns:
            Merged configuration
        """
        merged_data: Dict[str, Any] = {}
        env_applied = False

        for source in self._sources:
            if not env_applied and source.priority > ENV_PRIORITY:
                merged_data = self._deep_merge(merged_data, self._load_env_vars())
                env_applied = True
            try:
                data = self._load_source(source)
            except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
                raise ConfigurationError(
                    f"Failed to load config source {source.path or 'dict'}: {e}",
                    cause=e
                ) from e
            merged_data = self._deep_merge(merged_data, data)

        if not env_applied:
            merged_data = self._deep_merge(merged_data, self._load_env_vars())

        try:
            self._config = FieldSyncConfig(**merged_data)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"])
                errors.append(f"{field}: {error['msg']}")

            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}"
            ) from e

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
        elif source.source_type == "env":
            return self._parse_env_file(content)
        else:
            raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _parse_env_file(self, content: str) -> Dict[str, Any]:
        """Parse .env file format (SECTION__KEY=value)."""
        result: Dict[str, Any] = {}

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, value = line.split("=", 1)
            key = key.strip()
            if key.startswith(self.env_prefix):
                key = key[len(self.env_prefix):]
            value = value.strip().strip('"').strip("'")
            self._set_nested(result, key, self._convert_value(value))

        return result

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        result: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(
                    result,
                    key[len(self.env_prefix):],
                    self._convert_value(value)
                )

        return result

    def _set_nested(self, target: Dict[str, Any], key: str, value: Any) -> None:
        parts = key.lower().split(ENV_NESTING)
        current = target

        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = value

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

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> FieldSyncConfig:
        """Get the last loaded configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> FieldSyncConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Overrides merged on top of files and environment

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader()

    default_paths = [
        Path.home() / ".fieldsync" / "config.yaml",
        Path.home() / ".fieldsync" / "config.toml",
        Path("./fieldsync.yaml"),
        Path("./fieldsync.toml"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return loader.load()


__all__ = [
    'FieldSyncConfig',
    'StorageConfig',
    'SyncConfig',
    'RemoteConfig',
    'BackgroundConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
]
