"""
Config system - Layered typed configuration for the mapper.

Merge precedence (later overrides earlier):
defaults < config files (YAML/JSON) < .env file < DOCMAPPER_* environment
variables < explicit overrides.
"""

import json
import logging
import os
from dataclasses import dataclass, fields, MISSING
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import dotenv_values

from .faults import ConfigError

__all__ = [
    "MapperConfig",
    "ConfigLoader",
    "configure",
    "get_config",
    "reset_config",
    "configure_logging",
]

_ENFORCE_EXTRA = ("none", "strict", "remove")
_ENFORCE_TYPE = ("strict", "loose", "none")


@dataclass
class MapperConfig:
    """Typed configuration for the document mapper."""

    database_url: str = "memory://"
    connect_retries: int = 3
    connect_retry_delay: float = 0.5
    enforce_missing: bool = False
    enforce_extra: str = "none"
    enforce_type: str = "loose"
    log_level: str = "warning"

    def __post_init__(self):
        if self.enforce_extra not in _ENFORCE_EXTRA:
            raise ConfigError("enforce_extra", f"expected one of {_ENFORCE_EXTRA}, got {self.enforce_extra!r}")
        if self.enforce_type not in _ENFORCE_TYPE:
            raise ConfigError("enforce_type", f"expected one of {_ENFORCE_TYPE}, got {self.enforce_type!r}")
        if self.connect_retries < 1:
            raise ConfigError("connect_retries", "must be at least 1")
        if not isinstance(getattr(logging, self.log_level.upper(), None), int):
            raise ConfigError("log_level", f"unknown level {self.log_level!r}")


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources with precedence:
    overrides > environment variables > .env file > config files > defaults
    """

    def __init__(self, env_prefix: str = "DOCMAPPER_"):
        self.env_prefix = env_prefix
        self.config_data: Dict[str, Any] = {}

    @classmethod
    def load(
        cls,
        paths: Optional[list[str]] = None,
        env_prefix: str = "DOCMAPPER_",
        env_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "ConfigLoader":
        """
        Load configuration from multiple sources with proper merge strategy.

        Args:
            paths: Config file paths (.yaml, .yml or .json)
            env_prefix: Prefix for environment variables
            env_file: Path to .env file
            overrides: Manual overrides (highest precedence)

        Returns:
            Configured ConfigLoader instance
        """
        loader = cls(env_prefix=env_prefix)

        for path in paths or []:
            loader._load_file(Path(path))

        if env_file:
            loader._load_env_file(env_file)

        loader._load_from_env()

        if overrides:
            loader._merge_dict(loader.config_data, overrides)

        return loader

    def _load_file(self, path: Path):
        if not path.exists():
            raise ConfigError(str(path), "config file does not exist")
        if path.suffix == ".json":
            self._load_json_file(path)
        elif path.suffix in (".yaml", ".yml"):
            self._load_yaml_file(path)
        else:
            raise ConfigError(str(path), f"unsupported config file type '{path.suffix}'")

    def _load_json_file(self, path: Path):
        """Load config from JSON file."""
        with open(path) as f:
            data = json.load(f)
            self._merge_dict(self.config_data, data)

    def _load_yaml_file(self, path: Path):
        """Load config from YAML file."""
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f)
            if data:
                self._merge_dict(self.config_data, data)

    def _load_env_file(self, path: str):
        """Load prefixed keys from a .env file."""
        if not Path(path).exists():
            return
        for key, value in dotenv_values(path).items():
            if key.startswith(self.env_prefix) and value is not None:
                self._set_nested(key, value)

    def _load_from_env(self):
        """Load config from environment variables."""
        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _set_nested(self, key: str, value: str):
        """Convert DOCMAPPER_SECTION__KEY to nested dict."""
        key = key[len(self.env_prefix):]
        parts = key.lower().split("__")

        current = self.config_data
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[parts[-1]] = self._parse_value(value)

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("{", "[")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _merge_dict(self, target: dict, source: dict):
        """Deep merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._merge_dict(target[key], value)
            else:
                target[key] = value

    def get(self, path: str, default: Any = None) -> Any:
        """Get config value by dot-separated path."""
        current = self.config_data
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def to_mapper_config(self) -> MapperConfig:
        """Instantiate and validate the mapper configuration."""
        kwargs = {}
        for field_info in fields(MapperConfig):
            if field_info.name not in self.config_data:
                continue
            value = self.config_data[field_info.name]
            expected = field_info.default if field_info.default is not MISSING else None
            if expected is not None and not self._check_type(value, type(expected)):
                raise ConfigError(
                    field_info.name,
                    f"expected {type(expected).__name__}, got {type(value).__name__}",
                )
            kwargs[field_info.name] = value
        return MapperConfig(**kwargs)

    @staticmethod
    def _check_type(value: Any, expected_type: type) -> bool:
        if expected_type is float:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if expected_type is int:
            return isinstance(value, int) and not isinstance(value, bool)
        return isinstance(value, expected_type)

    def to_dict(self) -> dict:
        """Export all config as dictionary."""
        return self.config_data.copy()


# ── Active configuration ─────────────────────────────────────────────────────

_config: Optional[MapperConfig] = None


def configure(
    config: Optional[MapperConfig] = None,
    *,
    paths: Optional[list[str]] = None,
    env_file: Optional[str] = ".env",
    **overrides: Any,
) -> MapperConfig:
    """
    Install the active configuration.

    With no ``config`` the layered loader runs: ``paths`` (YAML or JSON),
    then ``env_file``, then environment variables, then ``overrides``.
    """
    global _config
    if config is None:
        loader = ConfigLoader.load(paths=paths, env_file=env_file, overrides=overrides)
        config = loader.to_mapper_config()
    _config = config
    return config


def get_config() -> MapperConfig:
    """Return the active configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = ConfigLoader.load(env_file=".env").to_mapper_config()
    return _config


def reset_config() -> None:
    """Forget the active configuration (useful for testing)."""
    global _config
    _config = None


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured log level to the ``docmapper`` loggers."""
    level = level or get_config().log_level
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    logging.getLogger("docmapper").setLevel(getattr(logging, level.upper()))
