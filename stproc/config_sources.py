"""
Layered configuration loading for the stored-procedure runtime.

Sources are merged by priority into a plain dictionary and validated into a
ServiceConfig:
- Built-in defaults (the model defaults)
- An optional JSON, YAML or TOML file
- Environment variables prefixed with ``STPROC_``
- An explicit override dictionary
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import tomli
import yaml

from .config import ServiceConfig

logger = logging.getLogger(__name__)


class ConfigSource:
    """Base class for configuration sources."""

    def get_config(self) -> Dict[str, Any]:
        """Get the configuration from this source.

        Returns:
            The configuration as a dictionary
        """
        return {}


class EnvConfigSource(ConfigSource):
    """Configuration source that loads from environment variables.

    ``STPROC_POOL__MAX_CONNECTIONS=5`` becomes ``{"pool": {"max_connections": 5}}``.
    """

    def __init__(
        self,
        prefix: str = "STPROC_",
        separator: str = "__",
        environ: Optional[Mapping[str, str]] = None
    ):
        """Initialize the environment configuration source.

        Args:
            prefix: The prefix for environment variables
            separator: The separator for nested keys
            environ: Mapping to read instead of os.environ
        """
        self.prefix = prefix
        self.separator = separator
        self.environ = environ

    def get_config(self) -> Dict[str, Any]:
        environ = os.environ if self.environ is None else self.environ
        config: Dict[str, Any] = {}

        for key, value in environ.items():
            if not key.startswith(self.prefix):
                continue
            parts = key[len(self.prefix):].lower().split(self.separator)

            current = config
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._parse_value(value)

        return config

    def _parse_value(self, value: str) -> Any:
        """Parse a string value into a Python object.

        Args:
            value: The string value

        Returns:
            The parsed value
        """
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass

        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value


class FileConfigSource(ConfigSource):
    """Configuration source that loads from a JSON, YAML or TOML file."""

    def __init__(self, file_path: str, section: Optional[str] = None):
        """Initialize the file configuration source.

        Args:
            file_path: The path to the configuration file
            section: Optional top-level key holding the runtime settings
        """
        self.file_path = file_path
        self.section = section

    def get_config(self) -> Dict[str, Any]:
        path = Path(self.file_path)

        if not path.exists():
            logger.warning(f"Configuration file '{self.file_path}' does not exist")
            return {}

        suffix = path.suffix.lower()
        if suffix == ".json":
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        elif suffix in (".yaml", ".yml"):
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        elif suffix == ".toml":
            with open(path, "rb") as f:
                data = tomli.load(f)
        else:
            logger.warning(f"Unsupported configuration file format: {path.suffix}")
            return {}

        if self.section:
            data = data.get(self.section, {})
        return data


class DictConfigSource(ConfigSource):
    """Configuration source backed by a dictionary."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    def get_config(self) -> Dict[str, Any]:
        return self.config


class ConfigManager:
    """Merges configuration sources and validates the result."""

    def __init__(self):
        self.sources: List[Tuple[int, ConfigSource]] = []
        self.config_cache: Optional[Dict[str, Any]] = None

    def add_source(self, source: ConfigSource, priority: int = 0) -> None:
        """Add a configuration source.

        Args:
            source: The configuration source
            priority: Higher priority sources override lower priority sources
        """
        self.sources.append((priority, source))
        self.sources.sort(key=lambda item: item[0])
        self.config_cache = None

    def get_config(self) -> Dict[str, Any]:
        """Get the merged configuration from all sources.

        Returns:
            The merged configuration as a dictionary
        """
        if self.config_cache is None:
            config: Dict[str, Any] = {}
            for _, source in self.sources:
                self._merge_config(config, source.get_config())
            self.config_cache = config
        return self.config_cache

    def get_service_config(self) -> ServiceConfig:
        """Validate the merged configuration into a ServiceConfig."""
        return ServiceConfig.model_validate(self.get_config())

    def _merge_config(self, target: Dict[str, Any], source: Dict[str, Any]) -> None:
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._merge_config(target[key], value)
            else:
                target[key] = copy.deepcopy(value)


def load_config(
    file_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    env_prefix: str = "STPROC_",
    environ: Optional[Mapping[str, str]] = None
) -> ServiceConfig:
    """Load a ServiceConfig from file, environment and explicit overrides.

    Args:
        file_path: Optional configuration file
        overrides: Optional dictionary applied last
        env_prefix: Prefix of environment variables to read
        environ: Mapping to read instead of os.environ

    Returns:
        The validated configuration
    """
    manager = ConfigManager()
    if file_path:
        manager.add_source(FileConfigSource(file_path), priority=10)
    manager.add_source(EnvConfigSource(prefix=env_prefix, environ=environ), priority=20)
    if overrides:
        manager.add_source(DictConfigSource(overrides), priority=30)
    return manager.get_service_config()
