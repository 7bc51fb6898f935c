"""
Stagewise - Configuration

Layered configuration for the bootstrap lifecycle.

Sources are applied in override order (later wins):
    settings.json in the config directory
    < DEFAULT_CONFIGURATION
    < STAGEWISE_* environment variables
    < command-line overlay (StartupOptions)

The result is an immutable, case-insensitive ConfigurationSnapshot.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from core.errors import ConfigError

ENV_PREFIX = "STAGEWISE_"
KEY_DELIMITER = ":"
SETTINGS_FILE_NAME = "settings.json"
DEFAULT_PROGRAM_DATA = "stagewise-data"

# Set by constrained/test environments to skip the external binary check
BINARY_NO_VALIDATION_ENV = "STAGEWISE_BINARY__NOVALIDATION"

# Well-known configuration keys
HOST_WEB_CLIENT_KEY = "web:host-client"
PUBLISHED_URL_KEY = "network:published-url"
BINARY_PATH_KEY = "binary:path"
BINARY_NO_VALIDATION_KEY = "binary:novalidation"
MIGRATION_STORE_KEY = "migrations:store"
MIGRATION_DATABASE_URL_KEY = "migrations:database-url"

DEFAULT_CONFIGURATION: Dict[str, str] = {
    HOST_WEB_CLIENT_KEY: "true",
    "network:port": "8096",
    MIGRATION_STORE_KEY: "sql",
    "status:heartbeat-seconds": "60",
    "logging:service-name": "stagewise",
}

_TRUTHY = {"true", "1", "yes", "on"}


@dataclass(frozen=True)
class ServerPaths:
    """Working directories for one server instance."""
    program_data: Path
    log_dir: Path
    config_dir: Path
    cache_dir: Path
    web_dir: Path

    @classmethod
    def from_root(cls, root: Path) -> "ServerPaths":
        root = Path(root)
        return cls(
            program_data=root,
            log_dir=root / "logs",
            config_dir=root / "config",
            cache_dir=root / "cache",
            web_dir=root / "web",
        )

    def all(self) -> List[Path]:
        """Directories in creation order."""
        return [self.program_data, self.log_dir, self.config_dir, self.cache_dir, self.web_dir]

    def to_dict(self) -> Dict[str, str]:
        return {
            "program_data": str(self.program_data),
            "log_dir": str(self.log_dir),
            "config_dir": str(self.config_dir),
            "cache_dir": str(self.cache_dir),
            "web_dir": str(self.web_dir),
        }


@dataclass
class StartupOptions:
    """Options derived from the command line."""
    data_dir: Optional[Path] = None
    log_dir: Optional[Path] = None
    config_dir: Optional[Path] = None
    cache_dir: Optional[Path] = None
    web_dir: Optional[Path] = None
    no_web_client: bool = False
    published_server_url: Optional[str] = None
    binary_path: Optional[str] = None
    settings: Dict[str, str] = field(default_factory=dict)

    def to_paths(self) -> ServerPaths:
        """Resolve working directories, defaulting to subdirectories of data_dir."""
        defaults = ServerPaths.from_root(self.data_dir or Path(DEFAULT_PROGRAM_DATA))
        return ServerPaths(
            program_data=defaults.program_data,
            log_dir=self.log_dir or defaults.log_dir,
            config_dir=self.config_dir or defaults.config_dir,
            cache_dir=self.cache_dir or defaults.cache_dir,
            web_dir=self.web_dir or defaults.web_dir,
        )

    def to_overlay(self) -> Dict[str, str]:
        """Convert command-line options into configuration keys."""
        overlay: Dict[str, str] = {}
        if self.no_web_client:
            overlay[HOST_WEB_CLIENT_KEY] = "false"
        if self.published_server_url:
            overlay[PUBLISHED_URL_KEY] = self.published_server_url
        if self.binary_path:
            overlay[BINARY_PATH_KEY] = self.binary_path
        overlay.update(self.settings)
        return overlay


def parse_overrides(entries: Iterable[str]) -> Dict[str, str]:
    """Parse ``key=value`` entries from the command line."""
    overrides: Dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep:
            raise ConfigError(f"Override '{entry}' is not of the form key=value")
        key = key.strip()
        if not key:
            raise ConfigError(f"Override '{entry}' has an empty key")
        overrides[key] = value
    return overrides


class ConfigurationSnapshot(Mapping[str, str]):
    """Immutable, case-insensitive view of the resolved configuration."""

    def __init__(self, values: Mapping[str, str]):
        self._values: Dict[str, str] = {k.lower(): v for k, v in values.items()}

    def __getitem__(self, key: str) -> str:
        return self._values[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._values

    def __repr__(self) -> str:
        return f"ConfigurationSnapshot({self._values!r})"

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        return value.strip().lower() in _TRUTHY

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value is None or not value.strip():
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ConfigError(
                f"Configuration key '{key}' must be an integer, got '{value}'",
                config_key=key,
                cause=e,
            ) from e

    def section(self, prefix: str) -> Dict[str, str]:
        """All keys under ``prefix:``, with the prefix stripped."""
        head = prefix.lower().rstrip(KEY_DELIMITER) + KEY_DELIMITER
        return {k[len(head):]: v for k, v in self._values.items() if k.startswith(head)}


def _stringify(key: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    if value is None:
        return ""
    raise ConfigError(
        f"Configuration key '{key}' has unsupported value type {type(value).__name__}",
        config_key=key,
    )


def _flatten(data: Mapping[str, Any], prefix: str = "") -> Iterator[Tuple[str, str]]:
    for raw_key, value in data.items():
        if not isinstance(raw_key, str) or not raw_key:
            raise ConfigError(f"Configuration key under '{prefix}' must be a non-empty string")
        key = f"{prefix}{KEY_DELIMITER}{raw_key}" if prefix else raw_key
        if isinstance(value, Mapping):
            yield from _flatten(value, key)
        elif isinstance(value, list):
            for index, item in enumerate(value):
                item_key = f"{key}{KEY_DELIMITER}{index}"
                if isinstance(item, Mapping):
                    yield from _flatten(item, item_key)
                else:
                    yield item_key, _stringify(item_key, item)
        else:
            yield key, _stringify(key, value)


class ConfigurationBuilder:
    """
    Composes configuration sources; later sources win.

    Usage:
        snapshot = (
            ConfigurationBuilder()
            .add_json_file(paths.config_dir / "settings.json", optional=True)
            .add_mapping(DEFAULT_CONFIGURATION)
            .add_environment(os.environ, prefix="STAGEWISE_")
            .add_mapping(options.to_overlay())
            .build()
        )
    """

    def __init__(self) -> None:
        self._layers: List[Dict[str, str]] = []

    def add_mapping(self, values: Mapping[str, Any]) -> "ConfigurationBuilder":
        layer: Dict[str, str] = {}
        for key, value in values.items():
            if not isinstance(key, str) or not key.strip():
                raise ConfigError("Configuration overlay contains an empty key")
            layer[key] = _stringify(key, value)
        self._layers.append(layer)
        return self

    def add_json_file(self, path: Path, optional: bool = True) -> "ConfigurationBuilder":
        path = Path(path)
        if not path.exists():
            if optional:
                return self
            raise ConfigError(f"Configuration file '{path}' does not exist", path=str(path))
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(
                f"Configuration file '{path}' is malformed: {e}",
                path=str(path),
                cause=e,
            ) from e
        if not isinstance(data, Mapping):
            raise ConfigError(f"Configuration file '{path}' must contain a JSON object", path=str(path))
        self._layers.append(dict(_flatten(data)))
        return self

    def add_environment(
        self,
        environ: Mapping[str, str],
        prefix: str = ENV_PREFIX,
    ) -> "ConfigurationBuilder":
        layer: Dict[str, str] = {}
        upper_prefix = prefix.upper()
        for name, value in environ.items():
            if not name.upper().startswith(upper_prefix):
                continue
            key = name[len(prefix):].replace("__", KEY_DELIMITER)
            if key:
                layer[key] = value
        self._layers.append(layer)
        return self

    def build(self) -> ConfigurationSnapshot:
        merged: Dict[str, str] = {}
        for layer in self._layers:
            for key, value in layer.items():
                merged[key.lower()] = value
        return ConfigurationSnapshot(merged)


def build_configuration(
    paths: ServerPaths,
    options: StartupOptions,
    environ: Optional[Mapping[str, str]] = None,
    defaults: Optional[Mapping[str, str]] = None,
) -> ConfigurationSnapshot:
    """Compose the standard configuration stack for a server instance."""
    return (
        ConfigurationBuilder()
        .add_json_file(paths.config_dir / SETTINGS_FILE_NAME, optional=True)
        .add_mapping(DEFAULT_CONFIGURATION if defaults is None else defaults)
        .add_environment(os.environ if environ is None else environ, prefix=ENV_PREFIX)
        .add_mapping(options.to_overlay())
        .build()
    )
