"""
Stagewise - Bootstrap Context

The immutable snapshot every bootstrap step reads from: working directories,
the resolved configuration, and the command-line options it was built from.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from config import (
    ConfigurationSnapshot,
    ServerPaths,
    StartupOptions,
    build_configuration,
)
from core.errors import ConfigError


@dataclass(frozen=True)
class BootstrapContext:
    """Read-only inputs of one bootstrap run."""
    paths: ServerPaths
    configuration: ConfigurationSnapshot
    options: StartupOptions


def _check_writable(path: Path) -> None:
    """Fail if ``path`` (or the ancestor it would be created under) is not writable."""
    existing = path.absolute()
    while not existing.exists():
        parent = existing.parent
        if parent == existing:
            break
        existing = parent

    if not existing.is_dir():
        raise ConfigError(
            f"Path '{path}' cannot be used as a directory: '{existing}' is not a directory",
            path=str(path),
        )
    if not os.access(existing, os.W_OK | os.X_OK):
        raise ConfigError(f"Path '{path}' is not writable", path=str(path))


def build_context(
    options: StartupOptions,
    environ: Optional[Mapping[str, str]] = None,
    defaults: Optional[Mapping[str, str]] = None,
) -> BootstrapContext:
    """
    Build the bootstrap context from command-line options.

    Nothing is created on disk; directories are only checked for
    writability.

    Raises:
        ConfigError: If a directory is unwritable or an overlay is malformed
    """
    paths = options.to_paths()
    for path in paths.all():
        _check_writable(path)

    configuration = build_configuration(paths, options, environ=environ, defaults=defaults)
    return BootstrapContext(paths=paths, configuration=configuration, options=options)
