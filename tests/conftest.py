"""
Stagewise - Test Configuration

Pytest fixtures and configuration for all tests.
"""
import io
from pathlib import Path

import pytest

from config import ConfigurationSnapshot, ServerPaths, StartupOptions
from core.context import BootstrapContext, build_context
from db.migration_store import InMemoryMigrationStore
from observability.logging import shutdown_logging


class TrackingStore(InMemoryMigrationStore):
    """In-memory store that counts lifecycle calls."""

    def __init__(self) -> None:
        super().__init__()
        self.initialized = 0
        self.closed = 0

    async def initialize(self) -> None:
        self.initialized += 1

    async def close(self) -> None:
        self.closed += 1


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo any process-wide logging a test configured."""
    yield
    shutdown_logging()


@pytest.fixture
def data_dir(tmp_path) -> Path:
    """Program data directory (not yet created)."""
    return tmp_path / "data"


@pytest.fixture
def startup_options(data_dir) -> StartupOptions:
    return StartupOptions(data_dir=data_dir)


@pytest.fixture
def bootstrap_context(startup_options) -> BootstrapContext:
    """Context built with an empty environment."""
    return build_context(startup_options, environ={})


@pytest.fixture
def offline_context() -> BootstrapContext:
    """Context that never touches the filesystem."""
    return BootstrapContext(
        paths=ServerPaths.from_root(Path("stagewise-test")),
        configuration=ConfigurationSnapshot({}),
        options=StartupOptions(),
    )


@pytest.fixture
def memory_store() -> InMemoryMigrationStore:
    return InMemoryMigrationStore()


@pytest.fixture
def tracking_store() -> TrackingStore:
    return TrackingStore()


@pytest.fixture
def diagnostics() -> io.StringIO:
    """Captures the orchestrator's failure report."""
    return io.StringIO()
