"""
Stagewise - Built-in Modules, Migrations and Tasks

The defaults the CLI runs with:

    PreInit   create-network-config   network.json from configuration
    CoreInit  assign-server-id        persistent server identity
    core      CoreModule              BootstrapContext, StartupLogger, ServerIdentity
    app       StatusModule            StatusService
    bg        HeartbeatService        periodic status heartbeat
    task      announce-ready          marks the server ready
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from config import HOST_WEB_CLIENT_KEY, PUBLISHED_URL_KEY
from core.bootstrap import BootstrapOrchestrator
from core.context import BootstrapContext
from core.errors import ConfigError
from core.migrations import MigrationCatalog, MigrationContext, MigrationStage
from core.services import (
    BackgroundServiceBase,
    ServiceGraph,
    ServiceLayer,
    ServiceModuleBase,
    startup_task,
)
from di.container import Container
from observability.logging import StartupLogger, get_startup_logger

logger = logging.getLogger("stagewise.builtin")

NETWORK_CONFIG_FILE_NAME = "network.json"
SERVER_ID_FILE_NAME = "server-id"
NETWORK_PORT_KEY = "network:port"
HEARTBEAT_SECONDS_KEY = "status:heartbeat-seconds"


# =============================================================================
# SERVICES
# =============================================================================


class ServerIdentity:
    """Stable id of this server, persisted under program_data."""

    def __init__(self, program_data: Path):
        self._path = Path(program_data) / SERVER_ID_FILE_NAME
        self._server_id: Optional[str] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def server_id(self) -> Optional[str]:
        return self._server_id

    def load(self) -> Optional[str]:
        if self._path.exists():
            value = self._path.read_text(encoding="utf-8").strip()
            self._server_id = value or None
        return self._server_id

    def ensure_persisted(self) -> str:
        """Load the id, creating and writing one if none exists yet."""
        if self.load() is None:
            self._server_id = uuid4().hex
            self._path.write_text(self._server_id, encoding="utf-8")
            logger.info(f"Assigned server id {self._server_id}")
        return self._server_id


class StatusService:
    """What the server reports about itself."""

    def __init__(self, identity: ServerIdentity, context: BootstrapContext):
        self._identity = identity
        self._context = context
        self.ready = False
        self.heartbeats = 0
        self.last_heartbeat: Optional[datetime] = None

    def beat(self) -> None:
        self.heartbeats += 1
        self.last_heartbeat = datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        configuration = self._context.configuration
        return {
            "server_id": self._identity.server_id,
            "ready": self.ready,
            "port": configuration.get_int(NETWORK_PORT_KEY),
            "published_url": configuration.get(PUBLISHED_URL_KEY),
            "host_web_client": configuration.get_bool(HOST_WEB_CLIENT_KEY, True),
            "heartbeats": self.heartbeats,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
        }


class HeartbeatService(BackgroundServiceBase):
    """Background service that periodically records a status heartbeat."""

    def __init__(self, interval_seconds: Optional[float] = None):
        super().__init__("Heartbeat")
        if interval_seconds is not None and interval_seconds <= 0:
            raise ValueError(f"Heartbeat interval must be positive, got {interval_seconds}")
        self._interval = interval_seconds

    def attach(self, graph: ServiceGraph) -> None:
        super().attach(graph)
        # Fail wiring, not the running loop, on a bad configured interval
        self._resolve_interval()

    def _resolve_interval(self) -> float:
        if self._interval is not None:
            return self._interval
        if self._graph is None:
            return 60.0
        seconds = self._graph.context.configuration.get_int(HEARTBEAT_SECONDS_KEY, 60)
        if seconds <= 0:
            raise ConfigError(
                f"Configuration key '{HEARTBEAT_SECONDS_KEY}' must be a positive number of seconds, got {seconds}",
                config_key=HEARTBEAT_SECONDS_KEY,
            )
        return float(seconds)

    async def execute(self, cancellation_token: asyncio.Event) -> None:
        interval = self._resolve_interval()
        while not cancellation_token.is_set():
            try:
                await asyncio.wait_for(cancellation_token.wait(), timeout=interval)
                # Cancellation requested
                break
            except asyncio.TimeoutError:
                status = self._graph.try_resolve(StatusService) if self._graph else None
                if status is not None:
                    status.beat()
                    logger.debug(f"[Heartbeat] {status.heartbeats}")


# =============================================================================
# MODULES
# =============================================================================


class CoreModule(ServiceModuleBase):
    """Core services every other module may depend on."""

    def __init__(self, startup_logger: Optional[StartupLogger] = None):
        super().__init__(
            "CoreModule",
            layer=ServiceLayer.CORE,
            required_services=(BootstrapContext, ServerIdentity),
        )
        self._startup_logger = startup_logger

    def configure_services(self, container: Container, context: BootstrapContext) -> None:
        container.register_instance(BootstrapContext, context)
        container.register_instance(
            StartupLogger,
            self._startup_logger or get_startup_logger("stagewise.services"),
        )
        container.register_factory(
            ServerIdentity,
            lambda: ServerIdentity(context.paths.program_data),
        )

    async def initialize(self, container: Container) -> None:
        container.resolve(ServerIdentity).load()


class StatusModule(ServiceModuleBase):
    """Application-level status reporting."""

    def __init__(self) -> None:
        super().__init__(
            "StatusModule",
            layer=ServiceLayer.APPLICATION,
            dependencies=("CoreModule",),
            required_services=(StatusService,),
        )

    def configure_services(self, container: Container, context: BootstrapContext) -> None:
        container.register_singleton(StatusService)


# =============================================================================
# MIGRATIONS AND TASKS
# =============================================================================


def create_network_config(ctx: MigrationContext) -> None:
    """Write network.json from the resolved configuration, if absent."""
    target = ctx.bootstrap.paths.config_dir / NETWORK_CONFIG_FILE_NAME
    if target.exists():
        ctx.logger.info("Network config already present", path=str(target))
        return

    configuration = ctx.bootstrap.configuration
    network = {
        "port": configuration.get_int(NETWORK_PORT_KEY, 8096),
        "published_url": configuration.get(PUBLISHED_URL_KEY),
        "host_web_client": configuration.get_bool(HOST_WEB_CLIENT_KEY, True),
    }
    target.write_text(json.dumps(network, indent=2), encoding="utf-8")
    ctx.logger.info("Network config written", path=str(target))


def assign_server_id(ctx: MigrationContext) -> None:
    """Persist a server id, generating one on first run."""
    if ctx.services is None:
        raise RuntimeError("assign-server-id needs the service graph")
    server_id = ctx.services.resolve(ServerIdentity).ensure_persisted()
    ctx.logger.info("Server id assigned", server_id=server_id)


@startup_task("announce-ready")
def announce_ready(graph: ServiceGraph) -> None:
    status = graph.resolve(StatusService)
    status.ready = True
    snapshot = status.snapshot()
    logger.info(
        f"Server {snapshot['server_id']} ready on port {snapshot['port']}"
        + (f" ({snapshot['published_url']})" if snapshot["published_url"] else "")
    )


def default_catalog() -> MigrationCatalog:
    catalog = MigrationCatalog()
    catalog.add(
        "create-network-config",
        MigrationStage.PRE_INIT,
        create_network_config,
        "Write network.json from configuration",
    )
    catalog.add(
        "assign-server-id",
        MigrationStage.CORE_INIT,
        assign_server_id,
        "Persist the server identity",
    )
    return catalog


def create_default_orchestrator(**overrides: Any) -> BootstrapOrchestrator:
    """Orchestrator wired with the built-ins; keyword arguments replace any of them."""
    options: Dict[str, Any] = {
        "catalog": default_catalog(),
        "modules": [CoreModule(), StatusModule()],
        "background_services": [HeartbeatService()],
        "startup_tasks": [announce_ready],
    }
    options.update(overrides)
    return BootstrapOrchestrator(**options)


__all__ = [
    "ServerIdentity",
    "StatusService",
    "HeartbeatService",
    "CoreModule",
    "StatusModule",
    "create_network_config",
    "assign_server_id",
    "announce_ready",
    "default_catalog",
    "create_default_orchestrator",
]
