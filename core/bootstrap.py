"""
Stagewise - Application Bootstrap

Takes a freshly constructed process from "no state" to "fully serving".

Steps, each awaited to completion before the next begins:

    materialize → PreInit → core-services → CoreInit
                → app-services → AppInit → start → startup-tasks

    materialize:   working directories, logging config, logging, migration store
    PreInit:       migrations that need only the configuration
    core-services: binary check, core service modules wired
    CoreInit:      migrations that may resolve core services
    app-services:  application service modules wired
    AppInit:       migrations over the fully wired graph
    start:         background services go live
    startup-tasks: one-shot tasks, in registration order

If a step fails, nothing after it runs. The failure is reported to the
diagnostic stream and the log, every resource acquired so far is released,
and BootstrapFailure is raised. ``shutdown`` is idempotent, so the normal
exit path and the failure path can both call it.

Usage:
    orchestrator = BootstrapOrchestrator(catalog, modules=[CoreModule()])
    context = orchestrator.build_context(StartupOptions(data_dir=Path("data")))
    graph = await orchestrator.run(context)
    ...
    await orchestrator.shutdown()

    # Or as a context manager
    async with bootstrap(options) as graph:
        status = graph.resolve(StatusService)
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    TextIO,
    Tuple,
)
from uuid import UUID, uuid4

from opentelemetry import trace

from config import BINARY_NO_VALIDATION_KEY, BINARY_PATH_KEY, StartupOptions
from core.context import BootstrapContext
from core.context import build_context as _build_context
from core.errors import BootstrapFailure, ConfigError, ErrorContext
from core.migrations import MigrationCatalog, MigrationRunner, MigrationStage
from core.resources import ResourceRegistry, TeardownReport
from core.services import BackgroundService, ServiceGraph, ServiceModuleBase, StartupTask
from db.migration_store import MigrationStore, create_migration_store
from observability.logging import (
    LoggingConfig,
    NullStartupLogger,
    StartupLogger,
    get_startup_logger,
    init_logging_config_file,
    setup_logging,
    shutdown_logging,
)

logger = logging.getLogger("stagewise.bootstrap")
tracer = trace.get_tracer("stagewise.bootstrap")


# =============================================================================
# STEPS AND EVENTS
# =============================================================================


class BootstrapStep(Enum):
    """The bootstrap steps, in execution order."""
    MATERIALIZE = "materialize"
    PRE_INIT = "PreInit"
    CORE_SERVICES = "core-services"
    CORE_INIT = "CoreInit"
    APP_SERVICES = "app-services"
    APP_INIT = "AppInit"
    START = "start"
    STARTUP_TASKS = "startup-tasks"

    @property
    def migration_stage(self) -> Optional[MigrationStage]:
        """The migration stage this step applies, if it is a migration step."""
        return _MIGRATION_STEPS.get(self)


_MIGRATION_STEPS: Dict[BootstrapStep, MigrationStage] = {
    BootstrapStep.PRE_INIT: MigrationStage.PRE_INIT,
    BootstrapStep.CORE_INIT: MigrationStage.CORE_INIT,
    BootstrapStep.APP_INIT: MigrationStage.APP_INIT,
}


class BootstrapState(Enum):
    """Where an orchestrator is in its one-shot lifecycle."""
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class LifecycleEvent:
    """Immutable record of one bootstrap step."""
    event_id: UUID
    timestamp: float
    step: BootstrapStep
    success: bool
    duration_ms: float
    error: Optional[str] = None
    error_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success_event(
        cls,
        step: BootstrapStep,
        duration_ms: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "LifecycleEvent":
        return cls(
            event_id=uuid4(),
            timestamp=time.time(),
            step=step,
            success=True,
            duration_ms=duration_ms,
            metadata=metadata or {},
        )

    @classmethod
    def failure_event(
        cls,
        step: BootstrapStep,
        error: BaseException,
        duration_ms: float = 0,
    ) -> "LifecycleEvent":
        return cls(
            event_id=uuid4(),
            timestamp=time.time(),
            step=step,
            success=False,
            duration_ms=duration_ms,
            error=str(error),
            error_type=type(error).__name__,
        )


# =============================================================================
# ORCHESTRATOR
# =============================================================================


class BootstrapOrchestrator:
    """
    Drives one bootstrap run and its teardown.

    An orchestrator runs at most once. It owns the BootstrapContext it is
    given, the ServiceGraph it builds and the ResourceRegistry everything
    acquired along the way is registered in.
    """

    def __init__(
        self,
        catalog: Optional[MigrationCatalog] = None,
        modules: Iterable[ServiceModuleBase] = (),
        startup_tasks: Iterable[StartupTask] = (),
        background_services: Iterable[BackgroundService] = (),
        store: Optional[MigrationStore] = None,
        startup_logger: Optional[StartupLogger] = None,
        required_binary: Optional[str] = None,
        diagnostics: Optional[TextIO] = None,
        configure_logging: bool = True,
    ):
        self._catalog = catalog or MigrationCatalog()
        self._modules: List[ServiceModuleBase] = list(modules)
        self._startup_tasks: List[StartupTask] = list(startup_tasks)
        self._background_services: List[BackgroundService] = list(background_services)
        self._store = store
        self._explicit_logger = startup_logger
        self._startup_logger: StartupLogger = startup_logger or NullStartupLogger("stagewise.startup")
        self._required_binary = required_binary
        self._diagnostics = diagnostics
        self._configure_logging = configure_logging

        self._registry = ResourceRegistry()
        self._instance_id = str(uuid4())[:8]
        self._state = BootstrapState.CREATED
        self._events: List[LifecycleEvent] = []
        self._context: Optional[BootstrapContext] = None
        self._runner: Optional[MigrationRunner] = None
        self._graph: Optional[ServiceGraph] = None
        self._failure: Optional[BootstrapFailure] = None

        self._shutdown_lock = asyncio.Lock()
        self._teardown: Optional[TeardownReport] = None
        self._stop_requested = False

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> BootstrapState:
        return self._state

    @property
    def registry(self) -> ResourceRegistry:
        return self._registry

    @property
    def graph(self) -> Optional[ServiceGraph]:
        return self._graph

    @property
    def store(self) -> Optional[MigrationStore]:
        return self._store

    @property
    def startup_logger(self) -> StartupLogger:
        return self._startup_logger

    @property
    def failure(self) -> Optional[BootstrapFailure]:
        return self._failure

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def _ensure_not_started(self, what: str) -> None:
        if self._state is not BootstrapState.CREATED:
            raise RuntimeError(f"Cannot add {what} after bootstrap has started")

    def add_module(self, module: ServiceModuleBase) -> "BootstrapOrchestrator":
        self._ensure_not_started("a module")
        self._modules.append(module)
        return self

    def add_startup_task(self, task: StartupTask) -> "BootstrapOrchestrator":
        self._ensure_not_started("a startup task")
        self._startup_tasks.append(task)
        return self

    def add_background_service(self, service: BackgroundService) -> "BootstrapOrchestrator":
        self._ensure_not_started("a background service")
        self._background_services.append(service)
        return self

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @staticmethod
    def build_context(
        options: StartupOptions,
        environ: Optional[Mapping[str, str]] = None,
        defaults: Optional[Mapping[str, str]] = None,
    ) -> BootstrapContext:
        """
        Resolve paths and configuration for a run.

        ``defaults`` replaces the built-in DEFAULT_CONFIGURATION layer.

        Raises:
            ConfigError: If a directory is unwritable or an overlay is malformed
        """
        return _build_context(options, environ=environ, defaults=defaults)

    async def run(self, context: BootstrapContext) -> ServiceGraph:
        """
        Run every bootstrap step in order.

        Returns:
            The started ServiceGraph

        Raises:
            BootstrapFailure: After teardown, if any step failed
            RuntimeError: If this orchestrator has already run
        """
        if self._state is not BootstrapState.CREATED:
            raise RuntimeError("BootstrapOrchestrator.run() can only be called once")
        self._state = BootstrapState.STARTING
        self._context = context

        steps: List[Tuple[BootstrapStep, Callable[..., Awaitable[None]]]] = [
            (BootstrapStep.MATERIALIZE, self._materialize),
            (BootstrapStep.PRE_INIT, self._apply_migrations),
            (BootstrapStep.CORE_SERVICES, self._wire_core_services),
            (BootstrapStep.CORE_INIT, self._apply_migrations),
            (BootstrapStep.APP_SERVICES, self._wire_app_services),
            (BootstrapStep.APP_INIT, self._apply_migrations),
            (BootstrapStep.START, self._start_graph),
            (BootstrapStep.STARTUP_TASKS, self._run_startup_tasks),
        ]

        total_start = time.time()
        for step, action in steps:
            try:
                await self._run_step(step, action, context)
            except asyncio.CancelledError:
                self._state = BootstrapState.FAILED
                await self.shutdown()
                raise
            except Exception as e:
                failure = BootstrapFailure(stage=step, cause=e)
                self._failure = failure
                self._state = BootstrapState.FAILED
                self._report_failure(failure)
                await self.shutdown()
                raise failure from e

            if self._stop_requested:
                await self._abort_after(step)

        self._state = BootstrapState.RUNNING
        logger.info(
            f"Bootstrap complete (duration={(time.time() - total_start) * 1000:.0f}ms, "
            f"instance={self._instance_id})"
        )
        assert self._graph is not None
        return self._graph

    async def _abort_after(self, step: BootstrapStep) -> None:
        """
        Stop a run that ``shutdown`` overtook while ``step`` was in flight.

        Whatever the step registered after the earlier teardown pass is
        released here; no later step runs.
        """
        cause = RuntimeError(f"Shutdown requested while bootstrap was at step '{step.value}'")
        failure = BootstrapFailure(stage=step, cause=cause)
        self._failure = failure
        self._state = BootstrapState.STOPPED
        logger.warning(f"Bootstrap aborted after {step.value}: shutdown was requested")
        await self.shutdown()
        raise failure

    async def _run_step(
        self,
        step: BootstrapStep,
        action: Callable[..., Awaitable[None]],
        context: BootstrapContext,
    ) -> None:
        start = time.time()
        with tracer.start_as_current_span(f"bootstrap.{step.value}") as span:
            span.set_attribute("bootstrap.step", step.value)
            span.set_attribute("bootstrap.instance_id", self._instance_id)
            try:
                if step.migration_stage is not None:
                    await action(context, step.migration_stage)
                else:
                    await action(context)
            except BaseException as e:
                self._record_event(
                    LifecycleEvent.failure_event(step, e, duration_ms=(time.time() - start) * 1000)
                )
                raise
        self._record_event(
            LifecycleEvent.success_event(step, duration_ms=(time.time() - start) * 1000)
        )

    async def _materialize(self, context: BootstrapContext) -> None:
        for path in context.paths.all():
            path.mkdir(parents=True, exist_ok=True)

        if self._configure_logging:
            config_path = init_logging_config_file(context.paths)
            config = LoggingConfig.from_file(config_path, log_dir=context.paths.log_dir)
            config.service_name = context.configuration.get("logging:service-name", config.service_name)
            if setup_logging(config):
                # Registered first, so released last
                self._registry.register(config, release=shutdown_logging, name="logging")

        if self._explicit_logger is None:
            self._startup_logger = get_startup_logger("stagewise.startup")

        if self._store is None:
            self._store = create_migration_store(context.configuration, context.paths)
        await self._store.initialize()
        self._registry.register(self._store, release=self._store.close, name="migration-store")

        self._runner = MigrationRunner(self._catalog, self._store, self._startup_logger)
        self._startup_logger.info(
            "Working directories ready",
            **context.paths.to_dict(),
        )

    async def _apply_migrations(self, context: BootstrapContext, stage: MigrationStage) -> None:
        assert self._runner is not None
        result = await self._runner.apply_stage(stage, context, services=self._graph)
        self._startup_logger.info(
            f"{stage.value} migrations complete",
            applied=len(result.applied),
            skipped=len(result.skipped),
        )

    async def _wire_core_services(self, context: BootstrapContext) -> None:
        self._validate_binary(context)

        graph = ServiceGraph(context, startup_logger=self._startup_logger)
        # Registered before wiring so a half-wired graph is still released
        self._registry.register(graph, release=graph.dispose_async, name="service-graph")
        self._graph = graph

        for module in self._modules:
            graph.add_module(module)
        for service in self._background_services:
            graph.add_background_service(service)

        await graph.initialize_core()

    async def _wire_app_services(self, context: BootstrapContext) -> None:
        assert self._graph is not None
        await self._graph.complete_wiring()

    async def _start_graph(self, context: BootstrapContext) -> None:
        assert self._graph is not None
        await self._graph.start()

    async def _run_startup_tasks(self, context: BootstrapContext) -> None:
        assert self._graph is not None
        group = self._startup_logger.begin_group("Running startup tasks")
        for task in self._startup_tasks:
            await task.run(self._graph)
            group.info("Startup task complete", task=task.name)

    def _validate_binary(self, context: BootstrapContext) -> None:
        """Check the required external binary, unless validation is bypassed."""
        if self._required_binary is None:
            return
        configuration = context.configuration
        if configuration.get_bool(BINARY_NO_VALIDATION_KEY):
            self._startup_logger.warning("Binary validation skipped", binary=self._required_binary)
            return

        explicit = configuration.get(BINARY_PATH_KEY)
        if explicit:
            candidate = Path(explicit)
            if not (candidate.is_file() and os.access(candidate, os.X_OK)):
                raise ConfigError(
                    f"Configured binary '{explicit}' is not an executable file",
                    config_key=BINARY_PATH_KEY,
                    path=explicit,
                )
            resolved = str(candidate)
        else:
            resolved = shutil.which(self._required_binary)
            if resolved is None:
                raise ConfigError(
                    f"Required binary '{self._required_binary}' was not found on PATH",
                    config_key=BINARY_PATH_KEY,
                    context=ErrorContext(operation="validate_binary", component=self._required_binary),
                    suggestions=[
                        f"Pass --binary-path or set {BINARY_PATH_KEY}",
                        f"Set {BINARY_NO_VALIDATION_KEY}=true to skip this check",
                    ],
                )
        self._startup_logger.info("Binary found", binary=self._required_binary, path=resolved)

    def _report_failure(self, failure: BootstrapFailure) -> None:
        """Write the failure to the diagnostic stream and the log, before teardown."""
        cause = failure.cause
        stream = self._diagnostics if self._diagnostics is not None else sys.stderr
        lines = [
            "Stagewise bootstrap failed",
            f"  stage: {failure.stage.value}",
            f"  cause: {type(cause).__name__}: {getattr(cause, 'message', cause)}",
        ]
        for suggestion in getattr(cause, "suggestions", None) or []:
            lines.append(f"  hint:  {suggestion}")
        try:
            stream.write("\n".join(lines) + "\n")
            stream.flush()
        except (OSError, ValueError) as e:
            logger.warning(f"Could not write bootstrap diagnostics: {e}")

        logger.error(
            f"Bootstrap failed during {failure.stage.value}: {cause}",
            exc_info=(type(cause), cause, cause.__traceback__),
        )

    async def shutdown(self) -> TeardownReport:
        """
        Stop the graph and release every registered resource.

        Idempotent and safe to call concurrently. A ``run`` still in flight
        stops after its current step; anything that step registers after the
        first pass is released by the next ``shutdown`` call (the aborting
        ``run`` makes that call itself). With nothing left to release, later
        calls return the same report.
        """
        self._stop_requested = True
        async with self._shutdown_lock:
            if self._teardown is not None and not self._registry.pending:
                return self._teardown

            report = TeardownReport()
            with tracer.start_as_current_span("bootstrap.shutdown"):
                if self._graph is not None:
                    report.errors.extend(await self._graph.stop())
                report.merge(await self._registry.release_all())

            if self._state in (BootstrapState.CREATED, BootstrapState.RUNNING):
                self._state = BootstrapState.STOPPED
            if self._teardown is None:
                self._teardown = report
            else:
                self._teardown.merge(report)

            if report.ok:
                logger.info(f"Shutdown complete ({len(report.released)} resources released)")
            else:
                logger.warning(
                    f"Shutdown complete with {len(report.errors)} error(s): "
                    + "; ".join(str(e.message) for e in report.errors)
                )
            return self._teardown

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def _record_event(self, event: LifecycleEvent) -> None:
        self._events.append(event)
        if event.success:
            logger.debug(f"Lifecycle: {event.step.value} ({event.duration_ms:.0f}ms)")
        else:
            logger.warning(f"Lifecycle failed: {event.step.value} - {event.error}")

    @property
    def events(self) -> List[LifecycleEvent]:
        return list(self._events)

    def get_lifecycle_report(self) -> Dict[str, Any]:
        """Summary of the run so far."""
        return {
            "instance_id": self._instance_id,
            "state": self._state.value,
            "events": [
                {
                    "event_id": str(e.event_id),
                    "timestamp": e.timestamp,
                    "step": e.step.value,
                    "success": e.success,
                    "duration_ms": e.duration_ms,
                    "error": e.error,
                    "error_type": e.error_type,
                }
                for e in self._events
            ],
            "total_events": len(self._events),
            "failed_events": sum(1 for e in self._events if not e.success),
            "failed_step": self._failure.stage.value if self._failure else None,
            "modules": [m.name for m in self._modules],
            "background_services": [s.name for s in self._background_services],
            "startup_tasks": [t.name for t in self._startup_tasks],
            "resources": [h.name for h in self._registry.handles],
        }


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


@asynccontextmanager
async def bootstrap(
    options: Optional[StartupOptions] = None,
    orchestrator: Optional[BootstrapOrchestrator] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AsyncIterator[ServiceGraph]:
    """
    Bootstrap with guaranteed teardown.

    Usage:
        async with bootstrap(StartupOptions(data_dir=path)) as graph:
            status = graph.resolve(StatusService)

    Yields:
        The started ServiceGraph
    """
    if orchestrator is None:
        from core.builtin import create_default_orchestrator

        orchestrator = create_default_orchestrator()

    context = orchestrator.build_context(options or StartupOptions(), environ=environ)
    graph = await orchestrator.run(context)
    try:
        yield graph
    finally:
        await orchestrator.shutdown()


async def run_application(
    main: Callable[[ServiceGraph], Awaitable[Any]],
    options: Optional[StartupOptions] = None,
    orchestrator: Optional[BootstrapOrchestrator] = None,
) -> Any:
    """
    Run ``main`` against a bootstrapped graph.

    Usage:
        async def main(graph: ServiceGraph):
            ...

        asyncio.run(run_application(main))
    """
    async with bootstrap(options, orchestrator=orchestrator) as graph:
        return await main(graph)


async def wait_for_shutdown_signal(graph: Optional[ServiceGraph] = None) -> None:
    """Block until SIGINT or SIGTERM arrives (or the graph is cancelled)."""
    loop = asyncio.get_running_loop()
    requested = asyncio.Event()
    installed: List[int] = []

    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, requested.set)
            installed.append(sig)

    waiters = [asyncio.ensure_future(requested.wait())]
    if graph is not None:
        waiters.append(asyncio.ensure_future(graph.cancellation_token.wait()))
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        for sig in installed:
            loop.remove_signal_handler(sig)


__all__ = [
    "BootstrapStep",
    "BootstrapState",
    "LifecycleEvent",
    "BootstrapOrchestrator",
    "bootstrap",
    "run_application",
    "wait_for_shutdown_signal",
]
