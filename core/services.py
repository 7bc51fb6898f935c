"""
Stagewise - Service Graph

The wired set of services the bootstrap drives.

Modules register services into a DI container and are wired one layer at a
time: the core layer before CoreInit migrations, the application layer
before AppInit migrations. Within a layer, modules are configured and then
initialized in dependency order. Background services go live on ``start``
and are stopped, with modules shut down in reverse order, on ``stop``.

Usage:
    graph = ServiceGraph(context)
    graph.add_module(CoreModule())
    graph.add_module(StatusModule())
    graph.add_background_service(HeartbeatService())

    await graph.initialize_core()
    await graph.complete_wiring()
    await graph.start()
    ...
    await graph.dispose_async()
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Type,
    TypeVar,
    runtime_checkable,
)

from core.errors import ErrorContext, ServiceGraphError, TeardownError
from di.container import Container
from observability.logging import NullStartupLogger, StartupLogger

if TYPE_CHECKING:
    from core.context import BootstrapContext

logger = logging.getLogger("stagewise.services")

T = TypeVar("T")

# Grace period for background services after the cancellation token is set
DEFAULT_STOP_TIMEOUT = 5.0


class ServiceLayer(Enum):
    """Wiring layers, in the order they are brought up."""
    CORE = "core"
    APPLICATION = "application"


# =============================================================================
# MODULES, BACKGROUND SERVICES AND STARTUP TASKS
# =============================================================================


class ServiceModuleBase(ABC):
    """Base class for service modules with dependency tracking."""

    layer: ServiceLayer = ServiceLayer.CORE

    def __init__(
        self,
        name: Optional[str] = None,
        layer: Optional[ServiceLayer] = None,
        dependencies: Iterable[str] = (),
        required_services: Iterable[Type] = (),
    ):
        self._name = name or self.__class__.__name__
        if layer is not None:
            self.layer = layer
        self._dependencies: List[str] = list(dependencies)
        self._required_services: List[Type] = list(required_services)

    @property
    def name(self) -> str:
        return self._name

    @property
    def dependencies(self) -> List[str]:
        return self._dependencies

    @property
    def required_services(self) -> List[Type]:
        return self._required_services

    def depends_on(self, *module_names: str) -> "ServiceModuleBase":
        """Declare dependencies on other modules."""
        self._dependencies.extend(module_names)
        return self

    def requires(self, *service_types: Type) -> "ServiceModuleBase":
        """Declare services that must be resolvable once the layer is wired."""
        self._required_services.extend(service_types)
        return self

    @abstractmethod
    def configure_services(self, container: Container, context: "BootstrapContext") -> None:
        """Override to register services."""
        ...

    async def initialize(self, container: Container) -> None:
        """Override to add initialization logic."""
        pass

    async def shutdown(self, container: Container) -> None:
        """Override to add shutdown logic."""
        pass


@runtime_checkable
class BackgroundService(Protocol):
    """A long-running service started when the graph goes live."""

    @property
    def name(self) -> str: ...

    async def start(self, cancellation_token: asyncio.Event) -> None: ...

    async def stop(self) -> None: ...


class BackgroundServiceBase(ABC):
    """Base class for background services with lifecycle management."""

    def __init__(self, name: Optional[str] = None):
        self._name = name or self.__class__.__name__
        self._running = False
        self._graph: Optional["ServiceGraph"] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._running

    def attach(self, graph: "ServiceGraph") -> None:
        """Called by the graph when the service is added."""
        self._graph = graph

    async def start(self, cancellation_token: asyncio.Event) -> None:
        """Start the service with cancellation support."""
        self._running = True
        try:
            await self.execute(cancellation_token)
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the service."""
        self._running = False

    @abstractmethod
    async def execute(self, cancellation_token: asyncio.Event) -> None:
        """Override to implement the service logic."""
        ...


@runtime_checkable
class StartupTask(Protocol):
    """Runs once, after the graph has started."""

    @property
    def name(self) -> str: ...

    async def run(self, graph: "ServiceGraph") -> None: ...


class FunctionStartupTask:
    """Adapts a plain (sync or async) function to the StartupTask protocol."""

    def __init__(self, func: Any, name: Optional[str] = None):
        self._func = func
        self._name = name or func.__name__.replace("_", "-")

    @property
    def name(self) -> str:
        return self._name

    async def run(self, graph: "ServiceGraph") -> None:
        result = self._func(graph)
        if inspect.isawaitable(result):
            await result

    def __repr__(self) -> str:
        return f"<StartupTask {self._name}>"


def startup_task(name: Optional[str] = None):
    """Decorator turning a function into a StartupTask."""
    def decorator(func: Any) -> FunctionStartupTask:
        return FunctionStartupTask(func, name=name)
    return decorator


# =============================================================================
# SERVICE GRAPH
# =============================================================================


class ServiceGraph:
    """
    DI container plus the modules and background services wired into it.

    Created once per bootstrap run. Only the orchestrator drives its
    lifecycle; migrations receive it to resolve services.
    """

    def __init__(
        self,
        context: "BootstrapContext",
        container: Optional[Container] = None,
        startup_logger: Optional[StartupLogger] = None,
    ):
        self._context = context
        self._container = container or Container()
        self._startup_logger = startup_logger or NullStartupLogger("stagewise.services")

        self._modules: Dict[str, ServiceModuleBase] = {}
        self._initialized: List[ServiceModuleBase] = []
        self._wired_layers: List[ServiceLayer] = []
        self._background_services: List[BackgroundService] = []
        self._background_tasks: List["asyncio.Task[None]"] = []
        self._cancellation_token = asyncio.Event()
        self._running = False
        self._stopped = False
        self._disposed = False

        self._container.register_instance(ServiceGraph, self)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    @property
    def context(self) -> "BootstrapContext":
        return self._context

    @property
    def container(self) -> Container:
        return self._container

    @property
    def modules(self) -> List[ServiceModuleBase]:
        return list(self._modules.values())

    @property
    def background_services(self) -> List[BackgroundService]:
        return list(self._background_services)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cancellation_token(self) -> asyncio.Event:
        return self._cancellation_token

    def add_module(self, module: ServiceModuleBase) -> "ServiceGraph":
        if module.name in self._modules:
            raise ServiceGraphError(f"Module '{module.name}' is already registered", service=module.name)
        if module.layer in self._wired_layers:
            raise ServiceGraphError(
                f"Cannot add module '{module.name}': the {module.layer.value} layer is already wired",
                service=module.name,
            )
        self._modules[module.name] = module
        return self

    def add_background_service(self, service: BackgroundService) -> "ServiceGraph":
        if self._running:
            raise ServiceGraphError(
                f"Cannot add background service '{service.name}' to a running graph",
                service=service.name,
            )
        if isinstance(service, BackgroundServiceBase):
            service.attach(self)
        self._background_services.append(service)
        return self

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    async def initialize_core(self) -> None:
        """Configure and initialize the core layer."""
        await self._wire_layer(ServiceLayer.CORE)

    async def complete_wiring(self) -> None:
        """Configure and initialize the application layer."""
        if ServiceLayer.CORE not in self._wired_layers:
            raise ServiceGraphError("Core services must be initialized before the application layer")
        await self._wire_layer(ServiceLayer.APPLICATION)

    async def _wire_layer(self, layer: ServiceLayer) -> None:
        if layer in self._wired_layers:
            raise ServiceGraphError(f"The {layer.value} layer is already wired")

        group = self._startup_logger.begin_group(f"Wiring {layer.value} services")
        modules = self._topological_sort_modules(layer)

        for module in modules:
            try:
                result = module.configure_services(self._container, self._context)
                if inspect.isawaitable(result):
                    await result
            except ServiceGraphError:
                raise
            except Exception as e:
                raise ServiceGraphError(
                    f"Module '{module.name}' failed to configure services: {e}",
                    service=module.name,
                    context=ErrorContext(operation="configure_services", component=module.name),
                    cause=e,
                ) from e
            logger.debug(f"Configured module: {module.name}")

        for module in modules:
            try:
                await module.initialize(self._container)
            except ServiceGraphError:
                raise
            except Exception as e:
                raise ServiceGraphError(
                    f"Module '{module.name}' failed to initialize: {e}",
                    service=module.name,
                    context=ErrorContext(operation="initialize", component=module.name),
                    cause=e,
                ) from e
            self._initialized.append(module)
            group.info("Module initialized", module=module.name)

        for module in modules:
            for service_type in module.required_services:
                if not self._container.is_registered(service_type):
                    raise ServiceGraphError(
                        f"Module '{module.name}' requires {service_type.__name__}, which is not registered",
                        service=service_type.__name__,
                    )

        self._wired_layers.append(layer)

    def _topological_sort_modules(self, layer: ServiceLayer) -> List[ServiceModuleBase]:
        """Sort one layer's modules by their dependencies (Kahn's algorithm)."""
        members = {name: m for name, m in self._modules.items() if m.layer is layer}
        already_wired = {m.name for m in self._initialized}

        in_degree: Dict[str, int] = {name: 0 for name in members}
        graph: Dict[str, List[str]] = {name: [] for name in members}

        for name, module in members.items():
            for dep in module.dependencies:
                if dep in members:
                    graph[dep].append(name)
                    in_degree[name] += 1
                elif dep in already_wired:
                    continue
                elif dep in self._modules:
                    raise ServiceGraphError(
                        f"Module '{name}' ({layer.value}) depends on '{dep}', "
                        f"which belongs to a later layer",
                        service=name,
                    )
                else:
                    raise ServiceGraphError(
                        f"Module '{name}' depends on unknown module '{dep}'",
                        service=name,
                    )

        queue = [name for name, degree in in_degree.items() if degree == 0]
        result: List[ServiceModuleBase] = []

        while queue:
            current = queue.pop(0)
            result.append(members[current])

            for neighbor in graph[current]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(result) != len(members):
            remaining = sorted(set(members) - {m.name for m in result})
            raise ServiceGraphError(f"Circular dependency detected in modules: {remaining}")

        return result

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Launch background services."""
        if self._stopped:
            raise ServiceGraphError("Cannot start a stopped service graph")
        if self._running:
            return
        if ServiceLayer.APPLICATION not in self._wired_layers:
            raise ServiceGraphError("Cannot start before all service layers are wired")

        for service in self._background_services:
            task = asyncio.create_task(
                service.start(self._cancellation_token),
                name=f"bg:{service.name}",
            )
            task.add_done_callback(self._on_background_done)
            self._background_tasks.append(task)
            logger.info(f"Started background service: {service.name}")

        self._running = True

    @staticmethod
    def _on_background_done(task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background service {task.get_name()} crashed: {error!r}")

    async def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> List[TeardownError]:
        """
        Stop background services and shut modules down in reverse order.

        Idempotent: only the first call does anything.

        Returns:
            Errors raised while stopping, in the order they occurred
        """
        if self._stopped:
            return []
        self._stopped = True
        self._running = False
        errors: List[TeardownError] = []

        self._cancellation_token.set()

        for service in reversed(self._background_services):
            try:
                await asyncio.wait_for(service.stop(), timeout=timeout)
                logger.debug(f"Stopped background service: {service.name}")
            except Exception as e:
                errors.append(self._teardown_error(f"service:{service.name}", e))

        if self._background_tasks:
            _, pending = await asyncio.wait(self._background_tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
            self._background_tasks.clear()

        for module in reversed(self._initialized):
            try:
                await module.shutdown(self._container)
            except Exception as e:
                errors.append(self._teardown_error(f"module:{module.name}", e))

        return errors

    @staticmethod
    def _teardown_error(component: str, error: Exception) -> TeardownError:
        logger.warning(f"Shutdown error ({component}): {error}")
        return TeardownError(
            f"Failed to stop {component}: {error}",
            resource_name=component,
            context=ErrorContext(operation="stop", component=component),
            cause=error,
        )

    async def dispose_async(self) -> None:
        """Stop the graph if needed, then dispose container-owned singletons."""
        if self._disposed:
            return
        self._disposed = True
        errors = await self.stop()
        await self._container.dispose_async()
        if errors:
            raise errors[0]

    # -------------------------------------------------------------------------
    # Service access
    # -------------------------------------------------------------------------

    def resolve(self, service_type: Type[T]) -> T:
        """Resolve a registered service."""
        try:
            return self._container.resolve(service_type)
        except KeyError as e:
            raise ServiceGraphError(
                f"Service '{service_type.__name__}' is not registered",
                service=service_type.__name__,
                cause=e,
            ) from e

    def try_resolve(self, service_type: Type[T]) -> Optional[T]:
        """Resolve a service, or None if it is not registered."""
        return self._container.try_resolve(service_type)

    def __repr__(self) -> str:
        layers = ",".join(layer.value for layer in self._wired_layers) or "none"
        return f"<ServiceGraph modules={len(self._modules)} wired={layers} running={self._running}>"


__all__ = [
    "ServiceLayer",
    "ServiceModuleBase",
    "BackgroundService",
    "BackgroundServiceBase",
    "StartupTask",
    "FunctionStartupTask",
    "startup_task",
    "ServiceGraph",
]
