"""
Stagewise - Dependency Injection Container

The registry service modules write into while a layer is wired.

Every registration resolves to one shared instance per container:
- register_instance: an object built elsewhere; never closed by the container
- register_singleton: a class built on first resolve, constructor
  parameters injected from their type hints
- register_factory: a zero-argument callable invoked on first resolve

Instances the container built itself are closed by ``dispose_async``, most
recently created first.
"""

from __future__ import annotations

import inspect
import threading
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Type,
    TypeVar,
    get_type_hints,
)

T = TypeVar("T")

# Checked in order on owned instances at disposal
_CLOSE_METHODS = ("aclose", "dispose_async", "close", "dispose")


@dataclass(frozen=True)
class Registration(Generic[T]):
    """How one service type is produced."""

    service_type: Type[T]
    implementation_type: Optional[Type[T]] = None
    factory: Optional[Callable[[], T]] = None
    instance: Optional[T] = None

    @property
    def owned(self) -> bool:
        """True when the container creates (and so must close) the instance."""
        return self.instance is None


async def _close_owned(instance: Any) -> None:
    for method_name in _CLOSE_METHODS:
        method = getattr(instance, method_name, None)
        if callable(method):
            result = method()
            if inspect.isawaitable(result):
                await result
            return


class Container:
    """
    Shared-instance service container.

    Usage:
        container = Container()
        container.register_instance(BootstrapContext, context)
        container.register_factory(ServerIdentity, lambda: ServerIdentity(path))
        container.register_singleton(StatusService)

        status = container.resolve(StatusService)
    """

    def __init__(self) -> None:
        self._registrations: Dict[Type, Registration] = {}
        self._instances: Dict[Type, Any] = {}
        self._created: List[Any] = []
        self._resolving: set = set()
        self._lock = threading.RLock()

    def _add(self, registration: Registration) -> "Container":
        # A later registration replaces an earlier one, including its cached instance
        with self._lock:
            self._registrations[registration.service_type] = registration
            if registration.instance is not None:
                self._instances[registration.service_type] = registration.instance
            else:
                self._instances.pop(registration.service_type, None)
        return self

    def register_singleton(
        self,
        service_type: Type[T],
        implementation_type: Optional[Type[T]] = None,
    ) -> "Container":
        """Build ``implementation_type`` (default: ``service_type``) on first resolve."""
        return self._add(Registration(service_type, implementation_type=implementation_type or service_type))

    def register_instance(self, service_type: Type[T], instance: T) -> "Container":
        return self._add(Registration(service_type, instance=instance))

    def register_factory(self, service_type: Type[T], factory: Callable[[], T]) -> "Container":
        if inspect.iscoroutinefunction(factory):
            raise TypeError(
                f"Factory for '{service_type.__name__}' is async; build the service in "
                f"the module's initialize() and register_instance it instead"
            )
        return self._add(Registration(service_type, factory=factory))

    def _injected_arguments(self, implementation_type: Type) -> Dict[str, Any]:
        """Resolve the registered constructor parameters of ``implementation_type``."""
        try:
            hints = get_type_hints(implementation_type.__init__)
        except (NameError, TypeError):
            hints = {}
        hints.pop("return", None)
        return {
            name: self.resolve(hint)
            for name, hint in hints.items()
            if hint in self._registrations
        }

    def _build(self, registration: Registration[T]) -> T:
        if registration.factory is not None:
            return registration.factory()
        implementation_type = registration.implementation_type
        return implementation_type(**self._injected_arguments(implementation_type))

    def resolve(self, service_type: Type[T]) -> T:
        """
        Return the shared instance of ``service_type``, building it if needed.

        Raises:
            KeyError: If the type is not registered
            RecursionError: If building it requires itself
        """
        with self._lock:
            if service_type in self._instances:
                return self._instances[service_type]
            registration = self._registrations.get(service_type)
            if registration is None:
                raise KeyError(f"Service '{service_type.__name__}' is not registered")
            if service_type in self._resolving:
                raise RecursionError(f"Circular dependency detected for {service_type.__name__}")

            self._resolving.add(service_type)
            try:
                instance = self._build(registration)
            finally:
                self._resolving.discard(service_type)

            self._instances[service_type] = instance
            self._created.append(instance)
            return instance

    def try_resolve(self, service_type: Type[T]) -> Optional[T]:
        """Resolve a service, or None if it is not registered."""
        if service_type not in self._registrations:
            return None
        return self.resolve(service_type)

    def is_registered(self, service_type: Type) -> bool:
        return service_type in self._registrations

    @property
    def registered_types(self) -> List[Type]:
        return list(self._registrations)

    async def dispose_async(self) -> None:
        """Close every instance the container built, newest first."""
        with self._lock:
            created = list(self._created)
            self._created.clear()
            for service_type, registration in self._registrations.items():
                if registration.owned:
                    self._instances.pop(service_type, None)
        for instance in reversed(created):
            await _close_owned(instance)


__all__ = ["Container", "Registration"]
