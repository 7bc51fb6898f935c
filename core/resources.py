"""
Stagewise - Resource Registry

Single point of truth for what must be cleaned up after bootstrap.

Every resource acquired during startup (log handlers, stores, the service
graph) is registered here. ``release_all`` releases each one at most once,
whether it is called once, repeatedly, or concurrently from several threads
or tasks. A failed release is collected into the TeardownReport and does not
stop the remaining releases.
"""
from __future__ import annotations

import inspect
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from core.errors import ErrorContext, TeardownError

logger = logging.getLogger("stagewise.resources")

ReleaseFunc = Callable[[], Any]

# Checked in order when no explicit release callable is given
_RELEASE_METHODS = ("aclose", "dispose_async", "close", "dispose")


def _default_release(resource: Any) -> ReleaseFunc:
    for method_name in _RELEASE_METHODS:
        method = getattr(resource, method_name, None)
        if callable(method):
            return method
    raise TypeError(
        f"{type(resource).__name__} has no release method "
        f"(expected one of: {', '.join(_RELEASE_METHODS)}); pass release= explicitly"
    )


class ResourceHandle:
    """A registered resource plus its one-shot release guard."""

    __slots__ = ("resource", "name", "_release", "_guard", "_claimed")

    def __init__(self, resource: Any, release: ReleaseFunc, name: str):
        self.resource = resource
        self.name = name
        self._release = release
        self._guard = threading.Lock()
        self._claimed = False

    @property
    def released(self) -> bool:
        return self._claimed

    def _claim(self) -> bool:
        """Atomically take the right to release; True for exactly one caller."""
        with self._guard:
            if self._claimed:
                return False
            self._claimed = True
            return True

    async def release(self) -> Optional[TeardownError]:
        """
        Release the resource if nobody has yet.

        Returns:
            A TeardownError if the release failed, else None
        """
        if not self._claim():
            return None
        return await self._run_release()

    async def _run_release(self) -> Optional[TeardownError]:
        try:
            result = self._release()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            return TeardownError(
                f"Failed to release resource '{self.name}': {e}",
                resource_name=self.name,
                context=ErrorContext(operation="release", component=self.name),
                cause=e,
            )
        return None

    def __repr__(self) -> str:
        state = "released" if self._claimed else "held"
        return f"<ResourceHandle {self.name} ({state})>"


@dataclass
class TeardownReport:
    """Result of a ``release_all`` pass."""
    released: List[str] = field(default_factory=list)
    errors: List[TeardownError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def merge(self, other: "TeardownReport") -> "TeardownReport":
        self.released.extend(other.released)
        self.errors.extend(other.errors)
        return self


class ResourceRegistry:
    """
    Concurrency-safe collection of disposables.

    Usage:
        registry = ResourceRegistry()
        registry.register(store, name="migration-store")
        ...
        report = await registry.release_all()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: List[ResourceHandle] = []

    def register(
        self,
        resource: Any,
        release: Optional[ReleaseFunc] = None,
        name: Optional[str] = None,
    ) -> ResourceHandle:
        """Track ``resource`` for release at teardown."""
        release_func = release if release is not None else _default_release(resource)
        handle = ResourceHandle(
            resource=resource,
            release=release_func,
            name=name or type(resource).__name__,
        )
        with self._lock:
            self._handles.append(handle)
        logger.debug(f"Registered resource: {handle.name}")
        return handle

    @property
    def handles(self) -> List[ResourceHandle]:
        with self._lock:
            return list(self._handles)

    @property
    def pending(self) -> List[ResourceHandle]:
        return [h for h in self.handles if not h.released]

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    async def release_all(self) -> TeardownReport:
        """
        Release every registered resource, most recent first.

        Never raises for a failed release; failures are in the report.
        """
        report = TeardownReport()
        for handle in reversed(self.handles):
            if not handle._claim():
                continue
            error = await handle._run_release()
            if error is not None:
                report.errors.append(error)
                logger.warning(f"Teardown error ({handle.name}): {error.cause}")
            else:
                report.released.append(handle.name)
        return report


__all__ = [
    "ResourceHandle",
    "ResourceRegistry",
    "TeardownReport",
]
