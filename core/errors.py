"""
Stagewise - Unified Error Handling

Error hierarchy for the bootstrap lifecycle.

Fatal errors (ConfigError, MigrationError, ServiceGraphError) halt forward
progress and are surfaced wrapped in a BootstrapFailure once teardown has run.
TeardownError is the only non-fatal member: it is collected into a
TeardownReport and never raised by the registry.

Features:
- Hierarchical exception classes with context preservation
- Error severity levels for prioritized handling
- Structured error context for debugging
- OpenTelemetry span recording
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

if TYPE_CHECKING:
    from core.bootstrap import BootstrapStep
    from core.migrations import MigrationStage


class ErrorSeverity(Enum):
    """Error severity levels for prioritized handling."""

    WARNING = "warning"    # Degraded, process continues
    ERROR = "error"        # Operation failed
    CRITICAL = "critical"  # Startup cannot continue
    FATAL = "fatal"        # Process must exit


@dataclass
class ErrorContext:
    """Structured context for error debugging and tracing."""

    operation: str
    component: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for serialization."""
        return {
            "operation": self.operation,
            "component": self.component,
            "timestamp": self.timestamp.isoformat(),
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "metadata": self.metadata,
            "stack_trace": self.stack_trace,
        }

    @classmethod
    def from_current_span(
        cls,
        operation: str,
        component: str,
        **kwargs: Any
    ) -> "ErrorContext":
        """Create context from current OpenTelemetry span."""
        span = trace.get_current_span()
        trace_id = None
        span_id = None

        if span and span.is_recording():
            ctx = span.get_span_context()
            if ctx.is_valid:
                trace_id = format(ctx.trace_id, "032x")
                span_id = format(ctx.span_id, "016x")

        return cls(
            operation=operation,
            component=component,
            trace_id=trace_id,
            span_id=span_id,
            stack_trace=traceback.format_exc(),
            **kwargs
        )


class StagewiseError(Exception):
    """
    Base exception for all Stagewise errors.

    Provides:
    - Structured error context
    - Severity level
    - Chained exception support
    - OpenTelemetry span recording
    """

    default_severity: ErrorSeverity = ErrorSeverity.ERROR
    error_code: str = "STAGEWISE_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        severity: Optional[ErrorSeverity] = None,
        cause: Optional[BaseException] = None,
        recoverable: bool = False,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context
        self.severity = severity or self.default_severity
        self.cause = cause
        self.recoverable = recoverable
        self.suggestions = suggestions or []
        self.timestamp = datetime.now(timezone.utc)

        self._record_to_span()

    def _record_to_span(self) -> None:
        """Record exception to current OpenTelemetry span."""
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_status(Status(StatusCode.ERROR, self.message))
            span.record_exception(self)
            span.set_attribute("error.code", self.error_code)
            span.set_attribute("error.severity", self.severity.value)
            span.set_attribute("error.recoverable", self.recoverable)
            if self.context:
                span.set_attribute("error.component", self.context.component)
                span.set_attribute("error.operation", self.context.operation)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for diagnostics."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "suggestions": self.suggestions,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context.to_dict() if self.context else None,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.context:
            parts.append(f" (component: {self.context.component})")
        if self.cause:
            parts.append(f" [caused by: {self.cause}]")
        return "".join(parts)


class ConfigError(StagewiseError):
    """Malformed or unwritable configuration and paths."""

    error_code = "CONFIG_ERROR"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        path: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.config_key = config_key
        self.path = path


class MigrationError(StagewiseError):
    """
    A migration failed, or a stage was attempted out of order.

    Persisted state holds exactly the migrations that succeeded, so
    re-running bootstrap resumes from the failed migration.
    """

    error_code = "MIGRATION_ERROR"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(
        self,
        message: str,
        migration_name: Optional[str] = None,
        stage: Optional["MigrationStage"] = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        self.migration_name = migration_name
        self.stage = stage


class ServiceGraphError(StagewiseError):
    """Dependency wiring failed (missing service, cycle, failing module)."""

    error_code = "SERVICE_GRAPH_ERROR"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.service = service


class TeardownError(StagewiseError):
    """A resource failed to release. Collected, never raised by teardown."""

    error_code = "TEARDOWN_ERROR"
    default_severity = ErrorSeverity.WARNING

    def __init__(
        self,
        message: str,
        resource_name: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.resource_name = resource_name


class BootstrapFailure(StagewiseError):
    """The bootstrap sequence aborted at ``stage`` because of ``cause``."""

    error_code = "BOOTSTRAP_FAILURE"
    default_severity = ErrorSeverity.FATAL

    def __init__(self, stage: "BootstrapStep", cause: BaseException):
        super().__init__(
            f"Bootstrap failed during {stage.value}: {cause}",
            context=ErrorContext(operation="bootstrap", component=stage.value),
            cause=cause,
        )
        self.stage = stage

    @property
    def migration_stage(self) -> Optional["MigrationStage"]:
        """The migration stage that failed, if the failing step was one."""
        return self.stage.migration_stage

    def __str__(self) -> str:
        return f"[{self.error_code}] stage={self.stage.value} cause={self.cause!r}"


__all__ = [
    "ErrorSeverity",
    "ErrorContext",
    "StagewiseError",
    "ConfigError",
    "MigrationError",
    "ServiceGraphError",
    "TeardownError",
    "BootstrapFailure",
]
