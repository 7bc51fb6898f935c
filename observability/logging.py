"""
Stagewise - Structured Logging and the Startup Logger Capability

Integrates structlog with OpenTelemetry trace context propagation, and
defines the StartupLogger capability used throughout bootstrap.

Features:
- Structured JSON or console logging over stdlib handlers
- Automatic trace context injection (trace_id, span_id)
- Process-wide init-once / teardown lifecycle
- StartupLogger capability with a real (structlog) and a no-op variant

Usage:
    from observability.logging import setup_logging, get_startup_logger

    # Once, at process start
    setup_logging(LoggingConfig(level="INFO", json_format=False))

    startup = get_startup_logger()
    migrations = startup.begin_group("Applying PreInit migrations")
    migrations.info("Migration applied", migration="create-network-config")
"""
from __future__ import annotations

import contextlib
import json
import logging
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    ContextManager,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

import structlog
from structlog.types import EventDict, WrappedLogger

from core.errors import ConfigError

if TYPE_CHECKING:
    from config import ServerPaths

LOGGING_CONFIG_FILE_NAME = "logging.json"
DEFAULT_CATEGORY = "stagewise.startup"

# Process-wide state, guarded by _lock
_lock = threading.Lock()
_configured: bool = False
_installed_handlers: List[logging.Handler] = []
_previous_root_level: Optional[int] = None


@dataclass
class LoggingConfig:
    """Configuration for structured logging."""

    service_name: str = "stagewise"
    level: str = "INFO"
    json_format: bool = False
    enable_trace_context: bool = True
    log_to_console: bool = True
    log_to_file: bool = False
    log_file_path: Optional[Path] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    environment: str = "development"

    @classmethod
    def from_file(cls, path: Path, log_dir: Optional[Path] = None) -> "LoggingConfig":
        """Load logging settings written by ``init_logging_config_file``."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(f"Logging config '{path}' is unreadable: {e}", path=str(path), cause=e) from e
        if not isinstance(data, dict):
            raise ConfigError(f"Logging config '{path}' must contain a JSON object", path=str(path))

        config = cls(
            service_name=str(data.get("service_name", cls.service_name)),
            level=str(data.get("level", cls.level)).upper(),
            json_format=bool(data.get("json_format", cls.json_format)),
            log_to_console=bool(data.get("log_to_console", cls.log_to_console)),
            log_to_file=bool(data.get("log_to_file", cls.log_to_file)),
        )
        if config.log_to_file:
            file_name = str(data.get("file_name", "stagewise.log"))
            config.log_file_path = (log_dir or Path(path).parent) / file_name
        return config


DEFAULT_LOGGING_SETTINGS: Dict[str, Any] = {
    "service_name": "stagewise",
    "level": "INFO",
    "json_format": False,
    "log_to_console": True,
    "log_to_file": True,
    "file_name": "stagewise.log",
}


def init_logging_config_file(paths: "ServerPaths") -> Path:
    """Write the default logging config into the config directory, once."""
    target = paths.config_dir / LOGGING_CONFIG_FILE_NAME
    if not target.exists():
        target.write_text(json.dumps(DEFAULT_LOGGING_SETTINGS, indent=2), encoding="utf-8")
    return target


# =============================================================================
# Processors
# =============================================================================


def add_trace_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """
    Structlog processor that adds OpenTelemetry trace context to log events.

    Adds trace_id and span_id from the current span context, enabling
    correlation between logs and traces in observability backends.
    """
    from opentelemetry import trace

    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        if ctx.is_valid:
            event_dict["trace_id"] = format(ctx.trace_id, "032x")
            event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def add_service_context(
    service_name: str,
    environment: str,
) -> structlog.types.Processor:
    """Create a processor that adds service context to all log events."""

    def processor(
        logger: WrappedLogger,
        method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        event_dict["service"] = service_name
        event_dict["environment"] = environment
        return event_dict

    return processor


def add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add ISO8601 timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


# =============================================================================
# Process-wide lifecycle
# =============================================================================


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ConfigError(f"Unknown log level '{level}'", config_key="level")
    return resolved


def setup_logging(config: Optional[LoggingConfig] = None) -> bool:
    """
    Configure structlog and stdlib handlers once per process.

    Returns:
        True if this call configured logging, False if it already was
    """
    global _configured, _previous_root_level

    with _lock:
        if _configured:
            return False

        config = config or LoggingConfig()
        level = _resolve_level(config.level)

        processors: list[structlog.types.Processor] = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            add_service_context(config.service_name, config.environment),
            add_timestamp,
        ]
        if config.enable_trace_context:
            processors.append(add_trace_context)
        processors.extend([
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
        ])
        if config.json_format:
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=False))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )

        handlers = _build_handlers(config, level)
        root_logger = logging.getLogger()
        _previous_root_level = root_logger.level
        root_logger.setLevel(level)
        for handler in handlers:
            root_logger.addHandler(handler)
        _installed_handlers.extend(handlers)

        logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
        logging.getLogger("aiosqlite").setLevel(logging.WARNING)
        logging.getLogger("asyncio").setLevel(logging.WARNING)

        _configured = True
        return True


def _build_handlers(config: LoggingConfig, level: int) -> List[logging.Handler]:
    formatter = logging.Formatter("%(message)s")
    handlers: List[logging.Handler] = []

    if config.log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if config.log_to_file and config.log_file_path is not None:
        from logging.handlers import RotatingFileHandler

        config.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_file_path,
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    return handlers


def shutdown_logging() -> None:
    """Flush and remove the handlers installed by ``setup_logging``."""
    global _configured, _previous_root_level

    with _lock:
        if not _configured:
            return

        root_logger = logging.getLogger()
        for handler in _installed_handlers:
            root_logger.removeHandler(handler)
            handler.flush()
            handler.close()
        _installed_handlers.clear()

        if _previous_root_level is not None:
            root_logger.setLevel(_previous_root_level)
            _previous_root_level = None

        _configured = False


def is_logging_configured() -> bool:
    return _configured


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger instance.

    Does not configure logging; that happens once, in ``setup_logging``.
    """
    return structlog.get_logger(name)


# =============================================================================
# Startup logger capability
# =============================================================================


@dataclass
class StartupLogTopic:
    """A node in the tree of startup log groups."""
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    children: List["StartupLogTopic"] = field(default_factory=list)


@runtime_checkable
class StartupLogger(Protocol):
    """Structured logging capability used during bootstrap."""

    @property
    def category(self) -> str: ...

    @property
    def scope(self) -> Tuple[str, ...]: ...

    @property
    def topic(self) -> Optional[StartupLogTopic]: ...

    def begin_group(self, message: str, category: Optional[str] = None) -> "StartupLogger": ...

    def with_logger(self, logger: Any, category: Optional[str] = None) -> "StartupLogger": ...

    def bind_scope(self, **context: Any) -> ContextManager[None]: ...

    def is_enabled(self, level: int) -> bool: ...

    def log(self, level: int, event: str, **kwargs: Any) -> None: ...

    def debug(self, event: str, **kwargs: Any) -> None: ...

    def info(self, event: str, **kwargs: Any) -> None: ...

    def warning(self, event: str, **kwargs: Any) -> None: ...

    def error(self, event: str, **kwargs: Any) -> None: ...


class StructlogStartupLogger:
    """StartupLogger backed by structlog; groups build a StartupLogTopic tree."""

    def __init__(
        self,
        category: str = DEFAULT_CATEGORY,
        logger: Any = None,
        topic: Optional[StartupLogTopic] = None,
        scope: Tuple[str, ...] = (),
    ):
        self._category = category
        self._logger = logger if logger is not None else get_logger(category)
        self._topic = topic if topic is not None else StartupLogTopic(content="Startup")
        self._scope = scope

    @property
    def category(self) -> str:
        return self._category

    @property
    def scope(self) -> Tuple[str, ...]:
        return self._scope

    @property
    def topic(self) -> Optional[StartupLogTopic]:
        return self._topic

    def begin_group(self, message: str, category: Optional[str] = None) -> "StructlogStartupLogger":
        child = StartupLogTopic(content=message)
        self._topic.children.append(child)
        target_category = category or self._category
        logger = self._logger if category is None else get_logger(target_category)
        logger.info(message, group=" > ".join(self._scope + (message,)))
        return StructlogStartupLogger(
            category=target_category,
            logger=logger,
            topic=child,
            scope=self._scope + (message,),
        )

    def with_logger(self, logger: Any, category: Optional[str] = None) -> "StructlogStartupLogger":
        return StructlogStartupLogger(
            category=category or self._category,
            logger=logger,
            topic=self._topic,
            scope=self._scope,
        )

    def bind_scope(self, **context: Any) -> ContextManager[None]:
        return structlog.contextvars.bound_contextvars(**context)

    def is_enabled(self, level: int) -> bool:
        return logging.getLogger(self._category).isEnabledFor(level)

    def log(self, level: int, event: str, **kwargs: Any) -> None:
        if self._scope:
            kwargs.setdefault("group", " > ".join(self._scope))
        self._logger.log(level, event, **kwargs)

    def debug(self, event: str, **kwargs: Any) -> None:
        self.log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self.log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self.log(logging.WARNING, event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self.log(logging.ERROR, event, **kwargs)


class NullStartupLogger:
    """
    StartupLogger that does nothing.

    For contexts with no sink (tests, short-lived tools). Grouping returns a
    new stub scoped to the narrower group or category; nothing is recorded.
    """

    __slots__ = ("_category", "_scope")

    def __init__(self, category: str = DEFAULT_CATEGORY, scope: Tuple[str, ...] = ()):
        self._category = category
        self._scope = scope

    @property
    def category(self) -> str:
        return self._category

    @property
    def scope(self) -> Tuple[str, ...]:
        return self._scope

    @property
    def topic(self) -> Optional[StartupLogTopic]:
        return None

    def begin_group(self, message: str, category: Optional[str] = None) -> "NullStartupLogger":
        return NullStartupLogger(category or self._category, self._scope + (message,))

    def with_logger(self, logger: Any, category: Optional[str] = None) -> "NullStartupLogger":
        return NullStartupLogger(category or self._category, self._scope)

    def bind_scope(self, **context: Any) -> ContextManager[None]:
        return contextlib.nullcontext()

    def is_enabled(self, level: int) -> bool:
        return False

    def log(self, level: int, event: str, **kwargs: Any) -> None:
        return None

    def debug(self, event: str, **kwargs: Any) -> None:
        return None

    def info(self, event: str, **kwargs: Any) -> None:
        return None

    def warning(self, event: str, **kwargs: Any) -> None:
        return None

    def error(self, event: str, **kwargs: Any) -> None:
        return None


def get_startup_logger(category: str = DEFAULT_CATEGORY) -> StartupLogger:
    """Real startup logger when logging is configured, else the no-op stub."""
    if _configured:
        return StructlogStartupLogger(category)
    return NullStartupLogger(category)
