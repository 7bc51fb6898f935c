"""
Stagewise - Observability Package

Structured logging with trace context, and the StartupLogger capability.
Tracing uses the OpenTelemetry API directly; exporter setup belongs to the
host process.

Usage:
    from observability import setup_logging, get_startup_logger

    setup_logging(LoggingConfig(level="DEBUG"))
    startup = get_startup_logger()
"""
from observability.logging import (
    LoggingConfig,
    NullStartupLogger,
    StartupLogger,
    StartupLogTopic,
    StructlogStartupLogger,
    get_logger,
    get_startup_logger,
    init_logging_config_file,
    is_logging_configured,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "NullStartupLogger",
    "StartupLogger",
    "StartupLogTopic",
    "StructlogStartupLogger",
    "get_logger",
    "get_startup_logger",
    "init_logging_config_file",
    "is_logging_configured",
    "setup_logging",
    "shutdown_logging",
]
