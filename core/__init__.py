"""
Stagewise - Core Module

The staged bootstrap lifecycle:
- Unified error handling (errors)
- Bootstrap context (context)
- Stage migrations (migrations)
- Resource registry (resources)
- Service graph (services)
- Orchestrator (bootstrap)
- Built-in defaults (builtin)

Only the error hierarchy is re-exported here; import the rest from its
submodule so that observability and db can depend on core.errors without
pulling in the orchestrator.

Usage:
    from core.bootstrap import BootstrapOrchestrator, bootstrap
    from core.migrations import MigrationCatalog, MigrationStage
"""

from core.errors import (
    BootstrapFailure,
    ConfigError,
    ErrorContext,
    ErrorSeverity,
    MigrationError,
    ServiceGraphError,
    StagewiseError,
    TeardownError,
)

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
