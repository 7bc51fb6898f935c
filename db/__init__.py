"""
Stagewise - Database Layer

Persistence for applied migrations:
- SqlMigrationStore: SQLAlchemy 2.0 async (SQLite via aiosqlite by default)
- InMemoryMigrationStore: same contract, no I/O

Usage:
    from db import create_migration_store

    store = create_migration_store(context.configuration, context.paths)
    await store.initialize()
"""
from db.migration_store import (
    InMemoryMigrationStore,
    MigrationStore,
    SqlMigrationStore,
    create_migration_store,
)
from db.models import Base, MigrationHistory

__all__ = [
    "Base",
    "MigrationHistory",
    "MigrationStore",
    "SqlMigrationStore",
    "InMemoryMigrationStore",
    "create_migration_store",
]
