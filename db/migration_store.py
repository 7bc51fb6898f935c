"""
Stagewise - Migration Store

Persists MigrationRecords across process runs.

SqlMigrationStore uses SQLAlchemy 2.0 async sessions (SQLite via aiosqlite by
default). InMemoryMigrationStore offers the same contract without I/O.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timezone
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Optional, Protocol, Set, Tuple, runtime_checkable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config import MIGRATION_DATABASE_URL_KEY, MIGRATION_STORE_KEY, ConfigurationSnapshot, ServerPaths
from core.errors import ConfigError
from core.migrations import MigrationRecord, MigrationStage
from db.models import Base, MigrationHistory

logger = logging.getLogger("stagewise.db.migration_store")

MIGRATION_DATABASE_FILE = "migrations.db"


@runtime_checkable
class MigrationStore(Protocol):
    """Persistent set of applied migrations."""

    async def initialize(self) -> None: ...

    async def applied_names(self, stage: MigrationStage) -> Set[str]: ...

    async def record(self, record: MigrationRecord) -> None: ...

    async def records(self) -> List[MigrationRecord]: ...

    async def close(self) -> None: ...


class SqlMigrationStore:
    """
    SQLAlchemy-backed migration store.

    Features:
    - Async engine and session factory
    - Unique (name, stage) constraint enforced by the database
    - Table created on initialize; existing history is preserved
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo

        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @classmethod
    def for_paths(cls, paths: ServerPaths) -> "SqlMigrationStore":
        """SQLite database in the program data directory."""
        db_path = Path(paths.program_data).absolute() / MIGRATION_DATABASE_FILE
        return cls(f"sqlite+aiosqlite:///{db_path}")

    async def initialize(self) -> None:
        """Create the engine and the migration_history table if missing."""
        if self._engine is not None:
            return

        self._engine = create_async_engine(self.database_url, echo=self.echo)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info(f"Migration store initialized ({self._engine.url.render_as_string(hide_password=True)})")

    async def close(self) -> None:
        """Close database connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Migration store closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session."""
        if self._session_factory is None:
            raise RuntimeError("Migration store is not open; call initialize() first")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def applied_names(self, stage: MigrationStage) -> Set[str]:
        async with self.session() as session:
            result = await session.execute(
                select(MigrationHistory.name).where(MigrationHistory.stage == stage.value)
            )
            return set(result.scalars().all())

    async def record(self, record: MigrationRecord) -> None:
        async with self.session() as session:
            session.add(
                MigrationHistory(
                    name=record.name,
                    stage=record.stage.value,
                    applied_at=record.applied_at,
                )
            )

    async def records(self) -> List[MigrationRecord]:
        async with self.session() as session:
            result = await session.execute(
                select(MigrationHistory).order_by(MigrationHistory.id)
            )
            return [
                MigrationRecord(
                    name=row.name,
                    stage=MigrationStage.parse(row.stage),
                    # SQLite drops the offset; values are always written in UTC
                    applied_at=row.applied_at if row.applied_at.tzinfo else row.applied_at.replace(tzinfo=timezone.utc),
                )
                for row in result.scalars().all()
            ]


class InMemoryMigrationStore:
    """Migration store kept in process memory."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, MigrationStage], MigrationRecord] = {}

    async def initialize(self) -> None:
        return None

    async def applied_names(self, stage: MigrationStage) -> Set[str]:
        return {name for (name, s) in self._records if s is stage}

    async def record(self, record: MigrationRecord) -> None:
        key = (record.name, record.stage)
        if key in self._records:
            raise ValueError(f"Migration '{record.name}' already recorded for {record.stage.value}")
        self._records[key] = record

    async def records(self) -> List[MigrationRecord]:
        return list(self._records.values())

    async def close(self) -> None:
        return None


def create_migration_store(configuration: ConfigurationSnapshot, paths: ServerPaths) -> MigrationStore:
    """Pick the store named by ``migrations:store``."""
    kind = (configuration.get(MIGRATION_STORE_KEY) or "sql").strip().lower()
    if kind == "memory":
        return InMemoryMigrationStore()
    if kind == "sql":
        url = configuration.get(MIGRATION_DATABASE_URL_KEY)
        return SqlMigrationStore(url) if url else SqlMigrationStore.for_paths(paths)
    raise ConfigError(f"Unknown migration store '{kind}'", config_key=MIGRATION_STORE_KEY)
