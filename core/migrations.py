"""
Stagewise - Stage Migration Runner

Applies persisted state migrations gated to a lifecycle stage.

Stages form a forward-only sequence:

    PreInit → CoreInit → AppInit

    PreInit:  configuration is final; no services exist yet
    CoreInit: core services are constructed and resolvable
    AppInit:  application services are wired

Within a stage, migrations run one at a time in declaration order. A
migration that already has a record for (name, stage) is skipped, so
re-running a stage against the same store is a no-op. The first failure stops
the stage; everything before it stays recorded, which makes a later run
resume from the failed migration.

Usage:
    catalog = MigrationCatalog()

    @catalog.migration(MigrationStage.PRE_INIT)
    def create_network_config(ctx: MigrationContext) -> None:
        ...

    runner = MigrationRunner(catalog, store)
    applied = await runner.apply_stage(MigrationStage.PRE_INIT, context)
"""
from __future__ import annotations

import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from core.errors import MigrationError
from observability.logging import NullStartupLogger, StartupLogger

if TYPE_CHECKING:
    from core.context import BootstrapContext
    from core.services import ServiceGraph
    from db.migration_store import MigrationStore

logger = logging.getLogger("stagewise.migrations")


class MigrationStage(Enum):
    """Lifecycle checkpoints a migration can be bound to."""
    PRE_INIT = "PreInit"
    CORE_INIT = "CoreInit"
    APP_INIT = "AppInit"

    @property
    def order(self) -> int:
        return _STAGE_ORDER.index(self)

    def __lt__(self, other: "MigrationStage") -> bool:
        if not isinstance(other, MigrationStage):
            return NotImplemented
        return self.order < other.order

    def __le__(self, other: "MigrationStage") -> bool:
        if not isinstance(other, MigrationStage):
            return NotImplemented
        return self.order <= other.order

    def __gt__(self, other: "MigrationStage") -> bool:
        if not isinstance(other, MigrationStage):
            return NotImplemented
        return self.order > other.order

    def __ge__(self, other: "MigrationStage") -> bool:
        if not isinstance(other, MigrationStage):
            return NotImplemented
        return self.order >= other.order

    def predecessors(self) -> Tuple["MigrationStage", ...]:
        return _STAGE_ORDER[: self.order]

    @classmethod
    def parse(cls, name: str) -> "MigrationStage":
        """Parse a stage identifier; only the three versioned names are accepted."""
        try:
            return cls(name)
        except ValueError:
            valid = ", ".join(s.value for s in _STAGE_ORDER)
            raise ValueError(f"Unknown migration stage '{name}' (expected one of: {valid})") from None


_STAGE_ORDER: Tuple[MigrationStage, ...] = (
    MigrationStage.PRE_INIT,
    MigrationStage.CORE_INIT,
    MigrationStage.APP_INIT,
)


@dataclass(frozen=True)
class MigrationRecord:
    """A migration that has been applied to a store."""
    name: str
    stage: MigrationStage
    applied_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class MigrationContext:
    """What a migration receives when it runs."""
    bootstrap: "BootstrapContext"
    stage: MigrationStage
    logger: StartupLogger
    services: Optional["ServiceGraph"] = None


MigrationFunc = Callable[[MigrationContext], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Migration:
    """A named state transformation bound to one stage."""
    name: str
    stage: MigrationStage
    func: MigrationFunc
    description: str = ""

    async def execute(self, context: MigrationContext) -> None:
        result = self.func(context)
        if inspect.isawaitable(result):
            await result


class MigrationCatalog:
    """Known migrations, kept in declaration order."""

    def __init__(self) -> None:
        self._migrations: List[Migration] = []
        self._keys: Dict[Tuple[str, MigrationStage], Migration] = {}

    def add(
        self,
        name: str,
        stage: MigrationStage,
        func: MigrationFunc,
        description: str = "",
    ) -> Migration:
        key = (name, stage)
        if key in self._keys:
            raise ValueError(f"Migration '{name}' is already declared for stage {stage.value}")
        migration = Migration(name=name, stage=stage, func=func, description=description)
        self._migrations.append(migration)
        self._keys[key] = migration
        return migration

    def migration(
        self,
        stage: MigrationStage,
        name: Optional[str] = None,
        description: str = "",
    ) -> Callable[[MigrationFunc], MigrationFunc]:
        """Decorator registering a function as a migration."""
        def decorator(func: MigrationFunc) -> MigrationFunc:
            migration_name = name or func.__name__.replace("_", "-")
            self.add(migration_name, stage, func, description or (func.__doc__ or "").strip())
            return func
        return decorator

    def extend(self, other: "MigrationCatalog") -> "MigrationCatalog":
        for migration in other:
            self.add(migration.name, migration.stage, migration.func, migration.description)
        return self

    def for_stage(self, stage: MigrationStage) -> List[Migration]:
        return [m for m in self._migrations if m.stage is stage]

    def __iter__(self):
        return iter(list(self._migrations))

    def __len__(self) -> int:
        return len(self._migrations)


@dataclass
class AppliedSet:
    """Outcome of applying one stage."""
    stage: MigrationStage
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.applied


class MigrationRunner:
    """
    Applies the pending migrations of one stage at a time.

    Holds no per-run state: everything it decides comes from the catalog
    and the persisted store.
    """

    def __init__(
        self,
        catalog: MigrationCatalog,
        store: "MigrationStore",
        startup_logger: Optional[StartupLogger] = None,
    ):
        self._catalog = catalog
        self._store = store
        self._startup_logger = startup_logger or NullStartupLogger("stagewise.migrations")

    async def _applied_names(self, stage: MigrationStage) -> Set[str]:
        try:
            return await self._store.applied_names(stage)
        except Exception as e:
            raise MigrationError(
                f"Could not read applied {stage.value} migrations: {e}",
                stage=stage,
                cause=e,
            ) from e

    async def pending(self, stage: MigrationStage) -> List[Migration]:
        applied = await self._applied_names(stage)
        return [m for m in self._catalog.for_stage(stage) if m.name not in applied]

    async def _ensure_prior_stages_complete(self, stage: MigrationStage) -> None:
        for earlier in stage.predecessors():
            missing = await self.pending(earlier)
            if missing:
                raise MigrationError(
                    f"Cannot apply {stage.value} migrations: {earlier.value} migration "
                    f"'{missing[0].name}' has not been applied",
                    migration_name=missing[0].name,
                    stage=earlier,
                )

    async def apply_stage(
        self,
        stage: MigrationStage,
        context: "BootstrapContext",
        services: Optional["ServiceGraph"] = None,
    ) -> AppliedSet:
        """
        Apply every unrecorded migration declared for ``stage``.

        Raises:
            MigrationError: On the first failing migration, or if an earlier
                stage still has unapplied migrations
        """
        await self._ensure_prior_stages_complete(stage)

        stage_logger = self._startup_logger.begin_group(f"Applying {stage.value} migrations")
        base_context = MigrationContext(
            bootstrap=context,
            stage=stage,
            logger=stage_logger,
            services=services,
        )
        already_applied = await self._applied_names(stage)
        result = AppliedSet(stage=stage)

        for migration in self._catalog.for_stage(stage):
            if migration.name in already_applied:
                result.skipped.append(migration.name)
                continue

            migration_context = dataclasses.replace(
                base_context,
                logger=stage_logger.begin_group(f"Migration {migration.name}"),
            )
            try:
                await migration.execute(migration_context)
            except Exception as e:
                stage_logger.error("Migration failed", migration=migration.name, error=str(e))
                raise MigrationError(
                    f"Migration '{migration.name}' ({stage.value}) failed: {e}",
                    migration_name=migration.name,
                    stage=stage,
                    cause=e,
                ) from e

            try:
                await self._store.record(MigrationRecord(name=migration.name, stage=stage))
            except Exception as e:
                stage_logger.error("Migration not recorded", migration=migration.name, error=str(e))
                raise MigrationError(
                    f"Migration '{migration.name}' ({stage.value}) ran but could not be recorded: {e}",
                    migration_name=migration.name,
                    stage=stage,
                    cause=e,
                ) from e
            result.applied.append(migration.name)
            stage_logger.info("Migration applied", migration=migration.name)

        logger.debug(
            f"{stage.value}: {len(result.applied)} applied, {len(result.skipped)} skipped"
        )
        return result


__all__ = [
    "MigrationStage",
    "MigrationRecord",
    "MigrationContext",
    "Migration",
    "MigrationCatalog",
    "AppliedSet",
    "MigrationRunner",
]
