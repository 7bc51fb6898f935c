"""
Tests for the migration stores.
"""
from datetime import timezone

import pytest
from sqlalchemy.exc import IntegrityError

from config import ConfigurationSnapshot, ServerPaths
from core.errors import ConfigError
from core.migrations import MigrationRecord, MigrationStage
from db.migration_store import (
    InMemoryMigrationStore,
    MigrationStore,
    SqlMigrationStore,
    create_migration_store,
)


@pytest.fixture
def server_paths(tmp_path) -> ServerPaths:
    paths = ServerPaths.from_root(tmp_path / "data")
    paths.program_data.mkdir(parents=True)
    return paths


class TestSqlMigrationStore:
    """Tests for SqlMigrationStore over SQLite."""

    @pytest.mark.asyncio
    async def test_record_and_read_back(self, server_paths):
        store = SqlMigrationStore.for_paths(server_paths)
        await store.initialize()
        try:
            await store.record(MigrationRecord(name="m1", stage=MigrationStage.PRE_INIT))
            await store.record(MigrationRecord(name="m1", stage=MigrationStage.CORE_INIT))

            assert await store.applied_names(MigrationStage.PRE_INIT) == {"m1"}
            assert await store.applied_names(MigrationStage.APP_INIT) == set()

            records = await store.records()
            assert [(r.name, r.stage) for r in records] == [
                ("m1", MigrationStage.PRE_INIT),
                ("m1", MigrationStage.CORE_INIT),
            ]
            assert all(r.applied_at.tzinfo == timezone.utc for r in records)
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_duplicate_record_rejected(self, server_paths):
        store = SqlMigrationStore.for_paths(server_paths)
        await store.initialize()
        try:
            await store.record(MigrationRecord(name="m1", stage=MigrationStage.PRE_INIT))

            with pytest.raises(IntegrityError):
                await store.record(MigrationRecord(name="m1", stage=MigrationStage.PRE_INIT))

            assert len(await store.records()) == 1
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_records_survive_reopen(self, server_paths):
        store = SqlMigrationStore.for_paths(server_paths)
        await store.initialize()
        await store.record(MigrationRecord(name="m1", stage=MigrationStage.PRE_INIT))
        await store.close()

        reopened = SqlMigrationStore.for_paths(server_paths)
        await reopened.initialize()
        try:
            assert await reopened.applied_names(MigrationStage.PRE_INIT) == {"m1"}
        finally:
            await reopened.close()

        assert (server_paths.program_data / "migrations.db").exists()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, server_paths):
        store = SqlMigrationStore.for_paths(server_paths)
        await store.initialize()

        await store.close()
        await store.close()

    @pytest.mark.asyncio
    async def test_closed_store_does_not_reopen_itself(self, server_paths):
        store = SqlMigrationStore.for_paths(server_paths)
        await store.initialize()
        await store.close()

        with pytest.raises(RuntimeError, match="not open"):
            await store.record(MigrationRecord(name="m1", stage=MigrationStage.PRE_INIT))
        with pytest.raises(RuntimeError, match="not open"):
            await store.applied_names(MigrationStage.PRE_INIT)


class TestInMemoryMigrationStore:

    @pytest.mark.asyncio
    async def test_contract(self):
        store = InMemoryMigrationStore()
        await store.initialize()
        await store.record(MigrationRecord(name="m1", stage=MigrationStage.PRE_INIT))

        assert await store.applied_names(MigrationStage.PRE_INIT) == {"m1"}
        with pytest.raises(ValueError):
            await store.record(MigrationRecord(name="m1", stage=MigrationStage.PRE_INIT))
        assert isinstance(store, MigrationStore)


class TestCreateMigrationStore:

    def test_memory(self, server_paths):
        store = create_migration_store(ConfigurationSnapshot({"migrations:store": "memory"}), server_paths)

        assert isinstance(store, InMemoryMigrationStore)

    def test_sql_default_url(self, server_paths):
        store = create_migration_store(ConfigurationSnapshot({}), server_paths)

        assert isinstance(store, SqlMigrationStore)
        assert store.database_url.startswith("sqlite+aiosqlite:///")
        assert store.database_url.endswith("migrations.db")

    def test_sql_explicit_url(self, server_paths):
        configuration = ConfigurationSnapshot({
            "migrations:store": "SQL",
            "migrations:database-url": "sqlite+aiosqlite:///:memory:",
        })

        store = create_migration_store(configuration, server_paths)

        assert store.database_url == "sqlite+aiosqlite:///:memory:"

    def test_unknown(self, server_paths):
        with pytest.raises(ConfigError) as exc_info:
            create_migration_store(ConfigurationSnapshot({"migrations:store": "redis"}), server_paths)

        assert exc_info.value.config_key == "migrations:store"
