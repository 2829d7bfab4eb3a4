"""
Unit tests for PostgreSQLMigrationStore using a mocked connection.

These tests verify the SQL issued and the row mapping, not PostgreSQL
itself.
"""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from batchmigrate.exceptions import (
    BatchJobNotFoundError,
    MigrationAlreadyExistsError,
    MigrationNotFoundError,
)
from batchmigrate.models import (
    BatchedJob,
    BatchedMigration,
    BatchJobStatus,
    BatchRange,
    MigrationDefinition,
    MigrationStatus,
)
from batchmigrate.stores.interface import MigrationStore
from batchmigrate.stores.postgresql import (
    JOBS_TABLE,
    MIGRATIONS_TABLE,
    PostgreSQLMigrationStore,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def migration_row(**overrides):
    values = {
        "id": 1,
        "job_class_name": "CopyColumn",
        "batch_class_name": "primary_key",
        "table_name": "events",
        "column_name": "id",
        "job_arguments": ["payload"],
        "database_schema": "main",
        "min_value": 1,
        "max_value": 1000,
        "batch_size": 100,
        "sub_batch_size": 10,
        "interval_seconds": 120.0,
        "pause_ms": 100,
        "min_batch_size": 10,
        "max_batch_size": 10_000,
        "total_tuple_count": None,
        "status": "active",
        "started_at": NOW,
        "last_retried_at": None,
        "on_hold_until": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return tuple(values.values())


def job_row(**overrides):
    values = {
        "id": 5,
        "migration_id": 1,
        "min_value": 1,
        "max_value": 100,
        "batch_size": 100,
        "sub_batch_size": 10,
        "pause_ms": 100,
        "status": "failed",
        "attempts": 2,
        "last_error": "boom",
        "created_at": NOW,
        "started_at": NOW,
        "finished_at": NOW + timedelta(seconds=30),
    }
    values.update(overrides)
    return tuple(values.values())


@pytest.fixture
def result() -> MagicMock:
    return MagicMock()


@pytest.fixture
def conn(result: MagicMock) -> AsyncMock:
    connection = AsyncMock()
    connection.execute = AsyncMock(return_value=result)
    return connection


@pytest.fixture
def store(conn: AsyncMock) -> PostgreSQLMigrationStore:
    return PostgreSQLMigrationStore(conn, enable_tracing=False)


def executed_sql(conn: AsyncMock, call_index: int = -1) -> str:
    return str(conn.execute.call_args_list[call_index].args[0])


def executed_params(conn: AsyncMock, call_index: int = -1) -> dict:
    return conn.execute.call_args_list[call_index].args[1]


class TestInit:
    def test_satisfies_protocol(self, store: PostgreSQLMigrationStore) -> None:
        assert isinstance(store, MigrationStore)

    def test_tracing_disabled(self, store: PostgreSQLMigrationStore) -> None:
        assert store._enable_tracing is False


class TestCreateMigration:
    """Tests for create_migration."""

    async def test_inserts_and_returns_migration(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.fetchone.return_value = None
        result.scalar_one.return_value = 42
        definition = MigrationDefinition(
            job_class_name="CopyColumn",
            table_name="events",
            column_name="id",
            job_arguments=["payload"],
            max_value=1000,
        )

        migration = await store.create_migration(
            definition, status=MigrationStatus.PAUSED, now=NOW
        )

        assert migration.id == 42
        assert migration.status == MigrationStatus.PAUSED
        assert f"INSERT INTO {MIGRATIONS_TABLE}" in executed_sql(conn)
        params = executed_params(conn)
        assert params["job_arguments"] == json.dumps(["payload"])
        assert params["interval_seconds"] == 120.0
        assert params["status"] == "paused"

    async def test_rejects_duplicate_identity(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.fetchone.return_value = migration_row(id=7)
        definition = MigrationDefinition(
            job_class_name="CopyColumn",
            table_name="events",
            column_name="id",
            job_arguments=["payload"],
            max_value=1000,
        )

        with pytest.raises(MigrationAlreadyExistsError) as exc_info:
            await store.create_migration(definition, status=MigrationStatus.PAUSED, now=NOW)

        assert exc_info.value.existing_migration_id == 7
        assert conn.execute.await_count == 1

    async def test_concurrent_duplicate_maps_to_already_exists(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock
    ) -> None:
        lookup = MagicMock()
        lookup.fetchone.return_value = None
        conn.execute.side_effect = [
            lookup,
            IntegrityError(
                "INSERT",
                {},
                Exception('duplicate key value violates unique constraint "uq_bbm_configuration"'),
            ),
        ]
        definition = MigrationDefinition(
            job_class_name="CopyColumn",
            table_name="events",
            column_name="id",
            max_value=1000,
        )

        with pytest.raises(MigrationAlreadyExistsError) as exc_info:
            await store.create_migration(definition, status=MigrationStatus.PAUSED, now=NOW)

        assert exc_info.value.identity == definition.identity
        assert exc_info.value.existing_migration_id is None
        assert isinstance(exc_info.value.__cause__, IntegrityError)

    async def test_other_integrity_errors_propagate(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock
    ) -> None:
        lookup = MagicMock()
        lookup.fetchone.return_value = None
        conn.execute.side_effect = [
            lookup,
            IntegrityError("INSERT", {}, Exception('violates check constraint "chk_bbm_range"')),
        ]
        definition = MigrationDefinition(
            job_class_name="CopyColumn",
            table_name="events",
            column_name="id",
            max_value=1000,
        )

        with pytest.raises(IntegrityError):
            await store.create_migration(definition, status=MigrationStatus.PAUSED, now=NOW)


class TestMigrationQueries:
    """Tests for migration reads and updates."""

    async def test_get_migration_maps_row(
        self, store: PostgreSQLMigrationStore, result: MagicMock
    ) -> None:
        result.fetchone.return_value = migration_row()

        migration = await store.get_migration(1)

        assert migration is not None
        assert migration.job_class_name == "CopyColumn"
        assert migration.job_arguments == ["payload"]
        assert migration.interval == timedelta(minutes=2)
        assert migration.status == MigrationStatus.ACTIVE
        assert migration.started_at == NOW

    async def test_get_migration_decodes_json_arguments(
        self, store: PostgreSQLMigrationStore, result: MagicMock
    ) -> None:
        result.fetchone.return_value = migration_row(job_arguments='["a", 2]')

        migration = await store.get_migration(1)

        assert migration is not None
        assert migration.job_arguments == ["a", 2]

    async def test_get_missing_migration(
        self, store: PostgreSQLMigrationStore, result: MagicMock
    ) -> None:
        result.fetchone.return_value = None

        assert await store.get_migration(99) is None

    async def test_active_migration_skips_locked_rows(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.fetchone.return_value = migration_row()

        migration = await store.active_migration(NOW, schemas=["main"])

        assert migration is not None
        sql = executed_sql(conn)
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "ORDER BY id ASC" in sql
        params = executed_params(conn)
        assert params["status"] == "active"
        assert params["schemas"] == ["main"]
        assert params["now"] == NOW

    async def test_list_migrations_filters(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.fetchall.return_value = [migration_row(), migration_row(id=2, status="paused")]

        migrations = await store.list_migrations(
            statuses=[MigrationStatus.ACTIVE, MigrationStatus.PAUSED]
        )

        assert [m.id for m in migrations] == [1, 2]
        assert executed_params(conn)["statuses"] == ["active", "paused"]

    async def test_update_migration(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.rowcount = 1
        migration = BatchedMigration(
            id=3,
            job_class_name="CopyColumn",
            table_name="events",
            column_name="id",
            min_value=1,
            max_value=10,
            status=MigrationStatus.FINISHED,
        )

        await store.update_migration(migration)

        assert f"UPDATE {MIGRATIONS_TABLE}" in executed_sql(conn)
        assert executed_params(conn)["status"] == "finished"

    async def test_update_missing_migration(
        self, store: PostgreSQLMigrationStore, result: MagicMock
    ) -> None:
        result.rowcount = 0
        migration = BatchedMigration(
            id=3,
            job_class_name="CopyColumn",
            table_name="events",
            column_name="id",
            min_value=1,
            max_value=10,
        )

        with pytest.raises(MigrationNotFoundError):
            await store.update_migration(migration)

    async def test_update_batch_sizing_only_touches_sizing(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.rowcount = 1

        await store.update_batch_sizing(3, batch_size=120, sub_batch_size=12, now=NOW)

        sql = executed_sql(conn)
        assert f"UPDATE {MIGRATIONS_TABLE}" in sql
        assert "status" not in sql
        assert "on_hold_until" not in sql
        assert executed_params(conn) == {
            "id": 3,
            "batch_size": 120,
            "sub_batch_size": 12,
            "updated_at": NOW,
        }

    async def test_update_batch_sizing_of_missing_migration(
        self, store: PostgreSQLMigrationStore, result: MagicMock
    ) -> None:
        result.rowcount = 0

        with pytest.raises(MigrationNotFoundError):
            await store.update_batch_sizing(3, batch_size=120, sub_batch_size=12, now=NOW)


class TestJobQueries:
    """Tests for batch job persistence."""

    async def test_create_job(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.scalar_one.return_value = 9
        migration = BatchedMigration(
            id=1,
            job_class_name="CopyColumn",
            table_name="events",
            column_name="id",
            min_value=1,
            max_value=1000,
            batch_size=100,
        )

        job = await store.create_job(migration.new_job(BatchRange(1, 100)), NOW)

        assert job.id == 9
        assert job.status == BatchJobStatus.PENDING
        assert job.created_at == NOW
        assert f"INSERT INTO {JOBS_TABLE}" in executed_sql(conn)

    async def test_get_job_maps_row(
        self, store: PostgreSQLMigrationStore, result: MagicMock
    ) -> None:
        result.fetchone.return_value = job_row()

        job = await store.get_job(5)

        assert job is not None
        assert job.status == BatchJobStatus.FAILED
        assert job.attempts == 2
        assert job.last_error == "boom"
        assert job.duration == timedelta(seconds=30)

    async def test_list_jobs_started_before(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.fetchall.return_value = [job_row(status="running")]
        cutoff = NOW - timedelta(hours=1)

        jobs = await store.list_jobs(
            1, [BatchJobStatus.RUNNING], after_id=4, limit=10, started_before=cutoff
        )

        assert [job.status for job in jobs] == [BatchJobStatus.RUNNING]
        assert "started_at < :started_before" in executed_sql(conn)
        assert "LIMIT 10" in executed_sql(conn)
        assert executed_params(conn)["started_before"] == cutoff

    async def test_count_jobs(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.scalar.return_value = 4

        count = await store.count_jobs(
            1, [BatchJobStatus.FAILED], created_since=NOW
        )

        assert count == 4
        params = executed_params(conn)
        assert params["statuses"] == ["failed"]
        assert params["created_since"] == NOW

    async def test_count_jobs_none_is_zero(
        self, store: PostgreSQLMigrationStore, result: MagicMock
    ) -> None:
        result.scalar.return_value = None

        assert await store.count_jobs(1) == 0

    async def test_count_jobs_by_status(
        self, store: PostgreSQLMigrationStore, result: MagicMock
    ) -> None:
        result.fetchall.return_value = [("succeeded", 3), ("failed", 1)]

        counts = await store.count_jobs_by_status(1)

        assert counts == {BatchJobStatus.SUCCEEDED: 3, BatchJobStatus.FAILED: 1}

    async def test_recent_successful_jobs_orders_by_finish(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.fetchall.return_value = [job_row(status="succeeded")]

        jobs = await store.recent_successful_jobs(1, limit=20)

        assert len(jobs) == 1
        assert "ORDER BY finished_at DESC" in executed_sql(conn)
        assert executed_params(conn)["limit"] == 20

    async def test_update_missing_job(
        self, store: PostgreSQLMigrationStore, result: MagicMock
    ) -> None:
        result.rowcount = 0
        job = BatchedJob(
            id=5,
            migration_id=1,
            min_value=1,
            max_value=100,
            batch_size=100,
            sub_batch_size=10,
            pause_ms=0,
        )

        with pytest.raises(BatchJobNotFoundError):
            await store.update_job(job)

    async def test_successful_rows_counts(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock, result: MagicMock
    ) -> None:
        result.fetchall.return_value = [(1, 300), (2, 100)]

        counts = await store.successful_rows_counts([1, 2])

        assert counts == {1: 300, 2: 100}
        assert "SUM(batch_size)" in executed_sql(conn)

    async def test_successful_rows_counts_empty(
        self, store: PostgreSQLMigrationStore, conn: AsyncMock
    ) -> None:
        assert await store.successful_rows_counts([]) == {}
        conn.execute.assert_not_awaited()
