"""
Unit tests for InMemoryMigrationStore.

Tests cover:
- Migration creation, identity uniqueness and lookup
- Queue ordering and executor selection
- Batch sizing updates
- Job creation, listing, paging and counting
- Successful row counts
- Copy semantics of returned objects
"""

from datetime import UTC, datetime, timedelta

import pytest

from batchmigrate.exceptions import (
    BatchJobNotFoundError,
    MigrationAlreadyExistsError,
    MigrationNotFoundError,
)
from batchmigrate.models import (
    BatchJobStatus,
    BatchRange,
    MigrationDefinition,
    MigrationStatus,
)
from batchmigrate.stores.in_memory import InMemoryMigrationStore
from batchmigrate.stores.interface import MigrationStore

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def definition(**overrides) -> MigrationDefinition:
    values = {
        "job_class_name": "CopyColumn",
        "table_name": "events",
        "column_name": "id",
        "job_arguments": ["payload"],
        "max_value": 1000,
        "batch_size": 100,
        "sub_batch_size": 10,
    }
    values.update(overrides)
    return MigrationDefinition(**values)


@pytest.fixture
def store() -> InMemoryMigrationStore:
    return InMemoryMigrationStore(enable_tracing=False)


class TestMigrations:
    """Tests for migration persistence."""

    def test_satisfies_protocol(self, store: InMemoryMigrationStore) -> None:
        assert isinstance(store, MigrationStore)

    async def test_create_assigns_sequential_ids(self, store: InMemoryMigrationStore) -> None:
        first = await store.create_migration(
            definition(), status=MigrationStatus.PAUSED, now=NOW
        )
        second = await store.create_migration(
            definition(table_name="users"), status=MigrationStatus.PAUSED, now=NOW
        )

        assert (first.id, second.id) == (1, 2)
        assert first.created_at == NOW

    async def test_identity_is_unique(self, store: InMemoryMigrationStore) -> None:
        existing = await store.create_migration(
            definition(), status=MigrationStatus.PAUSED, now=NOW
        )

        with pytest.raises(MigrationAlreadyExistsError) as exc_info:
            await store.create_migration(
                definition(database_schema="ci"), status=MigrationStatus.PAUSED, now=NOW
            )

        assert exc_info.value.existing_migration_id == existing.id

    async def test_different_arguments_are_different_migrations(
        self, store: InMemoryMigrationStore
    ) -> None:
        await store.create_migration(definition(), status=MigrationStatus.PAUSED, now=NOW)
        await store.create_migration(
            definition(job_arguments=["other"]), status=MigrationStatus.PAUSED, now=NOW
        )

        assert len(await store.list_migrations()) == 2

    async def test_get_missing_migration(self, store: InMemoryMigrationStore) -> None:
        assert await store.get_migration(99) is None

    async def test_returns_copies(self, store: InMemoryMigrationStore) -> None:
        migration = await store.create_migration(
            definition(), status=MigrationStatus.PAUSED, now=NOW
        )

        migration.status = MigrationStatus.ACTIVE
        migration.job_arguments.append("mutated")

        stored = await store.get_migration(migration.id)
        assert stored is not None
        assert stored.status == MigrationStatus.PAUSED
        assert stored.job_arguments == ["payload"]

    async def test_update_migration(self, store: InMemoryMigrationStore) -> None:
        migration = await store.create_migration(
            definition(), status=MigrationStatus.PAUSED, now=NOW
        )
        migration.status = MigrationStatus.ACTIVE
        migration.batch_size = 200

        await store.update_migration(migration)

        stored = await store.get_migration(migration.id)
        assert stored is not None
        assert stored.status == MigrationStatus.ACTIVE
        assert stored.batch_size == 200

    async def test_update_missing_migration(self, store: InMemoryMigrationStore) -> None:
        migration = await store.create_migration(
            definition(), status=MigrationStatus.PAUSED, now=NOW
        )
        await store.clear()

        with pytest.raises(MigrationNotFoundError):
            await store.update_migration(migration)

    async def test_update_batch_sizing_leaves_status_and_hold(
        self, store: InMemoryMigrationStore
    ) -> None:
        migration = await store.create_migration(
            definition(), status=MigrationStatus.PAUSED, now=NOW
        )
        migration.on_hold_until = NOW + timedelta(minutes=10)
        await store.update_migration(migration)

        later = NOW + timedelta(minutes=1)
        await store.update_batch_sizing(migration.id, batch_size=250, sub_batch_size=25, now=later)

        stored = await store.get_migration(migration.id)
        assert stored is not None
        assert (stored.batch_size, stored.sub_batch_size) == (250, 25)
        assert stored.updated_at == later
        assert stored.status == MigrationStatus.PAUSED
        assert stored.on_hold_until == NOW + timedelta(minutes=10)

    async def test_update_batch_sizing_of_missing_migration(
        self, store: InMemoryMigrationStore
    ) -> None:
        with pytest.raises(MigrationNotFoundError):
            await store.update_batch_sizing(99, batch_size=10, sub_batch_size=1, now=NOW)

    async def test_find_for_configuration(self, store: InMemoryMigrationStore) -> None:
        migration = await store.create_migration(
            definition(), status=MigrationStatus.PAUSED, now=NOW
        )

        found = await store.find_for_configuration("main", "CopyColumn", "events", "id", ["payload"])
        assert found is not None
        assert found.id == migration.id

        assert await store.find_for_configuration("ci", "CopyColumn", "events", "id", ["payload"]) is None
        assert await store.find_for_configuration("main", "CopyColumn", "events", "id", []) is None

    async def test_list_migrations_filters(self, store: InMemoryMigrationStore) -> None:
        await store.create_migration(definition(), status=MigrationStatus.ACTIVE, now=NOW)
        await store.create_migration(
            definition(table_name="b"), status=MigrationStatus.FINISHED, now=NOW
        )
        await store.create_migration(
            definition(table_name="c", database_schema="ci"),
            status=MigrationStatus.PAUSED,
            now=NOW,
        )

        queued = await store.list_migrations(
            statuses=[MigrationStatus.ACTIVE, MigrationStatus.PAUSED]
        )
        assert [m.id for m in queued] == [1, 3]

        main_only = await store.list_migrations(schemas=["main"])
        assert [m.id for m in main_only] == [1, 2]


class TestActiveMigration:
    """Tests for executor selection."""

    async def test_first_active_in_queue_order(self, store: InMemoryMigrationStore) -> None:
        await store.create_migration(definition(), status=MigrationStatus.PAUSED, now=NOW)
        await store.create_migration(
            definition(table_name="b"), status=MigrationStatus.ACTIVE, now=NOW
        )
        await store.create_migration(
            definition(table_name="c"), status=MigrationStatus.ACTIVE, now=NOW
        )

        selected = await store.active_migration(NOW)

        assert selected is not None
        assert selected.id == 2

    async def test_skips_held_migrations(self, store: InMemoryMigrationStore) -> None:
        held = await store.create_migration(definition(), status=MigrationStatus.ACTIVE, now=NOW)
        held.on_hold_until = NOW + timedelta(minutes=10)
        await store.update_migration(held)
        await store.create_migration(
            definition(table_name="b"), status=MigrationStatus.ACTIVE, now=NOW
        )

        selected = await store.active_migration(NOW)
        assert selected is not None
        assert selected.id == 2

        later = await store.active_migration(NOW + timedelta(minutes=11))
        assert later is not None
        assert later.id == held.id

    async def test_filters_schemas(self, store: InMemoryMigrationStore) -> None:
        await store.create_migration(
            definition(database_schema="ci"), status=MigrationStatus.ACTIVE, now=NOW
        )

        assert await store.active_migration(NOW, schemas=["main"]) is None
        assert await store.active_migration(NOW, schemas=["ci"]) is not None

    async def test_none_when_nothing_active(self, store: InMemoryMigrationStore) -> None:
        await store.create_migration(definition(), status=MigrationStatus.FINISHED, now=NOW)

        assert await store.active_migration(NOW) is None


class TestJobs:
    """Tests for batch job persistence."""

    async def _migration(self, store: InMemoryMigrationStore):
        return await store.create_migration(definition(), status=MigrationStatus.ACTIVE, now=NOW)

    async def test_create_job(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)

        job = await store.create_job(migration.new_job(BatchRange(1, 100)), NOW)

        assert job.id == 1
        assert job.status == BatchJobStatus.PENDING
        assert job.created_at == NOW
        assert (job.batch_size, job.sub_batch_size) == (100, 10)

    async def test_create_job_for_missing_migration(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        await store.clear()

        with pytest.raises(MigrationNotFoundError):
            await store.create_job(migration.new_job(BatchRange(1, 100)), NOW)

    async def test_last_job_is_greatest_max_value(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        await store.create_job(migration.new_job(BatchRange(101, 200)), NOW)
        await store.create_job(migration.new_job(BatchRange(1, 100)), NOW)

        last = await store.last_job(migration.id)

        assert last is not None
        assert last.max_value == 200

    async def test_last_job_none(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        assert await store.last_job(migration.id) is None

    async def test_list_jobs_paging(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        for i in range(5):
            await store.create_job(
                migration.new_job(BatchRange(i * 10 + 1, i * 10 + 10), status=BatchJobStatus.FAILED),
                NOW,
            )

        first_page = await store.list_jobs(migration.id, [BatchJobStatus.FAILED], limit=2)
        second_page = await store.list_jobs(
            migration.id, [BatchJobStatus.FAILED], after_id=first_page[-1].id, limit=2
        )

        assert [j.id for j in first_page] == [1, 2]
        assert [j.id for j in second_page] == [3, 4]

    async def test_list_jobs_started_before(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        for i, started_at in enumerate([NOW - timedelta(hours=2), NOW, None]):
            job = await store.create_job(
                migration.new_job(
                    BatchRange(i * 10 + 1, i * 10 + 10), status=BatchJobStatus.RUNNING
                ),
                NOW,
            )
            job.started_at = started_at
            await store.update_job(job)

        stale = await store.list_jobs(
            migration.id, [BatchJobStatus.RUNNING], started_before=NOW - timedelta(hours=1)
        )

        assert [j.id for j in stale] == [1]

    async def test_count_jobs(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        await store.create_job(migration.new_job(BatchRange(1, 10)), NOW - timedelta(hours=1))
        await store.create_job(
            migration.new_job(BatchRange(11, 20), status=BatchJobStatus.FAILED), NOW
        )

        assert await store.count_jobs(migration.id) == 2
        assert await store.count_jobs(migration.id, [BatchJobStatus.FAILED]) == 1
        assert await store.count_jobs(migration.id, created_since=NOW) == 1

    async def test_count_jobs_by_status(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        await store.create_job(migration.new_job(BatchRange(1, 10)), NOW)
        await store.create_job(
            migration.new_job(BatchRange(11, 20), status=BatchJobStatus.FAILED), NOW
        )
        await store.create_job(
            migration.new_job(BatchRange(21, 30), status=BatchJobStatus.FAILED), NOW
        )

        counts = await store.count_jobs_by_status(migration.id)

        assert counts == {BatchJobStatus.PENDING: 1, BatchJobStatus.FAILED: 2}

    async def test_update_job(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        job = await store.create_job(migration.new_job(BatchRange(1, 10)), NOW)
        job.status = BatchJobStatus.SUCCEEDED
        job.attempts = 1

        await store.update_job(job)

        stored = await store.get_job(job.id)
        assert stored is not None
        assert stored.status == BatchJobStatus.SUCCEEDED
        assert stored.attempts == 1

    async def test_update_missing_job(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        job = await store.create_job(migration.new_job(BatchRange(1, 10)), NOW)
        job.id = 99

        with pytest.raises(BatchJobNotFoundError):
            await store.update_job(job)

    async def test_recent_successful_jobs(self, store: InMemoryMigrationStore) -> None:
        migration = await self._migration(store)
        for i in range(3):
            job = await store.create_job(migration.new_job(BatchRange(i * 10 + 1, i * 10 + 10)), NOW)
            job.status = BatchJobStatus.SUCCEEDED
            job.started_at = NOW
            job.finished_at = NOW + timedelta(minutes=3 - i)
            await store.update_job(job)
        await store.create_job(migration.new_job(BatchRange(31, 40)), NOW)

        recent = await store.recent_successful_jobs(migration.id, limit=2)

        assert [j.id for j in recent] == [1, 2]

    async def test_successful_rows_counts(self, store: InMemoryMigrationStore) -> None:
        first = await self._migration(store)
        second = await store.create_migration(
            definition(table_name="users"), status=MigrationStatus.ACTIVE, now=NOW
        )
        await store.create_job(
            first.new_job(BatchRange(1, 100), status=BatchJobStatus.SUCCEEDED), NOW
        )
        await store.create_job(
            first.new_job(BatchRange(101, 200), status=BatchJobStatus.SUCCEEDED), NOW
        )
        await store.create_job(
            first.new_job(BatchRange(201, 300), status=BatchJobStatus.FAILED), NOW
        )
        await store.create_job(second.new_job(BatchRange(1, 100)), NOW)

        counts = await store.successful_rows_counts([first.id, second.id])

        assert counts == {first.id: 200}
