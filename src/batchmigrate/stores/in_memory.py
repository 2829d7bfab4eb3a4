"""
In-memory migration store.

Holds migrations and jobs in dictionaries guarded by an asyncio.Lock.
All data is lost when the process terminates. Returned objects are copies,
so callers must write changes back through update_migration/update_job,
the same as with the PostgreSQL store.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

from batchmigrate.exceptions import (
    BatchJobNotFoundError,
    MigrationAlreadyExistsError,
    MigrationNotFoundError,
)
from batchmigrate.models import (
    BatchedJob,
    BatchedMigration,
    BatchJobStatus,
    MigrationDefinition,
    MigrationStatus,
    NewBatchedJob,
)
from batchmigrate.observability import (
    ATTR_JOB_ID,
    ATTR_MIGRATION_ID,
    Tracer,
    create_tracer,
)


def _copy_migration(migration: BatchedMigration) -> BatchedMigration:
    return replace(migration, job_arguments=list(migration.job_arguments))


def _copy_job(job: BatchedJob) -> BatchedJob:
    return replace(job)


class InMemoryMigrationStore:
    """
    In-memory implementation of MigrationStore.

    Example:
        >>> store = InMemoryMigrationStore()
        >>> migration = await store.create_migration(
        ...     definition, status=MigrationStatus.ACTIVE, now=clock.now()
        ... )
        >>> await store.active_migration(clock.now())
        BatchedMigration[id: 1]
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._migrations: dict[int, BatchedMigration] = {}
        self._jobs: dict[int, BatchedJob] = {}
        self._next_migration_id = 1
        self._next_job_id = 1
        self._lock: asyncio.Lock = asyncio.Lock()

    async def create_migration(
        self,
        definition: MigrationDefinition,
        *,
        status: MigrationStatus,
        now: datetime,
    ) -> BatchedMigration:
        with self._tracer.span("batchmigrate.store.create_migration"):
            async with self._lock:
                for existing in self._migrations.values():
                    if existing.identity == definition.identity:
                        raise MigrationAlreadyExistsError(definition.identity, existing.id)

                migration = BatchedMigration.from_definition(
                    self._next_migration_id,
                    definition,
                    status=status,
                    now=now,
                )
                self._next_migration_id += 1
                self._migrations[migration.id] = migration
                return _copy_migration(migration)

    async def get_migration(self, migration_id: int) -> BatchedMigration | None:
        with self._tracer.span(
            "batchmigrate.store.get_migration",
            {ATTR_MIGRATION_ID: migration_id},
        ):
            async with self._lock:
                migration = self._migrations.get(migration_id)
                return _copy_migration(migration) if migration else None

    async def find_for_configuration(
        self,
        database_schema: str,
        job_class_name: str,
        table_name: str,
        column_name: str,
        job_arguments: Sequence[Any],
    ) -> BatchedMigration | None:
        identity = (job_class_name, table_name, column_name, list(job_arguments))
        async with self._lock:
            for migration in sorted(self._migrations.values(), key=lambda m: m.id):
                if migration.database_schema == database_schema and migration.identity == identity:
                    return _copy_migration(migration)
        return None

    async def list_migrations(
        self,
        statuses: Sequence[MigrationStatus] | None = None,
        schemas: Sequence[str] | None = None,
    ) -> list[BatchedMigration]:
        async with self._lock:
            return [
                _copy_migration(m)
                for m in sorted(self._migrations.values(), key=lambda m: m.id)
                if (statuses is None or m.status in statuses)
                and (schemas is None or m.database_schema in schemas)
            ]

    async def active_migration(
        self,
        now: datetime,
        schemas: Sequence[str] | None = None,
    ) -> BatchedMigration | None:
        with self._tracer.span("batchmigrate.store.active_migration"):
            async with self._lock:
                for migration in sorted(self._migrations.values(), key=lambda m: m.id):
                    if schemas is not None and migration.database_schema not in schemas:
                        continue
                    if migration.is_executable(now):
                        return _copy_migration(migration)
                return None

    async def update_migration(self, migration: BatchedMigration) -> None:
        with self._tracer.span(
            "batchmigrate.store.update_migration",
            {ATTR_MIGRATION_ID: migration.id},
        ):
            async with self._lock:
                if migration.id not in self._migrations:
                    raise MigrationNotFoundError(migration.id)
                self._migrations[migration.id] = _copy_migration(migration)

    async def update_batch_sizing(
        self,
        migration_id: int,
        *,
        batch_size: int,
        sub_batch_size: int,
        now: datetime,
    ) -> None:
        with self._tracer.span(
            "batchmigrate.store.update_batch_sizing",
            {ATTR_MIGRATION_ID: migration_id},
        ):
            async with self._lock:
                migration = self._migrations.get(migration_id)
                if migration is None:
                    raise MigrationNotFoundError(migration_id)
                migration.batch_size = batch_size
                migration.sub_batch_size = sub_batch_size
                migration.updated_at = now

    async def create_job(self, job: NewBatchedJob, now: datetime) -> BatchedJob:
        with self._tracer.span(
            "batchmigrate.store.create_job",
            {ATTR_MIGRATION_ID: job.migration_id},
        ):
            async with self._lock:
                if job.migration_id not in self._migrations:
                    raise MigrationNotFoundError(job.migration_id)
                created = BatchedJob(
                    id=self._next_job_id,
                    migration_id=job.migration_id,
                    min_value=job.min_value,
                    max_value=job.max_value,
                    batch_size=job.batch_size,
                    sub_batch_size=job.sub_batch_size,
                    pause_ms=job.pause_ms,
                    status=job.status,
                    attempts=job.attempts,
                    created_at=now,
                )
                self._next_job_id += 1
                self._jobs[created.id] = created
                return _copy_job(created)

    async def get_job(self, job_id: int) -> BatchedJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return _copy_job(job) if job else None

    def _jobs_of(self, migration_id: int) -> list[BatchedJob]:
        return sorted(
            (job for job in self._jobs.values() if job.migration_id == migration_id),
            key=lambda job: job.id,
        )

    async def last_job(self, migration_id: int) -> BatchedJob | None:
        async with self._lock:
            jobs = self._jobs_of(migration_id)
            if not jobs:
                return None
            return _copy_job(max(jobs, key=lambda job: (job.max_value, job.id)))

    async def list_jobs(
        self,
        migration_id: int,
        statuses: Sequence[BatchJobStatus] | None = None,
        *,
        after_id: int | None = None,
        limit: int | None = None,
        started_before: datetime | None = None,
    ) -> list[BatchedJob]:
        async with self._lock:
            jobs = [
                _copy_job(job)
                for job in self._jobs_of(migration_id)
                if (statuses is None or job.status in statuses)
                and (after_id is None or job.id > after_id)
                and (
                    started_before is None
                    or (job.started_at is not None and job.started_at < started_before)
                )
            ]
        return jobs if limit is None else jobs[:limit]

    async def count_jobs(
        self,
        migration_id: int,
        statuses: Sequence[BatchJobStatus] | None = None,
        *,
        created_since: datetime | None = None,
    ) -> int:
        async with self._lock:
            return sum(
                1
                for job in self._jobs_of(migration_id)
                if (statuses is None or job.status in statuses)
                and (
                    created_since is None
                    or (job.created_at is not None and job.created_at >= created_since)
                )
            )

    async def count_jobs_by_status(self, migration_id: int) -> dict[BatchJobStatus, int]:
        async with self._lock:
            return dict(Counter(job.status for job in self._jobs_of(migration_id)))

    async def recent_successful_jobs(self, migration_id: int, limit: int) -> list[BatchedJob]:
        async with self._lock:
            succeeded = [
                job
                for job in self._jobs_of(migration_id)
                if job.status == BatchJobStatus.SUCCEEDED and job.finished_at is not None
            ]
        succeeded.sort(key=lambda job: (job.finished_at, job.id), reverse=True)
        return [_copy_job(job) for job in succeeded[:limit]]

    async def update_job(self, job: BatchedJob) -> None:
        with self._tracer.span(
            "batchmigrate.store.update_job",
            {ATTR_JOB_ID: job.id, ATTR_MIGRATION_ID: job.migration_id},
        ):
            async with self._lock:
                if job.id not in self._jobs:
                    raise BatchJobNotFoundError(job.id)
                self._jobs[job.id] = _copy_job(job)

    async def successful_rows_counts(self, migration_ids: Sequence[int]) -> dict[int, int]:
        wanted = set(migration_ids)
        counts: dict[int, int] = {}
        async with self._lock:
            for job in self._jobs.values():
                if job.migration_id in wanted and job.status == BatchJobStatus.SUCCEEDED:
                    counts[job.migration_id] = counts.get(job.migration_id, 0) + job.batch_size
        return counts

    async def clear(self) -> None:
        """Remove all migrations and jobs and restart ID assignment."""
        async with self._lock:
            self._migrations.clear()
            self._jobs.clear()
            self._next_migration_id = 1
            self._next_job_id = 1


__all__ = ["InMemoryMigrationStore"]
