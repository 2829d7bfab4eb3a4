"""
Store protocol for batched migrations and their batch jobs.

Two implementations ship with the package:
- InMemoryMigrationStore: for tests and single-process tools
- PostgreSQLMigrationStore: durable storage via SQLAlchemy async
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from batchmigrate.models import (
    BatchedJob,
    BatchedMigration,
    BatchJobStatus,
    MigrationDefinition,
    MigrationStatus,
    NewBatchedJob,
)


@runtime_checkable
class MigrationStore(Protocol):
    """
    Persistence for migrations and batch jobs.

    Ordering contracts:
    - Migrations are listed in queue order (id ascending).
    - Jobs are listed by id ascending unless stated otherwise.
    - The last job of a migration is the one with the greatest max_value.
    """

    async def create_migration(
        self,
        definition: MigrationDefinition,
        *,
        status: MigrationStatus,
        now: datetime,
    ) -> BatchedMigration:
        """
        Persist a new migration and assign its ID.

        Raises:
            MigrationAlreadyExistsError: If the identity tuple is taken.
        """
        ...

    async def get_migration(self, migration_id: int) -> BatchedMigration | None:
        """Get a migration by ID, or None."""
        ...

    async def find_for_configuration(
        self,
        database_schema: str,
        job_class_name: str,
        table_name: str,
        column_name: str,
        job_arguments: Sequence[Any],
    ) -> BatchedMigration | None:
        """Find the migration with the given schema and identity."""
        ...

    async def list_migrations(
        self,
        statuses: Sequence[MigrationStatus] | None = None,
        schemas: Sequence[str] | None = None,
    ) -> list[BatchedMigration]:
        """List migrations in queue order, optionally filtered."""
        ...

    async def active_migration(
        self,
        now: datetime,
        schemas: Sequence[str] | None = None,
    ) -> BatchedMigration | None:
        """
        First executable migration in queue order.

        Executable means status active and on_hold_until null or earlier
        than ``now``. Must be safe to call from concurrent executors.
        """
        ...

    async def update_migration(self, migration: BatchedMigration) -> None:
        """Persist the mutable fields of a migration."""
        ...

    async def update_batch_sizing(
        self,
        migration_id: int,
        *,
        batch_size: int,
        sub_batch_size: int,
        now: datetime,
    ) -> None:
        """
        Persist only the batch sizing of a migration.

        Status and hold are left untouched, so a concurrent pause or hold
        is never overwritten.
        """
        ...

    async def create_job(self, job: NewBatchedJob, now: datetime) -> BatchedJob:
        """Persist a new batch job created at ``now`` and assign its ID."""
        ...

    async def get_job(self, job_id: int) -> BatchedJob | None:
        ...

    async def last_job(self, migration_id: int) -> BatchedJob | None:
        """The job with the greatest max_value, or None."""
        ...

    async def list_jobs(
        self,
        migration_id: int,
        statuses: Sequence[BatchJobStatus] | None = None,
        *,
        after_id: int | None = None,
        limit: int | None = None,
        started_before: datetime | None = None,
    ) -> list[BatchedJob]:
        """
        List jobs by id ascending.

        ``after_id`` and ``limit`` page through large job sets by key.
        ``started_before`` keeps jobs with started_at earlier than it.
        """
        ...

    async def count_jobs(
        self,
        migration_id: int,
        statuses: Sequence[BatchJobStatus] | None = None,
        *,
        created_since: datetime | None = None,
    ) -> int:
        """Count jobs, optionally by status and created_at >= created_since."""
        ...

    async def count_jobs_by_status(self, migration_id: int) -> dict[BatchJobStatus, int]:
        """Job counts per status. Statuses without jobs may be omitted."""
        ...

    async def recent_successful_jobs(self, migration_id: int, limit: int) -> list[BatchedJob]:
        """Succeeded jobs, most recently finished first."""
        ...

    async def update_job(self, job: BatchedJob) -> None:
        """Persist the mutable fields of a job."""
        ...

    async def successful_rows_counts(self, migration_ids: Sequence[int]) -> dict[int, int]:
        """
        Sum of batch_size over succeeded jobs per migration.

        Migrations without succeeded jobs are absent from the result.
        """
        ...


__all__ = ["MigrationStore"]
