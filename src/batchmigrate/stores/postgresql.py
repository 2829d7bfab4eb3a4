"""
PostgreSQL migration store.

Persists migrations and batch jobs in the tables created by
``batchmigrate.schema.get_schema()`` using SQLAlchemy async core.

Concurrency:
    ``active_migration`` selects with ``FOR UPDATE SKIP LOCKED``. When the
    store is given an AsyncConnection inside a transaction, the selected
    row stays locked until that transaction ends, so concurrent executors
    never pick the same migration. With an AsyncEngine the lock only lasts
    for the select; pair the runner with an advisory lock manager in that
    case.

Usage:
    >>> store = PostgreSQLMigrationStore(engine)
    >>> migration = await store.create_migration(
    ...     definition, status=MigrationStatus.ACTIVE, now=datetime.now(UTC)
    ... )
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

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
    ATTR_DB_SYSTEM,
    ATTR_JOB_ID,
    ATTR_MIGRATION_ID,
    Tracer,
    create_tracer,
)
from batchmigrate.stores._connection import execute_with_connection

MIGRATIONS_TABLE = "batched_background_migrations"
JOBS_TABLE = "batched_background_migration_jobs"

_MIGRATION_COLUMNS = """
    id, job_class_name, batch_class_name, table_name, column_name,
    job_arguments, database_schema, min_value, max_value,
    batch_size, sub_batch_size, interval_seconds, pause_ms,
    min_batch_size, max_batch_size, total_tuple_count,
    status, started_at, last_retried_at, on_hold_until,
    created_at, updated_at
"""

_JOB_COLUMNS = """
    id, migration_id, min_value, max_value,
    batch_size, sub_batch_size, pause_ms,
    status, attempts, last_error,
    created_at, started_at, finished_at
"""


class PostgreSQLMigrationStore:
    """
    PostgreSQL implementation of MigrationStore.

    Args:
        conn: Database connection or engine
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    # =========================================================================
    # Migrations
    # =========================================================================

    async def create_migration(
        self,
        definition: MigrationDefinition,
        *,
        status: MigrationStatus,
        now: datetime,
    ) -> BatchedMigration:
        """
        Insert a migration row.

        Raises:
            MigrationAlreadyExistsError: If the identity tuple is taken
        """
        with self._tracer.span(
            "batchmigrate.store.create_migration",
            {ATTR_DB_SYSTEM: "postgresql"},
        ):
            existing = await self._find_by_identity(*definition.identity)
            if existing is not None:
                raise MigrationAlreadyExistsError(definition.identity, existing.id)

            query = text(f"""
                INSERT INTO {MIGRATIONS_TABLE} (
                    job_class_name, batch_class_name, table_name, column_name,
                    job_arguments, database_schema, min_value, max_value,
                    batch_size, sub_batch_size, interval_seconds, pause_ms,
                    min_batch_size, max_batch_size, total_tuple_count,
                    status, created_at, updated_at
                ) VALUES (
                    :job_class_name, :batch_class_name, :table_name, :column_name,
                    CAST(:job_arguments AS JSONB), :database_schema, :min_value, :max_value,
                    :batch_size, :sub_batch_size, :interval_seconds, :pause_ms,
                    :min_batch_size, :max_batch_size, :total_tuple_count,
                    :status, :created_at, :updated_at
                )
                RETURNING id
            """)  # nosec B608 - table name is a module constant

            params = {
                "job_class_name": definition.job_class_name,
                "batch_class_name": definition.batch_class_name,
                "table_name": definition.table_name,
                "column_name": definition.column_name,
                "job_arguments": json.dumps(list(definition.job_arguments)),
                "database_schema": definition.database_schema,
                "min_value": definition.min_value,
                "max_value": definition.max_value,
                "batch_size": definition.batch_size,
                "sub_batch_size": definition.sub_batch_size,
                "interval_seconds": definition.interval.total_seconds(),
                "pause_ms": definition.pause_ms,
                "min_batch_size": definition.min_batch_size,
                "max_batch_size": definition.max_batch_size,
                "total_tuple_count": definition.total_tuple_count,
                "status": status.value,
                "created_at": now,
                "updated_at": now,
            }

            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    result = await conn.execute(query, params)
                    migration_id = result.scalar_one()
            except IntegrityError as e:
                # Another process queued the same identity after our check
                if "uq_bbm_configuration" in str(e).lower():
                    raise MigrationAlreadyExistsError(definition.identity) from e
                raise

            return BatchedMigration.from_definition(migration_id, definition, status=status, now=now)

    async def get_migration(self, migration_id: int) -> BatchedMigration | None:
        with self._tracer.span(
            "batchmigrate.store.get_migration",
            {ATTR_MIGRATION_ID: migration_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"""
                SELECT {_MIGRATION_COLUMNS}
                FROM {MIGRATIONS_TABLE}
                WHERE id = :id
            """)  # nosec B608 - no user input in SQL construction

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"id": migration_id})
                row = result.fetchone()

            return self._row_to_migration(row) if row is not None else None

    async def _find_by_identity(
        self,
        job_class_name: str,
        table_name: str,
        column_name: str,
        job_arguments: Sequence[Any],
        database_schema: str | None = None,
    ) -> BatchedMigration | None:
        conditions = [
            "job_class_name = :job_class_name",
            "table_name = :table_name",
            "column_name = :column_name",
            "job_arguments = CAST(:job_arguments AS JSONB)",
        ]
        params: dict[str, Any] = {
            "job_class_name": job_class_name,
            "table_name": table_name,
            "column_name": column_name,
            "job_arguments": json.dumps(list(job_arguments)),
        }
        if database_schema is not None:
            conditions.append("database_schema = :database_schema")
            params["database_schema"] = database_schema

        query = text(f"""
            SELECT {_MIGRATION_COLUMNS}
            FROM {MIGRATIONS_TABLE}
            WHERE {' AND '.join(conditions)}
            ORDER BY id ASC
            LIMIT 1
        """)  # nosec B608 - conditions are hardcoded

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            row = result.fetchone()

        return self._row_to_migration(row) if row is not None else None

    async def find_for_configuration(
        self,
        database_schema: str,
        job_class_name: str,
        table_name: str,
        column_name: str,
        job_arguments: Sequence[Any],
    ) -> BatchedMigration | None:
        with self._tracer.span(
            "batchmigrate.store.find_for_configuration",
            {ATTR_DB_SYSTEM: "postgresql"},
        ):
            return await self._find_by_identity(
                job_class_name,
                table_name,
                column_name,
                job_arguments,
                database_schema=database_schema,
            )

    async def list_migrations(
        self,
        statuses: Sequence[MigrationStatus] | None = None,
        schemas: Sequence[str] | None = None,
    ) -> list[BatchedMigration]:
        with self._tracer.span(
            "batchmigrate.store.list_migrations",
            {ATTR_DB_SYSTEM: "postgresql"},
        ):
            conditions = ["TRUE"]
            params: dict[str, Any] = {}
            if statuses is not None:
                conditions.append("status = ANY(:statuses)")
                params["statuses"] = [status.value for status in statuses]
            if schemas is not None:
                conditions.append("database_schema = ANY(:schemas)")
                params["schemas"] = list(schemas)

            query = text(f"""
                SELECT {_MIGRATION_COLUMNS}
                FROM {MIGRATIONS_TABLE}
                WHERE {' AND '.join(conditions)}
                ORDER BY id ASC
            """)  # nosec B608 - conditions are hardcoded

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                rows = result.fetchall()

            return [self._row_to_migration(row) for row in rows]

    async def active_migration(
        self,
        now: datetime,
        schemas: Sequence[str] | None = None,
    ) -> BatchedMigration | None:
        """
        Select and lock the first executable migration in queue order.

        Rows locked by another transaction are skipped.
        """
        with self._tracer.span(
            "batchmigrate.store.active_migration",
            {ATTR_DB_SYSTEM: "postgresql"},
        ):
            conditions = [
                "status = :status",
                "(on_hold_until IS NULL OR on_hold_until < :now)",
            ]
            params: dict[str, Any] = {"status": MigrationStatus.ACTIVE.value, "now": now}
            if schemas is not None:
                conditions.append("database_schema = ANY(:schemas)")
                params["schemas"] = list(schemas)

            query = text(f"""
                SELECT {_MIGRATION_COLUMNS}
                FROM {MIGRATIONS_TABLE}
                WHERE {' AND '.join(conditions)}
                ORDER BY id ASC
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            """)  # nosec B608 - conditions are hardcoded

            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                row = result.fetchone()

            return self._row_to_migration(row) if row is not None else None

    async def update_migration(self, migration: BatchedMigration) -> None:
        """
        Persist status, timestamps, hold and sizing.

        Raises:
            MigrationNotFoundError: If the row does not exist
        """
        with self._tracer.span(
            "batchmigrate.store.update_migration",
            {ATTR_MIGRATION_ID: migration.id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"""
                UPDATE {MIGRATIONS_TABLE}
                SET status = :status,
                    batch_size = :batch_size,
                    sub_batch_size = :sub_batch_size,
                    started_at = :started_at,
                    last_retried_at = :last_retried_at,
                    on_hold_until = :on_hold_until,
                    updated_at = :updated_at
                WHERE id = :id
            """)  # nosec B608 - table name is a module constant

            params = {
                "id": migration.id,
                "status": migration.status.value,
                "batch_size": migration.batch_size,
                "sub_batch_size": migration.sub_batch_size,
                "started_at": migration.started_at,
                "last_retried_at": migration.last_retried_at,
                "on_hold_until": migration.on_hold_until,
                "updated_at": migration.updated_at,
            }

            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise MigrationNotFoundError(migration.id)

    async def update_batch_sizing(
        self,
        migration_id: int,
        *,
        batch_size: int,
        sub_batch_size: int,
        now: datetime,
    ) -> None:
        """
        Persist batch_size and sub_batch_size only.

        Raises:
            MigrationNotFoundError: If the row does not exist
        """
        with self._tracer.span(
            "batchmigrate.store.update_batch_sizing",
            {ATTR_MIGRATION_ID: migration_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"""
                UPDATE {MIGRATIONS_TABLE}
                SET batch_size = :batch_size,
                    sub_batch_size = :sub_batch_size,
                    updated_at = :updated_at
                WHERE id = :id
            """)  # nosec B608 - table name is a module constant

            params = {
                "id": migration_id,
                "batch_size": batch_size,
                "sub_batch_size": sub_batch_size,
                "updated_at": now,
            }

            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise MigrationNotFoundError(migration_id)

    # =========================================================================
    # Batch jobs
    # =========================================================================

    async def create_job(self, job: NewBatchedJob, now: datetime) -> BatchedJob:
        with self._tracer.span(
            "batchmigrate.store.create_job",
            {ATTR_MIGRATION_ID: job.migration_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"""
                INSERT INTO {JOBS_TABLE} (
                    migration_id, min_value, max_value,
                    batch_size, sub_batch_size, pause_ms,
                    status, attempts, created_at
                ) VALUES (
                    :migration_id, :min_value, :max_value,
                    :batch_size, :sub_batch_size, :pause_ms,
                    :status, :attempts, :created_at
                )
                RETURNING id
            """)  # nosec B608 - table name is a module constant

            params = {
                "migration_id": job.migration_id,
                "min_value": job.min_value,
                "max_value": job.max_value,
                "batch_size": job.batch_size,
                "sub_batch_size": job.sub_batch_size,
                "pause_ms": job.pause_ms,
                "status": job.status.value,
                "attempts": job.attempts,
                "created_at": now,
            }

            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                job_id = result.scalar_one()

            return BatchedJob(
                id=job_id,
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

    async def get_job(self, job_id: int) -> BatchedJob | None:
        query = text(f"""
            SELECT {_JOB_COLUMNS}
            FROM {JOBS_TABLE}
            WHERE id = :id
        """)  # nosec B608 - no user input in SQL construction

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, {"id": job_id})
            row = result.fetchone()

        return self._row_to_job(row) if row is not None else None

    async def last_job(self, migration_id: int) -> BatchedJob | None:
        query = text(f"""
            SELECT {_JOB_COLUMNS}
            FROM {JOBS_TABLE}
            WHERE migration_id = :migration_id
            ORDER BY max_value DESC, id DESC
            LIMIT 1
        """)  # nosec B608 - no user input in SQL construction

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, {"migration_id": migration_id})
            row = result.fetchone()

        return self._row_to_job(row) if row is not None else None

    async def list_jobs(
        self,
        migration_id: int,
        statuses: Sequence[BatchJobStatus] | None = None,
        *,
        after_id: int | None = None,
        limit: int | None = None,
        started_before: datetime | None = None,
    ) -> list[BatchedJob]:
        with self._tracer.span(
            "batchmigrate.store.list_jobs",
            {ATTR_MIGRATION_ID: migration_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            conditions = ["migration_id = :migration_id"]
            params: dict[str, Any] = {"migration_id": migration_id}
            if statuses is not None:
                conditions.append("status = ANY(:statuses)")
                params["statuses"] = [status.value for status in statuses]
            if after_id is not None:
                conditions.append("id > :after_id")
                params["after_id"] = after_id
            if started_before is not None:
                conditions.append("started_at < :started_before")
                params["started_before"] = started_before
            limit_clause = f"LIMIT {int(limit)}" if limit is not None else ""

            query = text(f"""
                SELECT {_JOB_COLUMNS}
                FROM {JOBS_TABLE}
                WHERE {' AND '.join(conditions)}
                ORDER BY id ASC
                {limit_clause}
            """)  # nosec B608 - conditions are hardcoded; limit is an integer

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                rows = result.fetchall()

            return [self._row_to_job(row) for row in rows]

    async def count_jobs(
        self,
        migration_id: int,
        statuses: Sequence[BatchJobStatus] | None = None,
        *,
        created_since: datetime | None = None,
    ) -> int:
        conditions = ["migration_id = :migration_id"]
        params: dict[str, Any] = {"migration_id": migration_id}
        if statuses is not None:
            conditions.append("status = ANY(:statuses)")
            params["statuses"] = [status.value for status in statuses]
        if created_since is not None:
            conditions.append("created_at >= :created_since")
            params["created_since"] = created_since

        query = text(f"""
            SELECT COUNT(*)
            FROM {JOBS_TABLE}
            WHERE {' AND '.join(conditions)}
        """)  # nosec B608 - conditions are hardcoded

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            return int(result.scalar() or 0)

    async def count_jobs_by_status(self, migration_id: int) -> dict[BatchJobStatus, int]:
        query = text(f"""
            SELECT status, COUNT(*)
            FROM {JOBS_TABLE}
            WHERE migration_id = :migration_id
            GROUP BY status
        """)  # nosec B608 - no user input in SQL construction

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, {"migration_id": migration_id})
            rows = result.fetchall()

        return {BatchJobStatus(row[0]): int(row[1]) for row in rows}

    async def recent_successful_jobs(self, migration_id: int, limit: int) -> list[BatchedJob]:
        query = text(f"""
            SELECT {_JOB_COLUMNS}
            FROM {JOBS_TABLE}
            WHERE migration_id = :migration_id
              AND status = :status
              AND finished_at IS NOT NULL
            ORDER BY finished_at DESC, id DESC
            LIMIT :limit
        """)  # nosec B608 - no user input in SQL construction

        params = {
            "migration_id": migration_id,
            "status": BatchJobStatus.SUCCEEDED.value,
            "limit": limit,
        }

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()

        return [self._row_to_job(row) for row in rows]

    async def update_job(self, job: BatchedJob) -> None:
        """
        Persist range, sizing, status and timestamps of a job.

        Raises:
            BatchJobNotFoundError: If the row does not exist
        """
        with self._tracer.span(
            "batchmigrate.store.update_job",
            {ATTR_JOB_ID: job.id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"""
                UPDATE {JOBS_TABLE}
                SET min_value = :min_value,
                    max_value = :max_value,
                    batch_size = :batch_size,
                    sub_batch_size = :sub_batch_size,
                    pause_ms = :pause_ms,
                    status = :status,
                    attempts = :attempts,
                    last_error = :last_error,
                    started_at = :started_at,
                    finished_at = :finished_at
                WHERE id = :id
            """)  # nosec B608 - table name is a module constant

            params = {
                "id": job.id,
                "min_value": job.min_value,
                "max_value": job.max_value,
                "batch_size": job.batch_size,
                "sub_batch_size": job.sub_batch_size,
                "pause_ms": job.pause_ms,
                "status": job.status.value,
                "attempts": job.attempts,
                "last_error": job.last_error,
                "started_at": job.started_at,
                "finished_at": job.finished_at,
            }

            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise BatchJobNotFoundError(job.id)

    async def successful_rows_counts(self, migration_ids: Sequence[int]) -> dict[int, int]:
        if not migration_ids:
            return {}

        query = text(f"""
            SELECT migration_id, SUM(batch_size)
            FROM {JOBS_TABLE}
            WHERE migration_id = ANY(:migration_ids)
              AND status = :status
            GROUP BY migration_id
        """)  # nosec B608 - no user input in SQL construction

        params = {
            "migration_ids": list(migration_ids),
            "status": BatchJobStatus.SUCCEEDED.value,
        }

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()

        return {int(row[0]): int(row[1]) for row in rows}

    # =========================================================================
    # Helper methods
    # =========================================================================

    def _row_to_migration(self, row: Sequence[Any]) -> BatchedMigration:
        """Convert a migration row (selected with _MIGRATION_COLUMNS)."""
        job_arguments = row[5] if isinstance(row[5], list) else json.loads(row[5] or "[]")
        return BatchedMigration(
            id=row[0],
            job_class_name=row[1],
            batch_class_name=row[2],
            table_name=row[3],
            column_name=row[4],
            job_arguments=job_arguments,
            database_schema=row[6],
            min_value=row[7],
            max_value=row[8],
            batch_size=row[9],
            sub_batch_size=row[10],
            interval=timedelta(seconds=row[11]),
            pause_ms=row[12],
            min_batch_size=row[13],
            max_batch_size=row[14],
            total_tuple_count=row[15],
            status=MigrationStatus(row[16]),
            started_at=row[17],
            last_retried_at=row[18],
            on_hold_until=row[19],
            created_at=row[20],
            updated_at=row[21],
        )

    def _row_to_job(self, row: Sequence[Any]) -> BatchedJob:
        """Convert a job row (selected with _JOB_COLUMNS)."""
        return BatchedJob(
            id=row[0],
            migration_id=row[1],
            min_value=row[2],
            max_value=row[3],
            batch_size=row[4],
            sub_batch_size=row[5],
            pause_ms=row[6],
            status=BatchJobStatus(row[7]),
            attempts=row[8] or 0,
            last_error=row[9],
            created_at=row[10],
            started_at=row[11],
            finished_at=row[12],
        )


__all__ = ["PostgreSQLMigrationStore", "MIGRATIONS_TABLE", "JOBS_TABLE"]
