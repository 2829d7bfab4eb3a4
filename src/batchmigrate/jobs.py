"""
Job class contract.

A job class performs the actual data change for one batch. It receives a
BatchContext describing the key range and sizing, walks the range in
sub-batches, and pauses between them to bound lock duration and replica
lag. Success is returning normally; failure is raising. Job classes must
be idempotent over their range since failed ranges are retried.

Example:
    >>> @register_job_class(name="CopyColumn")
    ... class CopyColumn:
    ...     def __init__(self, engine):
    ...         self._engine = engine
    ...
    ...     async def perform(self, context: BatchContext) -> None:
    ...         source, target = context.job_arguments
    ...         for sub_batch in context.sub_batches():
    ...             async with self._engine.begin() as conn:
    ...                 await conn.execute(...)
    ...             await context.pause()
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from batchmigrate.models import BatchedJob, BatchedMigration, BatchRange


@dataclass(frozen=True)
class BatchContext:
    """
    Everything a job class needs to process one batch.

    Attributes:
        migration_id: Owning migration.
        job_id: The batch job being executed.
        table_name: Table being migrated.
        column_name: Key column the range refers to.
        min_value: First key of the batch (inclusive).
        max_value: Last key of the batch (inclusive).
        batch_size: Rows in the batch.
        sub_batch_size: Rows per sub-batch.
        pause_ms: Pause between sub-batches in milliseconds.
        job_arguments: Migration-specific arguments.
    """

    migration_id: int
    job_id: int
    table_name: str
    column_name: str
    min_value: int
    max_value: int
    batch_size: int
    sub_batch_size: int
    pause_ms: int
    job_arguments: list[Any] = field(default_factory=list)

    @classmethod
    def for_job(cls, migration: BatchedMigration, job: BatchedJob) -> BatchContext:
        return cls(
            migration_id=migration.id,
            job_id=job.id,
            table_name=migration.table_name,
            column_name=migration.column_name,
            min_value=job.min_value,
            max_value=job.max_value,
            batch_size=job.batch_size,
            sub_batch_size=job.sub_batch_size,
            pause_ms=job.pause_ms,
            job_arguments=list(migration.job_arguments),
        )

    @property
    def batch_range(self) -> BatchRange:
        return BatchRange(self.min_value, self.max_value)

    def sub_batches(self) -> Iterator[BatchRange]:
        """Split the batch into consecutive ranges of ``sub_batch_size`` keys."""
        step = max(1, self.sub_batch_size)
        start = self.min_value
        while start <= self.max_value:
            end = min(start + step - 1, self.max_value)
            yield BatchRange(start, end)
            start = end + 1

    async def pause(self) -> None:
        if self.pause_ms > 0:
            await asyncio.sleep(self.pause_ms / 1000)


@runtime_checkable
class BatchJobClass(Protocol):
    """Performs the data change for one batch. Raise to report failure."""

    async def perform(self, context: BatchContext) -> None: ...


__all__ = ["BatchContext", "BatchJobClass"]
