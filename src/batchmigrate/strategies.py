"""
Batching strategies.

A batching strategy computes the next key range of a migration. It is
given the first key of the next batch (the previous job's max_value + 1,
or the migration's min_value) and the batch size, and returns the range
starting at that key or None when no work is left. Ranges must start at
the key they are given; that keeps job ranges contiguous.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from batchmigrate.models import BatchedMigration, BatchRange


@runtime_checkable
class BatchingStrategy(Protocol):
    """Computes the next BatchRange of a migration, or None when done."""

    async def next_range(
        self,
        migration: BatchedMigration,
        *,
        batch_min_value: int,
        batch_size: int,
    ) -> BatchRange | None: ...


class PrimaryKeyBatchingStrategy:
    """
    Dense integer key batching.

    Treats every key between the migration's bounds as present, so a batch
    of ``batch_size`` covers exactly ``batch_size`` keys. Tables with sparse
    keys should register a strategy that queries the table instead.

    Example:
        >>> strategy = PrimaryKeyBatchingStrategy()
        >>> await strategy.next_range(migration, batch_min_value=1, batch_size=100)
        BatchRange(min_value=1, max_value=100)
    """

    name = "primary_key"

    async def next_range(
        self,
        migration: BatchedMigration,
        *,
        batch_min_value: int,
        batch_size: int,
    ) -> BatchRange | None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        start = max(batch_min_value, migration.min_value)
        if start > migration.max_value:
            return None
        return BatchRange(start, min(start + batch_size - 1, migration.max_value))


__all__ = ["BatchingStrategy", "PrimaryKeyBatchingStrategy"]
