"""
Lease locks for batched migrations.

Example:
    >>> from batchmigrate.locks import PostgreSQLLockManager, migration_lock_key
    >>>
    >>> locks = PostgreSQLLockManager(session_factory)
    >>> runner = BatchedMigrationRunner(coordinator, lock_manager=locks)
"""

from batchmigrate.locks.in_memory import InMemoryLockManager
from batchmigrate.locks.interface import (
    LockAcquisitionError,
    LockInfo,
    LockManager,
    LockNotHeldError,
    migration_lock_key,
)
from batchmigrate.locks.postgresql import PostgreSQLLockManager

__all__ = [
    "LockAcquisitionError",
    "LockInfo",
    "LockManager",
    "LockNotHeldError",
    "InMemoryLockManager",
    "PostgreSQLLockManager",
    "migration_lock_key",
]
