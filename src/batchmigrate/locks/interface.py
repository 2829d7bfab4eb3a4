"""
Lock manager protocol and shared lock types.

The runner leases a migration before dispatching one of its jobs so that
two executors never run jobs of the same migration at the same time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired lock.

    Attributes:
        key: The string key used to identify the lock
        lock_id: Numeric lock ID (derived from the key for PostgreSQL)
        acquired_at: When the lock was acquired
        holder_id: Optional identifier for the lock holder (for debugging)
    """

    key: str
    lock_id: int
    acquired_at: datetime
    holder_id: str | None = None


class LockAcquisitionError(Exception):
    """
    Raised when a lock cannot be acquired.

    Attributes:
        key: The lock key that could not be acquired
        reason: Description of why acquisition failed
        timeout: The timeout value if timeout was the cause
    """

    def __init__(
        self,
        key: str,
        reason: str,
        timeout: float | None = None,
    ):
        self.key = key
        self.reason = reason
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock '{key}': {reason}")


class LockNotHeldError(Exception):
    """Raised when releasing a lock this manager does not hold."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lock '{key}' is not held by this manager")


@runtime_checkable
class LockManager(Protocol):
    """Non-blocking lease interface used by the runner."""

    async def try_acquire(self, key: str) -> LockInfo | None:
        """Acquire ``key`` if free. None when another holder has it."""
        ...

    async def release(self, key: str) -> None:
        """
        Release a held lock.

        Raises:
            LockNotHeldError: If the lock is not held by this manager
        """
        ...

    async def is_held(self, key: str) -> bool:
        ...


def migration_lock_key(migration_id: int, operation: str = "batched_migration") -> str:
    """
    Lock key for a migration.

    Example:
        >>> migration_lock_key(42)
        'batched_migration:42'
    """
    return f"{operation}:{migration_id}"
