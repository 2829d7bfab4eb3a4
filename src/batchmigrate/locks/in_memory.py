"""
In-process lock manager.

One instance acts as the lock table: share it between runners in the same
process (or in tests) to get the same exclusivity the PostgreSQL manager
gives across processes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from batchmigrate.locks.interface import LockAcquisitionError, LockInfo, LockNotHeldError
from batchmigrate.observability import ATTR_LOCK_ACQUIRED, ATTR_LOCK_KEY, Tracer, create_tracer

logger = logging.getLogger(__name__)


class InMemoryLockManager:
    """
    Lock manager backed by a dictionary.

    Example:
        >>> locks = InMemoryLockManager()
        >>> await locks.try_acquire("batched_migration:1")
        LockInfo(key='batched_migration:1', ...)
        >>> await locks.try_acquire("batched_migration:1") is None
        True
    """

    def __init__(
        self,
        *,
        holder_id: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._holder_id = holder_id
        self._held_locks: dict[str, LockInfo] = {}
        self._next_lock_id = 1
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: str) -> LockInfo | None:
        with self._tracer.span("batchmigrate.lock.try_acquire", {ATTR_LOCK_KEY: key}) as span:
            async with self._lock:
                if key in self._held_locks:
                    acquired = None
                else:
                    acquired = LockInfo(
                        key=key,
                        lock_id=self._next_lock_id,
                        acquired_at=datetime.now(UTC),
                        holder_id=self._holder_id,
                    )
                    self._next_lock_id += 1
                    self._held_locks[key] = acquired
            if span is not None:
                span.set_attribute(ATTR_LOCK_ACQUIRED, acquired is not None)
            if acquired is not None:
                logger.debug("Acquired in-memory lock: key=%s", key)
            return acquired

    async def release(self, key: str) -> None:
        async with self._lock:
            if self._held_locks.pop(key, None) is None:
                raise LockNotHeldError(key)
        logger.debug("Released in-memory lock: key=%s", key)

    async def is_held(self, key: str) -> bool:
        async with self._lock:
            return key in self._held_locks

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.05,
    ) -> AsyncIterator[LockInfo]:
        """
        Acquire a lock as a context manager, waiting up to ``timeout`` seconds.

        Raises:
            LockAcquisitionError: If the lock cannot be acquired in time
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            info = await self.try_acquire(key)
            if info is not None:
                break
            if deadline is not None and loop.time() >= deadline:
                raise LockAcquisitionError(key, f"Timeout after {timeout}s", timeout=timeout)
            await asyncio.sleep(retry_interval)
        try:
            yield info
        finally:
            await self.release(key)

    @property
    def held_lock_count(self) -> int:
        return len(self._held_locks)
