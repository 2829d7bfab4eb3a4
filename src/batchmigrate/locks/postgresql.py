"""
PostgreSQL advisory locks for migration leases.

Advisory locks are session-level: they are held until released or until the
session's connection closes, so a crashed executor never leaves a
migration leased forever. Each held lock keeps its own session open.

Usage:
    >>> locks = PostgreSQLLockManager(session_factory, holder_id="worker-1")
    >>> info = await locks.try_acquire(migration_lock_key(migration.id))
    >>> if info:
    ...     try:
    ...         await run_job()
    ...     finally:
    ...         await locks.release(info.key)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from batchmigrate.locks.interface import LockAcquisitionError, LockInfo, LockNotHeldError
from batchmigrate.observability import (
    ATTR_DB_SYSTEM,
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_ID,
    ATTR_LOCK_KEY,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


class PostgreSQLLockManager:
    """
    Manages PostgreSQL advisory locks.

    Args:
        session_factory: SQLAlchemy async session factory
        holder_id: Optional identifier for this lock holder (for debugging)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing

    Note:
        Each lock uses a dedicated session/connection. Size the connection
        pool for the number of runners sharing it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        holder_id: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._session_factory = session_factory
        self._holder_id = holder_id
        self._held_locks: dict[str, tuple[AsyncSession, int]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def key_to_lock_id(key: str) -> int:
        """
        Convert a string key to a 63-bit lock ID.

        PostgreSQL advisory locks take a signed bigint, so the first 8 bytes
        of the key's SHA-256 digest are masked to 63 bits.
        """
        hash_bytes = hashlib.sha256(key.encode()).digest()
        return int.from_bytes(hash_bytes[:8], byteorder="big") & 0x7FFFFFFFFFFFFFFF

    async def try_acquire(self, key: str) -> LockInfo | None:
        """
        Try to acquire a lock without blocking.

        Returns:
            LockInfo if acquired, None if another session holds the lock

        Note:
            Caller is responsible for calling release() when done.
        """
        lock_id = self.key_to_lock_id(key)
        with self._tracer.span(
            "batchmigrate.lock.try_acquire",
            {ATTR_LOCK_KEY: key, ATTR_LOCK_ID: lock_id, ATTR_DB_SYSTEM: "postgresql"},
        ) as span:
            session = self._session_factory()
            try:
                result = await session.execute(
                    text("SELECT pg_try_advisory_lock(:lock_id)"),
                    {"lock_id": lock_id},
                )
                acquired = bool(result.scalar())
            except Exception:
                await session.close()
                logger.error("Error attempting to acquire lock: key=%s", key, exc_info=True)
                raise

            if span is not None:
                span.set_attribute(ATTR_LOCK_ACQUIRED, acquired)

            if not acquired:
                await session.close()
                return None

            async with self._lock:
                self._held_locks[key] = (session, lock_id)

            logger.debug("Acquired advisory lock: key=%s, lock_id=%d", key, lock_id)
            return LockInfo(
                key=key,
                lock_id=lock_id,
                acquired_at=datetime.now(UTC),
                holder_id=self._holder_id,
            )

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.1,
    ) -> AsyncIterator[LockInfo]:
        """
        Acquire a lock as a context manager, polling until ``timeout``.

        Raises:
            LockAcquisitionError: If the lock cannot be acquired in time
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            try:
                info = await self.try_acquire(key)
            except Exception as e:
                raise LockAcquisitionError(key, f"Database error: {e}") from e
            if info is not None:
                break
            if deadline is not None and loop.time() >= deadline:
                raise LockAcquisitionError(key, f"Timeout after {timeout}s", timeout=timeout)
            await asyncio.sleep(retry_interval)
        try:
            yield info
        finally:
            await self.release(key)

    async def release(self, key: str) -> None:
        """
        Release a previously acquired lock.

        Raises:
            LockNotHeldError: If the lock is not held by this manager
        """
        async with self._lock:
            held = self._held_locks.pop(key, None)
        if held is None:
            raise LockNotHeldError(key)
        session, lock_id = held

        with self._tracer.span(
            "batchmigrate.lock.release",
            {ATTR_LOCK_KEY: key, ATTR_LOCK_ID: lock_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            try:
                await session.execute(
                    text("SELECT pg_advisory_unlock(:lock_id)"),
                    {"lock_id": lock_id},
                )
                logger.debug("Released advisory lock: key=%s, lock_id=%d", key, lock_id)
            except Exception as e:
                # Closing the session below drops the lock regardless.
                logger.warning("Error releasing advisory lock: key=%s, error=%s", key, e)
            finally:
                await session.close()

    async def is_held(self, key: str) -> bool:
        async with self._lock:
            return key in self._held_locks

    async def release_all(self) -> int:
        """
        Release all locks held by this manager.

        Returns:
            Number of locks released
        """
        async with self._lock:
            keys = list(self._held_locks)

        released = 0
        for key in keys:
            try:
                await self.release(key)
                released += 1
            except LockNotHeldError:
                pass
        return released

    @property
    def held_lock_count(self) -> int:
        return len(self._held_locks)


__all__ = ["PostgreSQLLockManager"]
