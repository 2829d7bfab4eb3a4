"""
Unit tests for the migration lease lock managers.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from batchmigrate.locks import (
    InMemoryLockManager,
    LockAcquisitionError,
    LockManager,
    LockNotHeldError,
    PostgreSQLLockManager,
    migration_lock_key,
)


class TestMigrationLockKey:
    def test_default_operation(self) -> None:
        assert migration_lock_key(42) == "batched_migration:42"

    def test_custom_operation(self) -> None:
        assert migration_lock_key(42, "finalize") == "finalize:42"


class TestInMemoryLockManager:
    """Tests for InMemoryLockManager."""

    @pytest.fixture
    def locks(self) -> InMemoryLockManager:
        return InMemoryLockManager(holder_id="worker-1", enable_tracing=False)

    def test_satisfies_protocol(self, locks: InMemoryLockManager) -> None:
        assert isinstance(locks, LockManager)

    async def test_acquire_is_exclusive(self, locks: InMemoryLockManager) -> None:
        info = await locks.try_acquire("batched_migration:1")

        assert info is not None
        assert info.holder_id == "worker-1"
        assert await locks.try_acquire("batched_migration:1") is None
        assert await locks.try_acquire("batched_migration:2") is not None
        assert locks.held_lock_count == 2

    async def test_release(self, locks: InMemoryLockManager) -> None:
        await locks.try_acquire("batched_migration:1")

        await locks.release("batched_migration:1")

        assert not await locks.is_held("batched_migration:1")
        assert await locks.try_acquire("batched_migration:1") is not None

    async def test_release_unheld_lock(self, locks: InMemoryLockManager) -> None:
        with pytest.raises(LockNotHeldError):
            await locks.release("batched_migration:1")

    async def test_acquire_context_manager(self, locks: InMemoryLockManager) -> None:
        async with locks.acquire("batched_migration:1") as info:
            assert info.key == "batched_migration:1"
            assert await locks.is_held("batched_migration:1")

        assert not await locks.is_held("batched_migration:1")

    async def test_acquire_times_out(self, locks: InMemoryLockManager) -> None:
        await locks.try_acquire("batched_migration:1")

        with pytest.raises(LockAcquisitionError) as exc_info:
            async with locks.acquire("batched_migration:1", timeout=0.05, retry_interval=0.01):
                pass

        assert exc_info.value.timeout == 0.05

    async def test_acquire_waits_for_release(self, locks: InMemoryLockManager) -> None:
        await locks.try_acquire("batched_migration:1")

        async def release_later() -> None:
            await asyncio.sleep(0.02)
            await locks.release("batched_migration:1")

        task = asyncio.create_task(release_later())
        async with locks.acquire("batched_migration:1", timeout=1.0, retry_interval=0.01):
            assert await locks.is_held("batched_migration:1")
        await task


class TestPostgreSQLLockManager:
    """Tests for PostgreSQLLockManager with a mocked session."""

    @pytest.fixture
    def session(self) -> AsyncMock:
        session = AsyncMock()
        result = MagicMock()
        result.scalar.return_value = True
        session.execute = AsyncMock(return_value=result)
        return session

    @pytest.fixture
    def locks(self, session: AsyncMock) -> PostgreSQLLockManager:
        return PostgreSQLLockManager(
            MagicMock(return_value=session), holder_id="worker-1", enable_tracing=False
        )

    def test_lock_id_is_stable_and_63_bit(self) -> None:
        lock_id = PostgreSQLLockManager.key_to_lock_id("batched_migration:1")

        assert lock_id == PostgreSQLLockManager.key_to_lock_id("batched_migration:1")
        assert lock_id != PostgreSQLLockManager.key_to_lock_id("batched_migration:2")
        assert 0 <= lock_id < 2**63

    async def test_try_acquire(self, locks: PostgreSQLLockManager, session: AsyncMock) -> None:
        info = await locks.try_acquire("batched_migration:1")

        assert info is not None
        assert info.lock_id == PostgreSQLLockManager.key_to_lock_id("batched_migration:1")
        assert "pg_try_advisory_lock" in str(session.execute.call_args.args[0])
        assert await locks.is_held("batched_migration:1")
        session.close.assert_not_awaited()

    async def test_try_acquire_contended(
        self, locks: PostgreSQLLockManager, session: AsyncMock
    ) -> None:
        session.execute.return_value.scalar.return_value = False

        assert await locks.try_acquire("batched_migration:1") is None
        session.close.assert_awaited_once()
        assert locks.held_lock_count == 0

    async def test_try_acquire_error_closes_session(
        self, locks: PostgreSQLLockManager, session: AsyncMock
    ) -> None:
        session.execute.side_effect = RuntimeError("connection lost")

        with pytest.raises(RuntimeError):
            await locks.try_acquire("batched_migration:1")

        session.close.assert_awaited_once()

    async def test_release_unlocks_and_closes(
        self, locks: PostgreSQLLockManager, session: AsyncMock
    ) -> None:
        await locks.try_acquire("batched_migration:1")

        await locks.release("batched_migration:1")

        assert "pg_advisory_unlock" in str(session.execute.call_args.args[0])
        session.close.assert_awaited_once()
        assert not await locks.is_held("batched_migration:1")

    async def test_release_unheld_lock(self, locks: PostgreSQLLockManager) -> None:
        with pytest.raises(LockNotHeldError):
            await locks.release("batched_migration:1")

    async def test_release_all(self, locks: PostgreSQLLockManager) -> None:
        await locks.try_acquire("batched_migration:1")
        await locks.try_acquire("batched_migration:2")

        assert await locks.release_all() == 2
        assert locks.held_lock_count == 0

    async def test_acquire_wraps_database_errors(
        self, locks: PostgreSQLLockManager, session: AsyncMock
    ) -> None:
        session.execute.side_effect = RuntimeError("connection lost")

        with pytest.raises(LockAcquisitionError, match="Database error"):
            async with locks.acquire("batched_migration:1"):
                pass
