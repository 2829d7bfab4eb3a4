"""
MigrationCoordinator - administers batched background migrations.

The coordinator is the primary entry point for queueing migrations and for
everything an operator or the runner does to them afterwards: lifecycle
transitions, job creation, retries, holds, health checks, batch size
optimization and progress reporting. It does not execute jobs; that is the
runner's job (see batchmigrate.runner).

Usage:
    >>> from batchmigrate import MigrationCoordinator, MigrationDefinition
    >>>
    >>> coordinator = MigrationCoordinator(store)
    >>> migration = await coordinator.queue_migration(
    ...     MigrationDefinition(
    ...         job_class_name="CopyColumn",
    ...         table_name="events",
    ...         column_name="id",
    ...         max_value=1_000_000,
    ...     )
    ... )
    >>>
    >>> progress = await coordinator.progress(migration.id)
    >>> print(f"{progress.progress_percent}% migrated")
    >>>
    >>> # After fixing the cause of failures
    >>> await coordinator.retry_failed_jobs(migration.id)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from batchmigrate.clock import Clock, SystemClock
from batchmigrate.exceptions import BatchJobStateError, MigrationNotFoundError
from batchmigrate.health import FailureMonitor
from batchmigrate.metrics import MigrationMetrics
from batchmigrate.models import (
    DEFAULT_SCHEMA,
    BatchedJob,
    BatchedMigration,
    BatchJobStatus,
    BatchRange,
    MigrationDefinition,
    MigrationProgress,
    MigrationStatus,
    NewBatchedJob,
    normalize_class_name,
)
from batchmigrate.observability import (
    ATTR_BATCH_SIZE,
    ATTR_JOB_COUNT,
    ATTR_JOB_ID,
    ATTR_JOB_MAX_VALUE,
    ATTR_JOB_MIN_VALUE,
    ATTR_MIGRATION_EVENT,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_IDENTIFIER,
    Tracer,
    create_tracer,
)
from batchmigrate.optimizer import BatchOptimizer, smoothed_time_efficiency
from batchmigrate.registry import StrategyRegistry, strategy_registry
from batchmigrate.state_machine import MigrationEvent, apply_transition
from batchmigrate.stores.interface import MigrationStore
from batchmigrate.strategies import BatchingStrategy

logger = logging.getLogger(__name__)

DEFAULT_HOLD_DURATION = timedelta(minutes=10)

_UNSUCCEEDED_STATUSES = [
    status for status in BatchJobStatus if status != BatchJobStatus.SUCCEEDED
]
_RETRIABLE_STATUSES = [status for status in BatchJobStatus if status.is_retriable]


class MigrationCoordinator:
    """
    Orchestrates the lifecycle of batched migrations.

    Every read goes through the store and every change is written back
    before the method returns, so several coordinators (one per process)
    can share a PostgreSQL store.

    Args:
        store: Persistence for migrations and jobs.
        strategies: Batching strategies by name. Defaults to the global
            registry, which ships the ``primary_key`` strategy.
        clock: Source of the current time. Defaults to SystemClock.
        failure_monitor: Default monitor used by should_stop.
        optimizer: Default optimizer used by optimize.
        metrics: Metric instruments. Defaults to a new MigrationMetrics.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        store: MigrationStore,
        strategies: StrategyRegistry | None = None,
        clock: Clock | None = None,
        failure_monitor: FailureMonitor | None = None,
        optimizer: BatchOptimizer | None = None,
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._strategies = strategies if strategies is not None else strategy_registry
        self._clock = clock or SystemClock()
        self._failure_monitor = failure_monitor or FailureMonitor()
        self._optimizer = optimizer or BatchOptimizer()
        self._metrics = metrics or MigrationMetrics()

    @property
    def store(self) -> MigrationStore:
        return self._store

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def metrics(self) -> MigrationMetrics:
        return self._metrics

    # =========================================================================
    # Queueing and lookup
    # =========================================================================

    async def queue_migration(
        self,
        definition: MigrationDefinition,
        *,
        activate: bool = True,
    ) -> BatchedMigration:
        """
        Queue a new migration.

        The migration is created paused and, unless ``activate`` is False,
        immediately driven to active.

        Raises:
            BatchingStrategyNotFoundError: If batch_class_name is not registered.
            MigrationAlreadyExistsError: If the identity tuple is taken.
        """
        self._strategies.get(definition.batch_class_name)

        with self._tracer.span("batchmigrate.coordinator.queue_migration") as span:
            migration = await self._store.create_migration(
                definition,
                status=MigrationStatus.PAUSED,
                now=self._clock.now(),
            )
            if span is not None:
                span.set_attribute(ATTR_MIGRATION_ID, migration.id)
                span.set_attribute(ATTR_MIGRATION_IDENTIFIER, migration.identifier)

            logger.info(
                "Queued %s (%s) over [%d, %d]",
                migration,
                migration.identifier,
                migration.min_value,
                migration.max_value,
                extra={"migration_id": migration.id},
            )

            if activate:
                await self._apply(migration, MigrationEvent.EXECUTE)
            return migration

    async def get_migration(self, migration_id: int) -> BatchedMigration | None:
        return await self._store.get_migration(migration_id)

    async def require_migration(self, migration_id: int) -> BatchedMigration:
        """
        Get a migration by ID.

        Raises:
            MigrationNotFoundError: If no migration has this ID.
        """
        migration = await self._store.get_migration(migration_id)
        if migration is None:
            raise MigrationNotFoundError(migration_id)
        return migration

    async def find_for_configuration(
        self,
        job_class_name: str,
        table_name: str,
        column_name: str,
        job_arguments: Sequence[Any] = (),
        database_schema: str = DEFAULT_SCHEMA,
    ) -> BatchedMigration | None:
        return await self._store.find_for_configuration(
            database_schema,
            normalize_class_name(job_class_name),
            table_name,
            column_name,
            list(job_arguments),
        )

    async def list_queued(self, schemas: Sequence[str] | None = None) -> list[BatchedMigration]:
        """Active and paused migrations in queue order."""
        return await self._store.list_migrations(
            statuses=[MigrationStatus.ACTIVE, MigrationStatus.PAUSED],
            schemas=schemas,
        )

    async def active_migration(
        self,
        schemas: Sequence[str] | None = None,
    ) -> BatchedMigration | None:
        """The first executable migration at the current time."""
        return await self._store.active_migration(self._clock.now(), schemas)

    # =========================================================================
    # Lifecycle transitions
    # =========================================================================

    async def _apply(self, migration: BatchedMigration, event: MigrationEvent) -> None:
        with self._tracer.span(
            "batchmigrate.coordinator.transition",
            {ATTR_MIGRATION_ID: migration.id, ATTR_MIGRATION_EVENT: event.value},
        ):
            unsucceeded_jobs = 0
            if event == MigrationEvent.FINISH:
                unsucceeded_jobs = await self._store.count_jobs(
                    migration.id, statuses=_UNSUCCEEDED_STATUSES
                )
            apply_transition(
                migration,
                event,
                now=self._clock.now(),
                unsucceeded_jobs=unsucceeded_jobs,
            )
            await self._store.update_migration(migration)
            self._metrics.record_transition(migration, event.value)

    async def transition(self, migration_id: int, event: MigrationEvent) -> BatchedMigration:
        """
        Apply a state machine event to a stored migration.

        Raises:
            MigrationNotFoundError: If no migration has this ID.
            UnsucceededJobsError: If finishing while jobs have not succeeded.
        """
        migration = await self.require_migration(migration_id)
        await self._apply(migration, event)
        return migration

    async def pause(self, migration_id: int) -> BatchedMigration:
        return await self.transition(migration_id, MigrationEvent.PAUSE)

    async def execute(self, migration_id: int) -> BatchedMigration:
        """Activate or resume a migration."""
        return await self.transition(migration_id, MigrationEvent.EXECUTE)

    async def finish(self, migration_id: int) -> BatchedMigration:
        return await self.transition(migration_id, MigrationEvent.FINISH)

    async def fail(self, migration_id: int) -> BatchedMigration:
        return await self.transition(migration_id, MigrationEvent.FAILURE)

    async def mark_finalizing(self, migration_id: int) -> BatchedMigration:
        return await self.transition(migration_id, MigrationEvent.FINALIZE)

    # =========================================================================
    # Batching
    # =========================================================================

    def strategy_for(self, migration: BatchedMigration) -> BatchingStrategy:
        """
        Raises:
            BatchingStrategyNotFoundError: If batch_class_name is not registered.
        """
        return self._strategies.create(migration.batch_class_name)

    async def next_min_value(self, migration: BatchedMigration) -> int:
        return migration.next_min_value(await self._store.last_job(migration.id))

    async def interval_elapsed(
        self,
        migration: BatchedMigration,
        variance: timedelta = timedelta(0),
    ) -> bool:
        last_job = await self._store.last_job(migration.id)
        return migration.interval_elapsed(last_job, self._clock.now(), variance)

    async def create_batched_job(
        self,
        migration: BatchedMigration,
        min_value: int,
        max_value: int,
    ) -> BatchedJob:
        """Create a pending job over [min_value, max_value] with the current sizing."""
        job = await self._store.create_job(
            migration.new_job(BatchRange(min_value, max_value)),
            self._clock.now(),
        )
        logger.debug(
            "Created batch job %d for %s over [%d, %d]",
            job.id,
            migration,
            job.min_value,
            job.max_value,
            extra={"migration_id": migration.id, "job_id": job.id},
        )
        return job

    async def find_or_create_next_job(self, migration: BatchedMigration) -> BatchedJob | None:
        """
        The next job to execute.

        A new job is created for the next range while the strategy yields
        one. Once the range is exhausted, the lowest retriable job is
        returned, and None when there is none.
        """
        with self._tracer.span(
            "batchmigrate.coordinator.find_or_create_next_job",
            {ATTR_MIGRATION_ID: migration.id, ATTR_BATCH_SIZE: migration.batch_size},
        ) as span:
            batch_range = await self.strategy_for(migration).next_range(
                migration,
                batch_min_value=await self.next_min_value(migration),
                batch_size=migration.batch_size,
            )
            if batch_range is not None:
                job: BatchedJob | None = await self.create_batched_job(
                    migration, batch_range.min_value, batch_range.max_value
                )
            else:
                retriable = await self._store.list_jobs(
                    migration.id, statuses=_RETRIABLE_STATUSES, limit=1
                )
                job = retriable[0] if retriable else None

            if span is not None and job is not None:
                span.set_attribute(ATTR_JOB_ID, job.id)
                span.set_attribute(ATTR_JOB_MIN_VALUE, job.min_value)
                span.set_attribute(ATTR_JOB_MAX_VALUE, job.max_value)
            return job

    # =========================================================================
    # Retries and holds
    # =========================================================================

    async def split_and_retry(self, job: BatchedJob) -> list[BatchedJob]:
        """
        Halve a failed job and reset its attempts.

        The job keeps the lower half of its range. The upper half becomes a
        new failed job with the same sizing, so both are picked up by the
        runner once the migration's range is exhausted. When the range cannot
        be split, only the batch size is halved.

        Returns:
            The retried job followed by the split-off job, if any.

        Raises:
            BatchJobStateError: If the job is not failed.
        """
        if job.status != BatchJobStatus.FAILED:
            raise BatchJobStateError(
                f"Only failed batch jobs can be split, job {job.id} is {job.status.value}",
                job.status,
                job_id=job.id,
                migration_id=job.migration_id,
            )

        new_batch_size = job.batch_size // 2
        if new_batch_size == 0:
            job.attempts = 0
            await self._store.update_job(job)
            return [job]

        migration = await self.require_migration(job.migration_id)
        batch_range = await self.strategy_for(migration).next_range(
            migration,
            batch_min_value=job.min_value,
            batch_size=new_batch_size,
        )
        midpoint = batch_range.max_value if batch_range is not None else None

        if midpoint is None or midpoint >= job.max_value:
            job.batch_size = new_batch_size
            job.attempts = 0
            await self._store.update_job(job)
            return [job]

        old_max_value = job.max_value
        job.max_value = midpoint
        job.batch_size = new_batch_size
        job.attempts = 0
        job.started_at = None
        job.finished_at = None
        await self._store.update_job(job)

        split_off = await self._store.create_job(
            NewBatchedJob(
                migration_id=job.migration_id,
                min_value=midpoint + 1,
                max_value=old_max_value,
                batch_size=new_batch_size,
                sub_batch_size=job.sub_batch_size,
                pause_ms=job.pause_ms,
                status=BatchJobStatus.FAILED,
            ),
            self._clock.now(),
        )
        logger.info(
            "Split batch job %d of %s into [%d, %d] and [%d, %d]",
            job.id,
            migration,
            job.min_value,
            job.max_value,
            split_off.min_value,
            split_off.max_value,
            extra={"migration_id": migration.id, "job_id": job.id},
        )
        return [job, split_off]

    async def retry_failed_jobs(
        self,
        migration_id: int,
        batch_size: int = 100,
    ) -> BatchedMigration:
        """
        Split and retry every failed job, then activate the migration.

        Failed jobs are walked in pages of ``batch_size`` by job ID. Jobs
        split off during the walk are not split again. The migration ends
        up active even when there was nothing to retry.
        """
        migration = await self.require_migration(migration_id)

        with self._tracer.span(
            "batchmigrate.coordinator.retry_failed_jobs",
            {ATTR_MIGRATION_ID: migration_id},
        ) as span:
            split_off_ids: set[int] = set()
            retried = 0
            after_id: int | None = None
            while True:
                page = await self._store.list_jobs(
                    migration_id,
                    statuses=[BatchJobStatus.FAILED],
                    after_id=after_id,
                    limit=batch_size,
                )
                if not page:
                    break
                for job in page:
                    if job.id in split_off_ids:
                        continue
                    split_off_ids.update(j.id for j in (await self.split_and_retry(job))[1:])
                    retried += 1
                after_id = page[-1].id

            if span is not None:
                span.set_attribute(ATTR_JOB_COUNT, retried)

            migration.last_retried_at = self._clock.now()
            await self._apply(migration, MigrationEvent.EXECUTE)

        logger.info(
            "Retried %d failed jobs of %s",
            retried,
            migration,
            extra={"migration_id": migration_id},
        )
        return migration

    async def reset_attempts_of_blocked_jobs(
        self,
        migration_id: int,
        batch_size: int = 100,
    ) -> int:
        """
        Make jobs blocked by max attempts retriable again.

        Returns:
            Number of jobs reset.
        """
        await self.require_migration(migration_id)
        reset = 0
        after_id: int | None = None
        while True:
            page = await self._store.list_jobs(
                migration_id,
                statuses=[BatchJobStatus.BLOCKED_BY_MAX_ATTEMPTS],
                after_id=after_id,
                limit=batch_size,
            )
            if not page:
                break
            for job in page:
                job.attempts = 0
                job.status = BatchJobStatus.FAILED
                await self._store.update_job(job)
                reset += 1
            after_id = page[-1].id

        if reset:
            logger.info(
                "Reset attempts of %d blocked jobs of migration %d",
                reset,
                migration_id,
                extra={"migration_id": migration_id},
            )
        return reset

    async def reclaim_stuck_jobs(
        self,
        migration: BatchedMigration,
        timeout: timedelta,
        max_attempts: int = 3,
        batch_size: int = 100,
    ) -> int:
        """
        Fail jobs that have been running for longer than ``timeout``.

        Such jobs were abandoned by an executor that crashed or lost its
        connection. The abandoned run already counted as an attempt, so a
        job that has used up ``max_attempts`` is blocked instead of failed.

        Returns:
            Number of jobs reclaimed.
        """
        now = self._clock.now()
        reclaimed = 0
        after_id: int | None = None
        while True:
            page = await self._store.list_jobs(
                migration.id,
                statuses=[BatchJobStatus.RUNNING],
                after_id=after_id,
                limit=batch_size,
                started_before=now - timeout,
            )
            if not page:
                break
            for job in page:
                job.record_error(f"Abandoned after running since {job.started_at}")
                job.finished_at = now
                if job.attempts >= max_attempts:
                    job.status = BatchJobStatus.BLOCKED_BY_MAX_ATTEMPTS
                else:
                    job.status = BatchJobStatus.FAILED
                await self._store.update_job(job)
                self._metrics.record_job(migration, job)
                reclaimed += 1
            after_id = page[-1].id

        if reclaimed:
            logger.warning(
                "Reclaimed %d batch jobs of %s stuck in running for over %.0f seconds",
                reclaimed,
                migration,
                timeout.total_seconds(),
                extra={"migration_id": migration.id},
            )
        return reclaimed

    async def running_job_count(self, migration_id: int) -> int:
        return await self._store.count_jobs(migration_id, statuses=[BatchJobStatus.RUNNING])

    async def hold(
        self,
        migration_id: int,
        until_time: datetime | None = None,
    ) -> BatchedMigration:
        """
        Keep the runner away from a migration until ``until_time``.

        Defaults to ten minutes from now. The status is unchanged.
        """
        migration = await self.require_migration(migration_id)
        now = self._clock.now()
        until = until_time or now + DEFAULT_HOLD_DURATION
        migration.on_hold_until = until
        migration.updated_at = now
        await self._store.update_migration(migration)

        logger.info(
            "Holding %s (%s) for %.0f seconds",
            migration,
            migration.job_class_name,
            (until - now).total_seconds(),
            extra={
                "migration_id": migration.id,
                "job_class_name": migration.job_class_name,
                "duration_s": (until - now).total_seconds(),
            },
        )
        return migration

    # =========================================================================
    # Health and sizing
    # =========================================================================

    async def should_stop(
        self,
        migration: BatchedMigration,
        failure_monitor: FailureMonitor | None = None,
    ) -> bool:
        monitor = failure_monitor or self._failure_monitor
        return await monitor.should_stop(migration, self._store)

    async def smoothed_time_efficiency(
        self,
        migration: BatchedMigration,
        number_of_jobs: int = 10,
        alpha: float = 0.2,
    ) -> float | None:
        """Smoothed efficiency of the most recently finished successful jobs."""
        jobs = await self._store.recent_successful_jobs(migration.id, number_of_jobs)
        return smoothed_time_efficiency(
            [job.time_efficiency(migration.interval) for job in jobs],
            number_of_jobs=number_of_jobs,
            alpha=alpha,
        )

    async def optimize(
        self,
        migration: BatchedMigration,
        optimizer: BatchOptimizer | None = None,
    ) -> bool:
        """
        Adapt the migration's batch size to recent job durations.

        Returns:
            True if the sizing changed and was persisted.
        """
        optimizer = optimizer or self._optimizer
        efficiency = await self.smoothed_time_efficiency(
            migration,
            number_of_jobs=optimizer.number_of_jobs,
            alpha=optimizer.alpha,
        )
        if efficiency is None:
            return False

        self._metrics.record_time_efficiency(migration, efficiency)
        if not optimizer.optimize(migration, efficiency):
            return False

        migration.updated_at = self._clock.now()
        await self._store.update_batch_sizing(
            migration.id,
            batch_size=migration.batch_size,
            sub_batch_size=migration.sub_batch_size,
            now=migration.updated_at,
        )
        self._metrics.record_batch_size(migration)
        return True

    # =========================================================================
    # Progress
    # =========================================================================

    async def successful_rows_counts(self, migration_ids: Sequence[int]) -> dict[int, int]:
        return await self._store.successful_rows_counts(migration_ids)

    async def migrated_tuple_count(self, migration_id: int) -> int:
        counts = await self._store.successful_rows_counts([migration_id])
        return counts.get(migration_id, 0)

    async def progress(self, migration_id: int) -> MigrationProgress:
        """
        Raises:
            MigrationNotFoundError: If no migration has this ID.
        """
        migration = await self.require_migration(migration_id)
        return MigrationProgress.build(
            migration,
            await self.migrated_tuple_count(migration_id),
            await self._store.count_jobs_by_status(migration_id),
        )


__all__ = ["DEFAULT_HOLD_DURATION", "MigrationCoordinator"]
