"""
BatchedMigrationRunner - executes batched migrations one job at a time.

Each iteration selects the first executable migration, leases it, checks
the pacing interval, executes the next job and then judges the outcome:
the failure monitor may stop the migration, otherwise the optimizer may
adapt the batch size. Running one iteration per poll interval keeps at
most one job of a migration in flight per runner, and the lease keeps it
at one across runners.

Usage:
    >>> runner = BatchedMigrationRunner(
    ...     coordinator,
    ...     job_classes=job_class_registry,
    ...     config=RunnerConfig(poll_interval=5.0),
    ...     lock_manager=PostgreSQLLockManager(session_factory),
    ... )
    >>> task = asyncio.create_task(runner.run())
    >>> ...
    >>> runner.stop()
    >>> await task
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from batchmigrate.clock import Clock
from batchmigrate.config import RunnerConfig
from batchmigrate.coordinator import MigrationCoordinator
from batchmigrate.exceptions import UnsucceededJobsError
from batchmigrate.health import FailureMonitor
from batchmigrate.jobs import BatchContext
from batchmigrate.locks.interface import LockManager, migration_lock_key
from batchmigrate.models import BatchedJob, BatchedMigration, BatchJobStatus
from batchmigrate.observability import (
    ATTR_JOB_ATTEMPTS,
    ATTR_JOB_ID,
    ATTR_JOB_MAX_VALUE,
    ATTR_JOB_MIN_VALUE,
    ATTR_JOB_STATUS,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_IDENTIFIER,
    ATTR_RUN_OUTCOME,
    Tracer,
    create_tracer,
)
from batchmigrate.optimizer import BatchOptimizer
from batchmigrate.registry import JobClassRegistry, job_class_registry

logger = logging.getLogger(__name__)


class RunOutcome(Enum):
    """What a single runner iteration did."""

    IDLE = "idle"
    """No executable migration."""

    LOCKED = "locked"
    """Another runner holds the migration's lease."""

    WAITING = "waiting"
    """The interval has not elapsed, or the last jobs are still running."""

    FINISHED = "finished"
    """No work left and every job succeeded."""

    FAILED = "failed"
    """The failure monitor tripped, or work ran out with unsucceeded jobs."""

    DISPATCHED = "dispatched"
    """A job was executed."""


@dataclass(frozen=True)
class RunResult:
    outcome: RunOutcome
    migration: BatchedMigration | None = None
    job: BatchedJob | None = None


class BatchedMigrationRunner:
    """
    Polling executor for batched migrations.

    Args:
        coordinator: Coordinator over the shared store.
        job_classes: Job classes by name. Defaults to the global registry.
        config: Runner configuration. Defaults to RunnerConfig().
        clock: Source of the current time. Defaults to the coordinator's.
        lock_manager: Optional lease manager. Without one, concurrent
            runners over the same store may execute the same migration.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        coordinator: MigrationCoordinator,
        job_classes: JobClassRegistry | None = None,
        config: RunnerConfig | None = None,
        clock: Clock | None = None,
        lock_manager: LockManager | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._coordinator = coordinator
        self._job_classes = job_classes if job_classes is not None else job_class_registry
        self._config = config or RunnerConfig()
        self._clock = clock or coordinator.clock
        self._lock_manager = lock_manager
        self._failure_monitor = FailureMonitor(
            minimum_jobs=self._config.minimum_jobs,
            maximum_failed_ratio=self._config.maximum_failed_ratio,
            window=self._config.failure_window,
        )
        self._optimizer = BatchOptimizer(
            number_of_jobs=self._config.optimizer_number_of_jobs,
            alpha=self._config.optimizer_alpha,
        )
        self._own_stop_event = asyncio.Event()
        self._stop_event = self._own_stop_event
        self._running = False

    @property
    def config(self) -> RunnerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Iterations
    # =========================================================================

    async def run_once(self) -> RunResult:
        """Run a single iteration. Job failures are recorded, not raised."""
        with self._tracer.span("batchmigrate.runner.run_once") as span:
            result = await self._run_once()
            if span is not None:
                span.set_attribute(ATTR_RUN_OUTCOME, result.outcome.value)
                if result.migration is not None:
                    span.set_attribute(ATTR_MIGRATION_ID, result.migration.id)
            return result

    async def _run_once(self) -> RunResult:
        migration = await self._coordinator.active_migration(self._config.schemas)
        if migration is None:
            return RunResult(RunOutcome.IDLE)

        if self._lock_manager is None:
            return await self._run_migration(migration)

        key = migration_lock_key(migration.id)
        lease = await self._lock_manager.try_acquire(key)
        if lease is None:
            logger.debug(
                "%s is leased by another runner",
                migration,
                extra={"migration_id": migration.id},
            )
            return RunResult(RunOutcome.LOCKED, migration)
        try:
            return await self._run_migration(migration)
        finally:
            await self._lock_manager.release(key)

    async def _run_migration(self, migration: BatchedMigration) -> RunResult:
        if not await self._coordinator.interval_elapsed(migration, self._config.interval_variance):
            return RunResult(RunOutcome.WAITING, migration)

        job = await self._next_job(migration)
        if job is None:
            return await self._complete(migration)

        job = await self.execute_job(migration, job)

        if await self._coordinator.should_stop(migration, self._failure_monitor):
            migration = await self._coordinator.fail(migration.id)
            return RunResult(RunOutcome.FAILED, migration, job)

        if self._config.optimize:
            await self._coordinator.optimize(migration, self._optimizer)
        return RunResult(RunOutcome.DISPATCHED, migration, job)

    async def _next_job(self, migration: BatchedMigration) -> BatchedJob | None:
        job = await self._coordinator.find_or_create_next_job(migration)
        if job is not None:
            return job
        reclaimed = await self._coordinator.reclaim_stuck_jobs(
            migration,
            self._config.stuck_job_timeout,
            max_attempts=self._config.max_attempts,
            batch_size=self._config.retry_batch_size,
        )
        if not reclaimed:
            return None
        return await self._coordinator.find_or_create_next_job(migration)

    async def _complete(self, migration: BatchedMigration) -> RunResult:
        running = await self._coordinator.running_job_count(migration.id)
        if running:
            logger.debug(
                "%s has %d running jobs left",
                migration,
                running,
                extra={"migration_id": migration.id},
            )
            return RunResult(RunOutcome.WAITING, migration)

        try:
            migration = await self._coordinator.finish(migration.id)
        except UnsucceededJobsError as e:
            logger.warning(
                "%s ran out of work with %d unsucceeded jobs",
                migration,
                e.unsucceeded_count,
                extra={"migration_id": migration.id},
            )
            migration = await self._coordinator.fail(migration.id)
            return RunResult(RunOutcome.FAILED, migration)
        return RunResult(RunOutcome.FINISHED, migration)

    async def execute_job(self, migration: BatchedMigration, job: BatchedJob) -> BatchedJob:
        """
        Execute one batch job and persist its outcome.

        The job is marked running and its attempt counted before the job
        class runs. An exception from the job class marks the job failed,
        or blocked once it has used up its attempts. Cancellation is
        recorded the same way before it propagates.

        Raises:
            JobClassNotFoundError: If the migration's job class is not registered.
        """
        job_class = self._job_classes.create(migration.job_class_name)
        store = self._coordinator.store

        job.status = BatchJobStatus.RUNNING
        job.attempts += 1
        job.started_at = self._clock.now()
        job.finished_at = None
        await store.update_job(job)

        with self._tracer.span(
            "batchmigrate.runner.execute_job",
            {
                ATTR_MIGRATION_ID: migration.id,
                ATTR_MIGRATION_IDENTIFIER: migration.identifier,
                ATTR_JOB_ID: job.id,
                ATTR_JOB_MIN_VALUE: job.min_value,
                ATTR_JOB_MAX_VALUE: job.max_value,
                ATTR_JOB_ATTEMPTS: job.attempts,
            },
        ) as span:
            try:
                await job_class.perform(BatchContext.for_job(migration, job))
            except asyncio.CancelledError as e:
                self._record_failure(migration, job, e)
                await store.update_job(job)
                self._coordinator.metrics.record_job(migration, job)
                raise
            except Exception as e:
                self._record_failure(migration, job, e)
            else:
                job.finished_at = self._clock.now()
                job.status = BatchJobStatus.SUCCEEDED
                logger.debug(
                    "Batch job %d of %s succeeded over [%d, %d]",
                    job.id,
                    migration,
                    job.min_value,
                    job.max_value,
                    extra={"migration_id": migration.id, "job_id": job.id},
                )

            if span is not None:
                span.set_attribute(ATTR_JOB_STATUS, job.status.value)

        await store.update_job(job)
        self._coordinator.metrics.record_job(migration, job)
        return job

    def _record_failure(
        self,
        migration: BatchedMigration,
        job: BatchedJob,
        error: BaseException,
    ) -> None:
        job.finished_at = self._clock.now()
        job.record_error(error)
        if job.attempts >= self._config.max_attempts:
            job.status = BatchJobStatus.BLOCKED_BY_MAX_ATTEMPTS
        else:
            job.status = BatchJobStatus.FAILED
        logger.warning(
            "Batch job %d of %s failed (attempt %d of %d): %s",
            job.id,
            migration,
            job.attempts,
            self._config.max_attempts,
            job.last_error,
            exc_info=error,
            extra={"migration_id": migration.id, "job_id": job.id},
        )

    # =========================================================================
    # Finalization
    # =========================================================================

    async def finalize(self, migration_id: int) -> BatchedMigration:
        """
        Execute every remaining job of a migration inline.

        Pacing and holds are ignored. The migration is finished when every
        job succeeded, stays finalizing while jobs of another executor are
        still running, and is failed otherwise.
        """
        migration = await self._coordinator.mark_finalizing(migration_id)
        logger.info("Finalizing %s", migration, extra={"migration_id": migration_id})

        executed = 0
        while True:
            job = await self._next_job(migration)
            if job is None:
                break
            await self.execute_job(migration, job)
            executed += 1

        result = await self._complete(migration)
        logger.info(
            "Finalized %s after %d jobs: %s",
            migration,
            executed,
            result.outcome.value,
            extra={"migration_id": migration_id},
        )
        return result.migration or migration

    # =========================================================================
    # Recovery
    # =========================================================================

    async def retry_failed_jobs(self, migration_id: int) -> BatchedMigration:
        """Split and retry failed jobs in pages of ``config.retry_batch_size``."""
        return await self._coordinator.retry_failed_jobs(
            migration_id, batch_size=self._config.retry_batch_size
        )

    async def reset_blocked_jobs(self, migration_id: int) -> int:
        return await self._coordinator.reset_attempts_of_blocked_jobs(
            migration_id, batch_size=self._config.retry_batch_size
        )

    # =========================================================================
    # Loop
    # =========================================================================

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Poll until stopped.

        Unexpected errors are logged and the loop carries on with the next
        iteration. A caller-supplied ``stop_event`` is only ever waited on
        and set, never cleared.
        """
        self._stop_event = stop_event if stop_event is not None else self._own_stop_event
        self._running = True
        logger.info(
            "Batched migration runner started (poll interval %.1fs)",
            self._config.poll_interval,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    result = await self.run_once()
                    logger.debug("Runner iteration: %s", result.outcome.value)
                except Exception:
                    logger.exception("Batched migration runner iteration failed")

                try:  # noqa: SIM105 - Need to continue after timeout
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self._config.poll_interval,
                    )
                except TimeoutError:
                    pass
        finally:
            self._running = False
            if self._stop_event is self._own_stop_event:
                self._own_stop_event.clear()
            self._stop_event = self._own_stop_event
            logger.info("Batched migration runner stopped")

    def stop(self) -> None:
        """Ask run() to exit after the current iteration."""
        self._stop_event.set()


__all__ = ["BatchedMigrationRunner", "RunOutcome", "RunResult"]
