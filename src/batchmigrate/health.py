"""
Failure monitor for batched migrations.

A single flaky batch must not stop a migration that runs for hours, but a
sustained failure rate means retries will not help. The monitor stops a
migration once enough jobs have run in its sampling window and more than
the allowed share of them failed.

The sampling window is a policy. SINCE_STARTED counts every job created
since the migration first became active, so failure history accumulates
across retries. SINCE_LAST_RETRY restarts the window whenever failed jobs
are retried.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from batchmigrate.models import BatchedMigration, BatchJobStatus

if TYPE_CHECKING:
    from batchmigrate.stores.interface import MigrationStore

logger = logging.getLogger(__name__)

MINIMUM_JOBS = 50
MAXIMUM_FAILED_RATIO = 0.5


class FailureWindow(Enum):
    """Which jobs the failure monitor samples."""

    SINCE_STARTED = "since_started"
    """Jobs created since started_at. Cumulative over retries."""

    SINCE_LAST_RETRY = "since_last_retry"
    """Jobs created since the last retry of failed jobs, else since started_at."""


class FailureMonitor:
    """
    Circuit breaker over a migration's job history.

    Args:
        minimum_jobs: Jobs required in the window before judging.
        maximum_failed_ratio: Stop when failed / total exceeds this.
        window: Sampling window policy.

    Example:
        >>> monitor = FailureMonitor()
        >>> monitor.exceeds_threshold(total_jobs=50, failed_jobs=26)
        True
        >>> monitor.exceeds_threshold(total_jobs=49, failed_jobs=49)
        False
    """

    def __init__(
        self,
        minimum_jobs: int = MINIMUM_JOBS,
        maximum_failed_ratio: float = MAXIMUM_FAILED_RATIO,
        window: FailureWindow = FailureWindow.SINCE_STARTED,
    ) -> None:
        if minimum_jobs < 1:
            raise ValueError(f"minimum_jobs must be >= 1, got {minimum_jobs}")
        if not 0.0 <= maximum_failed_ratio <= 1.0:
            raise ValueError(
                f"maximum_failed_ratio must be between 0.0 and 1.0, got {maximum_failed_ratio}"
            )
        self.minimum_jobs = minimum_jobs
        self.maximum_failed_ratio = maximum_failed_ratio
        self.window = window

    def exceeds_threshold(self, total_jobs: int, failed_jobs: int) -> bool:
        """Pure threshold check over job counts."""
        if total_jobs < self.minimum_jobs:
            return False
        return failed_jobs / total_jobs > self.maximum_failed_ratio

    def window_start(self, migration: BatchedMigration) -> datetime | None:
        if self.window == FailureWindow.SINCE_LAST_RETRY and migration.last_retried_at:
            return migration.last_retried_at
        return migration.started_at

    async def should_stop(self, migration: BatchedMigration, store: MigrationStore) -> bool:
        """
        Decide whether the migration's failure ratio tripped the breaker.

        Returns:
            False until the migration has been started, otherwise the
            threshold check over jobs created inside the window.
        """
        since = self.window_start(migration)
        if since is None:
            return False

        total_jobs = await store.count_jobs(migration.id, created_since=since)
        if total_jobs < self.minimum_jobs:
            return False

        failed_jobs = await store.count_jobs(
            migration.id,
            statuses=[BatchJobStatus.FAILED],
            created_since=since,
        )
        stop = self.exceeds_threshold(total_jobs, failed_jobs)
        if stop:
            logger.warning(
                "%s exceeded the failed job ratio: %d of %d jobs failed (limit %.2f)",
                migration,
                failed_jobs,
                total_jobs,
                self.maximum_failed_ratio,
                extra={"migration_id": migration.id},
            )
        return stop


__all__ = [
    "MINIMUM_JOBS",
    "MAXIMUM_FAILED_RATIO",
    "FailureWindow",
    "FailureMonitor",
]
