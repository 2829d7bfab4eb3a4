"""
Adaptive batch sizing.

The control signal is the smoothed time efficiency of recent successful
jobs: an exponentially weighted average of each job's duration relative
to the migration interval, most recent job weighted highest. When jobs
finish well within the interval the batch grows; when they overrun it the
batch shrinks. Without enough samples nothing changes.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from batchmigrate.models import BatchedMigration

logger = logging.getLogger(__name__)

TARGET_EFFICIENCY = (0.9, 0.95)
MAX_MULTIPLIER = 1.2
NUMBER_OF_JOBS = 20
EMA_ALPHA = 0.4


def smoothed_time_efficiency(
    efficiencies: Sequence[float | None],
    number_of_jobs: int = 10,
    alpha: float = 0.2,
) -> float | None:
    """
    Exponentially weighted average of job time efficiencies.

    Args:
        efficiencies: Per-job efficiencies, most recent first. Undefined
            (None) entries are discarded.
        number_of_jobs: Samples required and used.
        alpha: Smoothing factor. Sample ``i`` is weighted ``(1 - alpha) ** i``.

    Returns:
        The average rounded to 2 decimals, or None with fewer than
        ``number_of_jobs`` defined samples.

    Example:
        >>> smoothed_time_efficiency([1.0] * 10)
        1.0
        >>> smoothed_time_efficiency([1.0] * 9) is None
        True
    """
    if number_of_jobs < 1:
        raise ValueError(f"number_of_jobs must be >= 1, got {number_of_jobs}")
    samples = [value for value in efficiencies if value is not None]
    if len(samples) < number_of_jobs:
        return None

    dividend = 0.0
    divisor = 0.0
    for i, efficiency in enumerate(samples[:number_of_jobs]):
        weight = (1 - alpha) ** i
        dividend += efficiency * weight
        divisor += weight

    if divisor == 0:
        return None
    return round(dividend / divisor, 2)


class BatchOptimizer:
    """
    Scales a migration's batch size toward a target time efficiency.

    Args:
        target_efficiency: Inclusive (low, high) band where no change is made.
        max_multiplier: Upper bound on growth per adjustment.
        number_of_jobs: Samples fed into the smoothed efficiency.
        alpha: Smoothing factor for the smoothed efficiency.

    Example:
        >>> optimizer = BatchOptimizer()
        >>> optimizer.batch_size_multiplier(0.5)
        1.2
        >>> optimizer.batch_size_multiplier(0.92) is None
        True
    """

    def __init__(
        self,
        target_efficiency: tuple[float, float] = TARGET_EFFICIENCY,
        max_multiplier: float = MAX_MULTIPLIER,
        number_of_jobs: int = NUMBER_OF_JOBS,
        alpha: float = EMA_ALPHA,
    ) -> None:
        low, high = target_efficiency
        if not 0 < low <= high:
            raise ValueError(f"invalid target_efficiency {target_efficiency}")
        if max_multiplier < 1.0:
            raise ValueError(f"max_multiplier must be >= 1.0, got {max_multiplier}")
        self.target_efficiency = (low, high)
        self.max_multiplier = max_multiplier
        self.number_of_jobs = number_of_jobs
        self.alpha = alpha

    def batch_size_multiplier(self, efficiency: float | None) -> float | None:
        """Multiplier for the batch size, or None when no change is needed."""
        if efficiency is None or efficiency == 0:
            return None
        low, high = self.target_efficiency
        if low <= efficiency <= high:
            return None
        return min(high / efficiency, self.max_multiplier)

    def optimize(self, migration: BatchedMigration, efficiency: float | None) -> bool:
        """
        Adjust ``migration`` in place.

        The new batch size is clamped to the migration's min/max batch
        size, and the sub-batch size is capped at the new batch size.

        Returns:
            True if the migration's sizing changed.
        """
        multiplier = self.batch_size_multiplier(efficiency)
        if multiplier is None:
            return False

        new_batch_size = int(migration.batch_size * multiplier)
        new_batch_size = max(migration.min_batch_size, min(new_batch_size, migration.max_batch_size))
        new_sub_batch_size = min(migration.sub_batch_size, new_batch_size)

        if (new_batch_size, new_sub_batch_size) == (migration.batch_size, migration.sub_batch_size):
            return False

        logger.info(
            "Optimized %s batch size %d -> %d (efficiency %.2f)",
            migration,
            migration.batch_size,
            new_batch_size,
            efficiency,
            extra={"migration_id": migration.id},
        )
        migration.batch_size = new_batch_size
        migration.sub_batch_size = new_sub_batch_size
        return True


__all__ = [
    "TARGET_EFFICIENCY",
    "MAX_MULTIPLIER",
    "NUMBER_OF_JOBS",
    "EMA_ALPHA",
    "smoothed_time_efficiency",
    "BatchOptimizer",
]
