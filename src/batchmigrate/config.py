"""
Runner configuration.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from batchmigrate.health import MAXIMUM_FAILED_RATIO, MINIMUM_JOBS, FailureWindow
from batchmigrate.optimizer import EMA_ALPHA, NUMBER_OF_JOBS


@dataclass(frozen=True)
class RunnerConfig:
    """
    Configuration for the batched migration runner.

    This class is immutable (frozen) so a running executor cannot be
    reconfigured halfway through an iteration.

    Attributes:
        poll_interval: Seconds to sleep between runner iterations (default 10).
        interval_variance: Tolerance subtracted from a migration's interval
            when checking whether the next job may be created (default 0).
        max_attempts: Attempts before a job is blocked (default 3).
        stuck_job_timeout: How long a job may stay running before it is
            treated as abandoned and retried (default 1 hour).
        minimum_jobs: Jobs required before the failure monitor judges (default 50).
        maximum_failed_ratio: Failure ratio that stops a migration (default 0.5).
        failure_window: Which jobs the failure monitor samples.
        optimize: Whether to adapt batch sizes after each job (default True).
        optimizer_number_of_jobs: Samples used by the optimizer (default 20).
        optimizer_alpha: Smoothing factor used by the optimizer (default 0.4).
        retry_batch_size: Page size when retrying or resetting jobs (default 100).
        schemas: Database schemas this runner serves. None serves all.

    Example:
        >>> config = RunnerConfig(poll_interval=1.0, max_attempts=5)
        >>> config.max_attempts
        5
    """

    poll_interval: float = 10.0
    interval_variance: timedelta = timedelta(0)
    max_attempts: int = 3
    stuck_job_timeout: timedelta = timedelta(hours=1)
    minimum_jobs: int = MINIMUM_JOBS
    maximum_failed_ratio: float = MAXIMUM_FAILED_RATIO
    failure_window: FailureWindow = FailureWindow.SINCE_STARTED
    optimize: bool = True
    optimizer_number_of_jobs: int = NUMBER_OF_JOBS
    optimizer_alpha: float = EMA_ALPHA
    retry_batch_size: int = 100
    schemas: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {self.poll_interval}")
        if self.interval_variance < timedelta(0):
            raise ValueError(f"interval_variance must be >= 0, got {self.interval_variance}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.stuck_job_timeout <= timedelta(0):
            raise ValueError(f"stuck_job_timeout must be > 0, got {self.stuck_job_timeout}")
        if self.minimum_jobs < 1:
            raise ValueError(f"minimum_jobs must be >= 1, got {self.minimum_jobs}")
        if not 0.0 <= self.maximum_failed_ratio <= 1.0:
            raise ValueError(
                f"maximum_failed_ratio must be between 0.0 and 1.0, "
                f"got {self.maximum_failed_ratio}"
            )
        if self.optimizer_number_of_jobs < 1:
            raise ValueError(
                f"optimizer_number_of_jobs must be >= 1, got {self.optimizer_number_of_jobs}"
            )
        if not 0.0 < self.optimizer_alpha < 1.0:
            raise ValueError(
                f"optimizer_alpha must be between 0.0 and 1.0, got {self.optimizer_alpha}"
            )
        if self.retry_batch_size < 1:
            raise ValueError(f"retry_batch_size must be >= 1, got {self.retry_batch_size}")

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to a JSON-friendly dictionary.

        Durations are expressed in seconds.
        """
        return {
            "poll_interval": self.poll_interval,
            "interval_variance": self.interval_variance.total_seconds(),
            "max_attempts": self.max_attempts,
            "stuck_job_timeout": self.stuck_job_timeout.total_seconds(),
            "minimum_jobs": self.minimum_jobs,
            "maximum_failed_ratio": self.maximum_failed_ratio,
            "failure_window": self.failure_window.value,
            "optimize": self.optimize,
            "optimizer_number_of_jobs": self.optimizer_number_of_jobs,
            "optimizer_alpha": self.optimizer_alpha,
            "retry_batch_size": self.retry_batch_size,
            "schemas": list(self.schemas) if self.schemas is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunnerConfig:
        """
        Create from dictionary.

        Args:
            data: Dictionary as produced by to_dict. Missing keys use defaults.

        Returns:
            RunnerConfig instance.
        """
        schemas = data.get("schemas")
        return cls(
            poll_interval=data.get("poll_interval", 10.0),
            interval_variance=timedelta(seconds=data.get("interval_variance", 0)),
            max_attempts=data.get("max_attempts", 3),
            stuck_job_timeout=timedelta(seconds=data.get("stuck_job_timeout", 3600)),
            minimum_jobs=data.get("minimum_jobs", MINIMUM_JOBS),
            maximum_failed_ratio=data.get("maximum_failed_ratio", MAXIMUM_FAILED_RATIO),
            failure_window=FailureWindow(
                data.get("failure_window", FailureWindow.SINCE_STARTED.value)
            ),
            optimize=data.get("optimize", True),
            optimizer_number_of_jobs=data.get("optimizer_number_of_jobs", NUMBER_OF_JOBS),
            optimizer_alpha=data.get("optimizer_alpha", EMA_ALPHA),
            retry_batch_size=data.get("retry_batch_size", 100),
            schemas=tuple(schemas) if schemas is not None else None,
        )


__all__ = ["RunnerConfig"]
