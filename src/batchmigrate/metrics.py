"""
OpenTelemetry metrics for batched migrations.

Example:
    >>> from batchmigrate.metrics import MigrationMetrics
    >>>
    >>> metrics = MigrationMetrics()
    >>> metrics.record_job(migration, job)
    >>> metrics.record_transition(migration, "finish")

Metrics Exposed:
    - batchmigrate.jobs (Counter): Batch job executions by resulting status
    - batchmigrate.job.duration (Histogram): Wall clock time of batch jobs
    - batchmigrate.tuples.migrated (Counter): Rows covered by succeeded jobs
    - batchmigrate.batch_size (Histogram): Batch sizes chosen by the optimizer
    - batchmigrate.transitions (Counter): State machine events applied
    - batchmigrate.time_efficiency (Gauge): Last smoothed time efficiency

All metrics carry the migration's ``migration_id`` and
``migration_identifier`` attributes.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Meter, Observation

from batchmigrate.models import BatchedJob, BatchedMigration, BatchJobStatus

METER_NAME = "batchmigrate"

_meter: Meter | None = None


def _get_meter() -> Meter:
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(METER_NAME, version="0.1.0")
    return _meter


def reset_meter() -> None:
    """Forget the cached global meter. Useful between tests."""
    global _meter
    _meter = None


class NoOpCounter:
    """Counter used when metrics are disabled."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram used when metrics are disabled."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class MigrationMetricSnapshot:
    """
    Values recorded so far, as they would be reported to OpenTelemetry.

    Attributes:
        jobs_by_status: Job executions per resulting status value
        migrated_tuples: Rows covered by succeeded jobs
        timed_jobs: Job executions with a recorded duration
        total_job_duration: Sum of those durations in seconds
        batch_sizes: Latest batch size per migration id
        transitions: Applied state machine events per event value
        time_efficiencies: Last smoothed efficiency per migration id
    """

    jobs_by_status: dict[str, int] = field(default_factory=dict)
    migrated_tuples: int = 0
    timed_jobs: int = 0
    total_job_duration: float = 0.0
    batch_sizes: dict[int, int] = field(default_factory=dict)
    transitions: dict[str, int] = field(default_factory=dict)
    time_efficiencies: dict[int, float] = field(default_factory=dict)

    @property
    def average_job_duration(self) -> float | None:
        if self.timed_jobs == 0:
            return None
        return self.total_job_duration / self.timed_jobs

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobs_by_status": dict(self.jobs_by_status),
            "migrated_tuples": self.migrated_tuples,
            "timed_jobs": self.timed_jobs,
            "total_job_duration": self.total_job_duration,
            "average_job_duration": self.average_job_duration,
            "batch_sizes": dict(self.batch_sizes),
            "transitions": dict(self.transitions),
            "time_efficiencies": dict(self.time_efficiencies),
        }


@dataclass
class MigrationMetrics:
    """
    Metric instruments shared by the coordinator and runner.

    Attributes:
        enable_metrics: Whether to create real instruments (default True)
        meter: Meter to create instruments on. Defaults to the global
            ``batchmigrate`` meter.
    """

    enable_metrics: bool = True
    meter: Meter | None = None

    _jobs_counter: Any = field(default=None, init=False, repr=False)
    _job_duration_histogram: Any = field(default=None, init=False, repr=False)
    _tuples_counter: Any = field(default=None, init=False, repr=False)
    _batch_size_histogram: Any = field(default=None, init=False, repr=False)
    _transitions_counter: Any = field(default=None, init=False, repr=False)

    _jobs_by_status: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _migrated_tuples: int = field(default=0, init=False, repr=False)
    _timed_jobs: int = field(default=0, init=False, repr=False)
    _total_job_duration: float = field(default=0.0, init=False, repr=False)
    _batch_sizes: dict[int, int] = field(default_factory=dict, init=False, repr=False)
    _transitions: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _efficiencies: dict[int, tuple[dict[str, Any], float]] = field(
        default_factory=dict, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        meter = self.meter or _get_meter()
        self._jobs_counter = meter.create_counter(
            name="batchmigrate.jobs",
            unit="jobs",
            description="Batch job executions by resulting status",
        )
        self._job_duration_histogram = meter.create_histogram(
            name="batchmigrate.job.duration",
            unit="s",
            description="Wall clock duration of batch jobs in seconds",
        )
        self._tuples_counter = meter.create_counter(
            name="batchmigrate.tuples.migrated",
            unit="rows",
            description="Rows covered by succeeded batch jobs",
        )
        self._batch_size_histogram = meter.create_histogram(
            name="batchmigrate.batch_size",
            unit="rows",
            description="Batch sizes chosen for migrations",
        )
        self._transitions_counter = meter.create_counter(
            name="batchmigrate.transitions",
            unit="transitions",
            description="Migration state machine events applied",
        )
        meter.create_observable_gauge(
            name="batchmigrate.time_efficiency",
            callbacks=[self._observe_time_efficiency],
            unit="1",
            description="Last smoothed time efficiency of each migration",
        )

    def _setup_noop(self) -> None:
        self._jobs_counter = NoOpCounter()
        self._job_duration_histogram = NoOpHistogram()
        self._tuples_counter = NoOpCounter()
        self._batch_size_histogram = NoOpHistogram()
        self._transitions_counter = NoOpCounter()

    def _observe_time_efficiency(self, options: CallbackOptions) -> Iterable[Observation]:
        for attributes, value in list(self._efficiencies.values()):
            yield Observation(value=value, attributes=attributes)

    def record_job(self, migration: BatchedMigration, job: BatchedJob) -> None:
        """Record the outcome of one job execution."""
        attrs = migration.metric_labels
        status = job.status.value
        self._jobs_counter.add(1, {**attrs, "status": status})
        self._jobs_by_status[status] = self._jobs_by_status.get(status, 0) + 1

        duration = job.duration
        if duration is not None:
            seconds = duration.total_seconds()
            self._job_duration_histogram.record(seconds, {**attrs, "status": status})
            self._timed_jobs += 1
            self._total_job_duration += seconds

        if job.status == BatchJobStatus.SUCCEEDED:
            self._tuples_counter.add(job.batch_size, attrs)
            self._migrated_tuples += job.batch_size

    def record_batch_size(self, migration: BatchedMigration) -> None:
        self._batch_size_histogram.record(migration.batch_size, migration.metric_labels)
        self._batch_sizes[migration.id] = migration.batch_size

    def record_time_efficiency(self, migration: BatchedMigration, efficiency: float) -> None:
        self._efficiencies[migration.id] = (migration.metric_labels, efficiency)

    def record_transition(self, migration: BatchedMigration, event: str) -> None:
        self._transitions_counter.add(1, {**migration.metric_labels, "event": event})
        self._transitions[event] = self._transitions.get(event, 0) + 1

    def get_snapshot(self) -> MigrationMetricSnapshot:
        return MigrationMetricSnapshot(
            jobs_by_status=dict(self._jobs_by_status),
            migrated_tuples=self._migrated_tuples,
            timed_jobs=self._timed_jobs,
            total_job_duration=self._total_job_duration,
            batch_sizes=dict(self._batch_sizes),
            transitions=dict(self._transitions),
            time_efficiencies={
                migration_id: value for migration_id, (_, value) in self._efficiencies.items()
            },
        )

    @property
    def metrics_enabled(self) -> bool:
        return self.enable_metrics


__all__ = [
    "METER_NAME",
    "MigrationMetrics",
    "MigrationMetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
    "reset_meter",
]
