"""
Data models for batched background migrations.

Enums:
    - MigrationStatus: Migration lifecycle statuses
    - BatchJobStatus: Batch job lifecycle statuses

Value types:
    - BatchRange: Inclusive [min, max] key range of one unit of work
    - NewBatchedJob: Field values for a batch job that is about to be stored

Definitions:
    - MigrationDefinition: Validated input for queueing a migration

Core Models:
    - BatchedMigration: A resumable migration over a table column
    - BatchedJob: One executable batch of a migration
    - MigrationProgress: Read-only progress snapshot
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_BATCH_SIZE = 1_000
DEFAULT_SUB_BATCH_SIZE = 100
DEFAULT_PAUSE_MS = 100
DEFAULT_INTERVAL = timedelta(minutes=2)
DEFAULT_MIN_BATCH_SIZE = 1_000
DEFAULT_MAX_BATCH_SIZE = 2_000_000
DEFAULT_SCHEMA = "main"
DEFAULT_BATCH_CLASS_NAME = "primary_key"

MAX_ERROR_LENGTH = 1_000


def normalize_class_name(name: str) -> str:
    """Strip a leading ``::`` namespace marker from a plugin name."""
    return name[2:] if name.startswith("::") else name


class MigrationStatus(Enum):
    """
    Migration lifecycle statuses.

    Every status accepts every event (see batchmigrate.state_machine), so
    FINISHED and FAILED are terminal only in the sense that nothing moves a
    migration out of them automatically.
    """

    PAUSED = "paused"
    """Initial status. The executor does not dispatch jobs."""

    ACTIVE = "active"
    """Eligible for dispatch unless on hold."""

    FINISHED = "finished"
    """Every batch job succeeded."""

    FAILED = "failed"
    """Stopped by the failure monitor or an unrecoverable error."""

    FINALIZING = "finalizing"
    """The remaining jobs are being executed inline."""

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationStatus.FINISHED, MigrationStatus.FAILED)

    @property
    def is_queued(self) -> bool:
        """Queued migrations are active or paused."""
        return self in (MigrationStatus.ACTIVE, MigrationStatus.PAUSED)


class BatchJobStatus(Enum):
    """Batch job lifecycle statuses."""

    PENDING = "pending"
    """Created and waiting to run."""

    RUNNING = "running"
    """Currently executing."""

    SUCCEEDED = "succeeded"
    """Completed successfully."""

    FAILED = "failed"
    """The last attempt failed. Retried automatically."""

    BLOCKED_BY_MAX_ATTEMPTS = "blocked_by_max_attempts"
    """Failed too many times. Excluded from retry until reset."""

    @property
    def is_retriable(self) -> bool:
        return self in (BatchJobStatus.PENDING, BatchJobStatus.FAILED)


@dataclass(frozen=True)
class BatchRange:
    """
    Inclusive key range covered by one batch job.

    Attributes:
        min_value: First key of the range.
        max_value: Last key of the range.
    """

    min_value: int
    max_value: int

    def __post_init__(self) -> None:
        if self.min_value > self.max_value:
            raise ValueError(
                f"min_value ({self.min_value}) must be <= max_value ({self.max_value})"
            )

    @property
    def size(self) -> int:
        return self.max_value - self.min_value + 1

    def __contains__(self, value: object) -> bool:
        return isinstance(value, int) and self.min_value <= value <= self.max_value


class MigrationDefinition(BaseModel):
    """
    Validated description of a migration to queue.

    Example:
        >>> definition = MigrationDefinition(
        ...     job_class_name="CopyColumn",
        ...     table_name="events",
        ...     column_name="id",
        ...     job_arguments=["payload", "payload_v2"],
        ...     min_value=1,
        ...     max_value=1_000_000,
        ... )
    """

    model_config = ConfigDict(frozen=True)

    job_class_name: str = Field(..., min_length=1, description="Registered job class name")
    batch_class_name: str = Field(
        default=DEFAULT_BATCH_CLASS_NAME,
        min_length=1,
        description="Registered batching strategy name",
    )
    table_name: str = Field(..., min_length=1)
    column_name: str = Field(..., min_length=1)
    job_arguments: list[Any] = Field(
        default_factory=list,
        description="Ordered arguments passed to the job class",
    )
    database_schema: str = Field(default=DEFAULT_SCHEMA, min_length=1)
    min_value: int = Field(default=1)
    max_value: int
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    sub_batch_size: int = Field(default=DEFAULT_SUB_BATCH_SIZE, ge=1)
    interval: timedelta = Field(default=DEFAULT_INTERVAL)
    pause_ms: int = Field(default=DEFAULT_PAUSE_MS, ge=0)
    min_batch_size: int = Field(default=DEFAULT_MIN_BATCH_SIZE, ge=1)
    max_batch_size: int = Field(default=DEFAULT_MAX_BATCH_SIZE, ge=1)
    total_tuple_count: int | None = Field(default=None, ge=0)

    @field_validator("job_class_name", "batch_class_name")
    @classmethod
    def _strip_namespace(cls, value: str) -> str:
        value = normalize_class_name(value)
        if not value:
            raise ValueError("class name must not be empty")
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> MigrationDefinition:
        if self.min_value > self.max_value:
            raise ValueError(
                f"min_value ({self.min_value}) must be <= max_value ({self.max_value})"
            )
        if self.sub_batch_size > self.batch_size:
            raise ValueError(
                f"sub_batch_size ({self.sub_batch_size}) must be <= "
                f"batch_size ({self.batch_size})"
            )
        if self.min_batch_size > self.max_batch_size:
            raise ValueError(
                f"min_batch_size ({self.min_batch_size}) must be <= "
                f"max_batch_size ({self.max_batch_size})"
            )
        if self.interval <= timedelta(0):
            raise ValueError("interval must be positive")
        return self

    @property
    def identity(self) -> tuple[str, str, str, list[Any]]:
        return (self.job_class_name, self.table_name, self.column_name, list(self.job_arguments))


@dataclass(frozen=True)
class NewBatchedJob:
    """Field values of a batch job before the store assigns its ID."""

    migration_id: int
    min_value: int
    max_value: int
    batch_size: int
    sub_batch_size: int
    pause_ms: int
    status: BatchJobStatus = BatchJobStatus.PENDING
    attempts: int = 0


@dataclass
class BatchedJob:
    """
    One executable batch of a migration.

    Sizing is copied from the migration when the job is created, so a job
    keeps describing the work it was given after the optimizer changes the
    migration.

    Attributes:
        id: Store-assigned identifier.
        migration_id: Owning migration.
        min_value: First key of the batch.
        max_value: Last key of the batch.
        batch_size: Batch size at creation time.
        sub_batch_size: Sub-batch size at creation time.
        pause_ms: Pause between sub-batches in milliseconds.
        status: Current job status.
        attempts: Number of executions started.
        last_error: Message of the last failure, truncated.
        created_at: When the job was created.
        started_at: When the last attempt started.
        finished_at: When the last attempt ended.
    """

    id: int
    migration_id: int
    min_value: int
    max_value: int
    batch_size: int
    sub_batch_size: int
    pause_ms: int
    status: BatchJobStatus = BatchJobStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def batch_range(self) -> BatchRange:
        return BatchRange(self.min_value, self.max_value)

    @property
    def is_retriable(self) -> bool:
        return self.status.is_retriable

    @property
    def duration(self) -> timedelta | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def time_efficiency(self, interval: timedelta) -> float | None:
        """
        Duration of a succeeded job relative to the pacing interval.

        1.0 means the job took exactly one interval. Values below 1.0
        leave headroom for a larger batch.

        Returns:
            The ratio, or None when the job has not succeeded or lacks
            timestamps.
        """
        if self.status != BatchJobStatus.SUCCEEDED:
            return None
        duration = self.duration
        seconds = interval.total_seconds()
        if duration is None or seconds <= 0:
            return None
        return duration.total_seconds() / seconds

    def record_error(self, error: BaseException | str) -> None:
        message = str(error) or type(error).__name__
        self.last_error = message[:MAX_ERROR_LENGTH]


@dataclass
class BatchedMigration:
    """
    A resumable migration of one table column across a key range.

    This is a mutable dataclass: status, hold and sizing change as the
    executor works through the range. Persist changes through the store.
    """

    id: int
    job_class_name: str
    table_name: str
    column_name: str
    min_value: int
    max_value: int
    job_arguments: list[Any] = field(default_factory=list)
    batch_class_name: str = DEFAULT_BATCH_CLASS_NAME
    database_schema: str = DEFAULT_SCHEMA
    batch_size: int = DEFAULT_BATCH_SIZE
    sub_batch_size: int = DEFAULT_SUB_BATCH_SIZE
    interval: timedelta = DEFAULT_INTERVAL
    pause_ms: int = DEFAULT_PAUSE_MS
    min_batch_size: int = DEFAULT_MIN_BATCH_SIZE
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    total_tuple_count: int | None = None
    status: MigrationStatus = MigrationStatus.PAUSED
    started_at: datetime | None = None
    last_retried_at: datetime | None = None
    on_hold_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        self.job_class_name = normalize_class_name(self.job_class_name)
        self.batch_class_name = normalize_class_name(self.batch_class_name)

    def __str__(self) -> str:
        return f"BatchedMigration[id: {self.id}]"

    @classmethod
    def from_definition(
        cls,
        migration_id: int,
        definition: MigrationDefinition,
        *,
        status: MigrationStatus = MigrationStatus.PAUSED,
        now: datetime | None = None,
    ) -> BatchedMigration:
        return cls(
            id=migration_id,
            job_class_name=definition.job_class_name,
            table_name=definition.table_name,
            column_name=definition.column_name,
            min_value=definition.min_value,
            max_value=definition.max_value,
            job_arguments=list(definition.job_arguments),
            batch_class_name=definition.batch_class_name,
            database_schema=definition.database_schema,
            batch_size=definition.batch_size,
            sub_batch_size=definition.sub_batch_size,
            interval=definition.interval,
            pause_ms=definition.pause_ms,
            min_batch_size=definition.min_batch_size,
            max_batch_size=definition.max_batch_size,
            total_tuple_count=definition.total_tuple_count,
            status=status,
            created_at=now,
            updated_at=now,
        )

    @property
    def identity(self) -> tuple[str, str, str, list[Any]]:
        return (self.job_class_name, self.table_name, self.column_name, list(self.job_arguments))

    @property
    def identifier(self) -> str:
        """Human readable identity, e.g. ``CopyColumn/events.id``."""
        return f"{self.job_class_name}/{self.table_name}.{self.column_name}"

    @property
    def metric_labels(self) -> dict[str, Any]:
        return {
            "migration_id": self.id,
            "migration_identifier": self.identifier,
        }

    def next_min_value(self, last_job: BatchedJob | None) -> int:
        """First key of the next batch: right after the last job, or min_value."""
        if last_job is None:
            return self.min_value
        return last_job.max_value + 1

    def interval_elapsed(
        self,
        last_job: BatchedJob | None,
        now: datetime,
        variance: timedelta = timedelta(0),
    ) -> bool:
        """
        Check whether enough time passed since the last job was created.

        Args:
            last_job: The job with the greatest max_value, if any.
            now: Current time.
            variance: Tolerance subtracted from the interval to absorb
                scheduler jitter.

        Returns:
            True if no job exists or the last one was created at least
            ``interval - variance`` ago.
        """
        if last_job is None or last_job.created_at is None:
            return True
        return last_job.created_at <= now - (self.interval - variance)

    def on_hold(self, now: datetime) -> bool:
        return self.on_hold_until is not None and self.on_hold_until > now

    def is_executable(self, now: datetime) -> bool:
        """Active and not on hold."""
        return self.status == MigrationStatus.ACTIVE and (
            self.on_hold_until is None or self.on_hold_until < now
        )

    def new_job(
        self,
        batch_range: BatchRange,
        *,
        status: BatchJobStatus = BatchJobStatus.PENDING,
    ) -> NewBatchedJob:
        """Describe a job over ``batch_range`` with the current sizing."""
        return NewBatchedJob(
            migration_id=self.id,
            min_value=batch_range.min_value,
            max_value=batch_range.max_value,
            batch_size=self.batch_size,
            sub_batch_size=self.sub_batch_size,
            pause_ms=self.pause_ms,
            status=status,
        )


@dataclass(frozen=True)
class MigrationProgress:
    """
    Point-in-time progress of a migration.

    Attributes:
        migration_id: The migration described.
        status: Migration status at snapshot time.
        migrated_tuple_count: Sum of batch sizes of succeeded jobs.
        total_tuple_count: Estimated rows to migrate, if known.
        job_counts: Number of jobs per status.
        estimated_time_remaining: Remaining batches times the interval,
            when the total is known.
    """

    migration_id: int
    status: MigrationStatus
    migrated_tuple_count: int
    total_tuple_count: int | None
    job_counts: dict[BatchJobStatus, int]
    estimated_time_remaining: timedelta | None = None
    on_hold_until: datetime | None = None

    @property
    def progress_percent(self) -> float | None:
        if self.total_tuple_count is None:
            return None
        if self.total_tuple_count == 0:
            return 100.0
        return min(100.0, self.migrated_tuple_count / self.total_tuple_count * 100)

    @property
    def total_jobs(self) -> int:
        return sum(self.job_counts.values())

    @property
    def failed_jobs(self) -> int:
        return self.job_counts.get(BatchJobStatus.FAILED, 0)

    @classmethod
    def build(
        cls,
        migration: BatchedMigration,
        migrated_tuple_count: int,
        job_counts: dict[BatchJobStatus, int],
    ) -> MigrationProgress:
        remaining: timedelta | None = None
        if migration.total_tuple_count is not None:
            remaining_rows = max(0, migration.total_tuple_count - migrated_tuple_count)
            remaining = migration.interval * math.ceil(remaining_rows / migration.batch_size)
        return cls(
            migration_id=migration.id,
            status=migration.status,
            migrated_tuple_count=migrated_tuple_count,
            total_tuple_count=migration.total_tuple_count,
            job_counts={status: job_counts.get(status, 0) for status in BatchJobStatus},
            estimated_time_remaining=remaining,
            on_hold_until=migration.on_hold_until,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "migration_id": self.migration_id,
            "status": self.status.value,
            "migrated_tuple_count": self.migrated_tuple_count,
            "total_tuple_count": self.total_tuple_count,
            "progress_percent": self.progress_percent,
            "job_counts": {status.value: count for status, count in self.job_counts.items()},
            "estimated_time_remaining_seconds": (
                self.estimated_time_remaining.total_seconds()
                if self.estimated_time_remaining is not None
                else None
            ),
            "on_hold_until": self.on_hold_until.isoformat() if self.on_hold_until else None,
        }


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_SUB_BATCH_SIZE",
    "DEFAULT_PAUSE_MS",
    "DEFAULT_INTERVAL",
    "DEFAULT_MIN_BATCH_SIZE",
    "DEFAULT_MAX_BATCH_SIZE",
    "DEFAULT_SCHEMA",
    "DEFAULT_BATCH_CLASS_NAME",
    "MAX_ERROR_LENGTH",
    "normalize_class_name",
    "MigrationStatus",
    "BatchJobStatus",
    "BatchRange",
    "MigrationDefinition",
    "NewBatchedJob",
    "BatchedJob",
    "BatchedMigration",
    "MigrationProgress",
]
