"""
Exceptions raised by the batched migration engine.

Exception Hierarchy:
    MigrationError (base)
    +-- MigrationNotFoundError
    +-- MigrationAlreadyExistsError
    +-- BatchJobNotFoundError
    +-- MigrationStateError
    |   +-- InvalidTransitionError
    |   +-- UnsucceededJobsError
    +-- BatchJobStateError
    +-- RegistryError
        +-- JobClassNotFoundError
        +-- BatchingStrategyNotFoundError
        +-- DuplicateRegistrationError
        +-- InvalidPluginError

Every exception carries an ErrorClassification describing its severity,
how it can be recovered from and what an operator should do about it.
Transient batch failures are never raised: they are recorded on the
batch job. Only invariant violations, lookups and validation failures
surface as exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from batchmigrate.models import BatchJobStatus, MigrationStatus


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Used for alerting and logging decisions.
    """

    CRITICAL = "critical"
    """System-level failure requiring immediate attention."""

    ERROR = "error"
    """Significant failure that may require operator intervention."""

    WARNING = "warning"
    """Issue that should be monitored but may self-resolve."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """The corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    How an error can be recovered from.

    Attributes:
        RECOVERABLE: Operator action fixes the condition and the
            migration can continue (e.g. retrying failed jobs).
        TRANSIENT: May resolve on its own when retried.
        FATAL: Programming or configuration error; retrying the same
            call will fail the same way.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata attached to every exception type.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }


class MigrationError(Exception):
    """
    Base exception for all batched migration errors.

    Attributes:
        message: Human-readable error description.
        migration_id: The ID of the migration involved, if applicable.
        job_id: The ID of the batch job involved, if applicable.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs",
    )

    def __init__(
        self,
        message: str,
        *,
        migration_id: int | None = None,
        job_id: int | None = None,
    ) -> None:
        self.message = message
        self.migration_id = migration_id
        self.job_id = job_id
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.migration_id is not None:
            parts.append(f"migration_id={self.migration_id}")
        if self.job_id is not None:
            parts.append(f"job_id={self.job_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "migration_id": self.migration_id,
            "job_id": self.job_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class MigrationNotFoundError(MigrationError):
    """Raised when a requested migration does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the migration ID is correct",
    )

    def __init__(self, migration_id: int) -> None:
        super().__init__(
            message=f"Batched migration not found: {migration_id}",
            migration_id=migration_id,
        )


class MigrationAlreadyExistsError(MigrationError):
    """
    Raised when queueing a migration whose identity is already taken.

    The identity of a migration is the tuple
    (job_class_name, table_name, column_name, job_arguments).

    Attributes:
        identity: The conflicting identity tuple.
        existing_migration_id: ID of the migration already holding it, or
            None when the conflict was only detected by the database.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ALREADY_EXISTS",
        category="validation",
        suggested_action=(
            "Use the existing migration, or pass different job_arguments "
            "to distinguish the new one"
        ),
    )

    def __init__(
        self,
        identity: tuple[str, str, str, list[Any]],
        existing_migration_id: int | None = None,
    ) -> None:
        self.identity = identity
        self.existing_migration_id = existing_migration_id
        job_class_name, table_name, column_name, job_arguments = identity
        super().__init__(
            message=(
                f"A batched migration already exists for {job_class_name} on "
                f"{table_name}.{column_name} with arguments {job_arguments!r}"
            ),
            migration_id=existing_migration_id,
        )


class BatchJobNotFoundError(MigrationError):
    """Raised when a requested batch job does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BATCH_JOB_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the batch job ID is correct",
    )

    def __init__(self, job_id: int) -> None:
        super().__init__(message=f"Batch job not found: {job_id}", job_id=job_id)


class MigrationStateError(MigrationError):
    """
    Raised when an operation is not valid for the migration's status.

    Attributes:
        current_status: The status the migration was in.
        operation: The operation that was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_INVALID_STATE",
        category="state",
        suggested_action="Check the migration status before retrying the operation",
    )

    def __init__(
        self,
        message: str,
        current_status: MigrationStatus,
        migration_id: int | None = None,
        operation: str | None = None,
    ) -> None:
        self.current_status = current_status
        self.operation = operation
        super().__init__(message=message, migration_id=migration_id)


class InvalidTransitionError(MigrationStateError):
    """Raised when the transition table has no entry for (status, event)."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_INVALID_TRANSITION",
        category="state",
        suggested_action="Use one of the documented migration events",
    )

    def __init__(
        self,
        current_status: MigrationStatus,
        event: str,
        migration_id: int | None = None,
    ) -> None:
        self.event = event
        super().__init__(
            message=f"No transition for event '{event}' from status '{current_status.value}'",
            current_status=current_status,
            migration_id=migration_id,
            operation=event,
        )


class UnsucceededJobsError(MigrationStateError):
    """
    Raised when finishing a migration that still has unsucceeded jobs.

    Attributes:
        unsucceeded_count: Number of jobs not in the succeeded status.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_UNSUCCEEDED_JOBS",
        category="state",
        suggested_action=(
            "Retry failed jobs and reset blocked jobs, then finish the "
            "migration once every batch job has succeeded"
        ),
    )

    def __init__(
        self,
        current_status: MigrationStatus,
        unsucceeded_count: int,
        migration_id: int | None = None,
    ) -> None:
        self.unsucceeded_count = unsucceeded_count
        super().__init__(
            message=(
                f"Cannot finish migration: {unsucceeded_count} batch job(s) "
                "have not succeeded"
            ),
            current_status=current_status,
            migration_id=migration_id,
            operation="finish",
        )


class BatchJobStateError(MigrationError):
    """Raised when an operation is not valid for a batch job's status."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BATCH_JOB_INVALID_STATE",
        category="state",
        suggested_action="Check the batch job status before retrying the operation",
    )

    def __init__(
        self,
        message: str,
        current_status: BatchJobStatus,
        job_id: int | None = None,
        migration_id: int | None = None,
    ) -> None:
        self.current_status = current_status
        super().__init__(message=message, migration_id=migration_id, job_id=job_id)


class RegistryError(MigrationError):
    """Base class for plugin registry errors."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="REGISTRY_ERROR",
        category="configuration",
        suggested_action="Check plugin registration at application startup",
    )


class JobClassNotFoundError(RegistryError):
    """
    Raised when a migration references an unregistered job class.

    Attributes:
        name: The job class name that was looked up.
        available: Names that are registered.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="JOB_CLASS_NOT_FOUND",
        category="configuration",
        suggested_action="Register the job class before running the migration",
    )

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(
            message=f"Job class '{name}' is not registered. Available: {available}"
        )


class BatchingStrategyNotFoundError(RegistryError):
    """
    Raised when a migration references an unregistered batching strategy.

    Attributes:
        name: The strategy name that was looked up.
        available: Names that are registered.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BATCHING_STRATEGY_NOT_FOUND",
        category="configuration",
        suggested_action="Register the batching strategy before running the migration",
    )

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(
            message=f"Batching strategy '{name}' is not registered. Available: {available}"
        )


class DuplicateRegistrationError(RegistryError):
    """Raised when a name is registered twice with different plugins."""

    def __init__(self, kind: str, name: str, existing: Any, new: Any) -> None:
        self.kind = kind
        self.name = name
        self.existing = existing
        self.new = new
        super().__init__(
            message=(
                f"{kind} '{name}' is already registered to {existing!r}; "
                f"cannot register {new!r}"
            )
        )


class InvalidPluginError(RegistryError):
    """Raised when a registered object does not implement the plugin interface."""

    def __init__(self, kind: str, name: str, reason: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(message=f"Invalid {kind} '{name}': {reason}")


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "MigrationError",
    "MigrationNotFoundError",
    "MigrationAlreadyExistsError",
    "BatchJobNotFoundError",
    "MigrationStateError",
    "InvalidTransitionError",
    "UnsucceededJobsError",
    "BatchJobStateError",
    "RegistryError",
    "JobClassNotFoundError",
    "BatchingStrategyNotFoundError",
    "DuplicateRegistrationError",
    "InvalidPluginError",
]
