"""
Unit tests for exceptions module.

Tests cover:
- Exception hierarchy
- Classification metadata
- Context attributes and string formatting
"""

import logging

import pytest

from batchmigrate.exceptions import (
    BatchingStrategyNotFoundError,
    BatchJobNotFoundError,
    BatchJobStateError,
    DuplicateRegistrationError,
    ErrorRecoverability,
    ErrorSeverity,
    InvalidPluginError,
    InvalidTransitionError,
    JobClassNotFoundError,
    MigrationAlreadyExistsError,
    MigrationError,
    MigrationNotFoundError,
    MigrationStateError,
    RegistryError,
    UnsucceededJobsError,
)
from batchmigrate.models import BatchJobStatus, MigrationStatus


class TestHierarchy:
    @pytest.mark.parametrize(
        ("error", "parent"),
        [
            (MigrationNotFoundError(1), MigrationError),
            (MigrationAlreadyExistsError(("Job", "t", "id", []), 1), MigrationError),
            (BatchJobNotFoundError(1), MigrationError),
            (InvalidTransitionError(MigrationStatus.ACTIVE, "resume"), MigrationStateError),
            (UnsucceededJobsError(MigrationStatus.ACTIVE, 2), MigrationStateError),
            (BatchJobStateError("nope", BatchJobStatus.PENDING), MigrationError),
            (JobClassNotFoundError("Job", []), RegistryError),
            (BatchingStrategyNotFoundError("sparse", []), RegistryError),
            (DuplicateRegistrationError("job class", "Job", object, int), RegistryError),
            (InvalidPluginError("job class", "Job", "bad"), RegistryError),
        ],
    )
    def test_parent(self, error: MigrationError, parent: type) -> None:
        assert isinstance(error, parent)
        assert isinstance(error, MigrationError)


class TestSeverity:
    def test_should_alert(self) -> None:
        assert ErrorSeverity.CRITICAL.should_alert
        assert ErrorSeverity.ERROR.should_alert
        assert not ErrorSeverity.WARNING.should_alert
        assert not ErrorSeverity.INFO.should_alert

    def test_log_level(self) -> None:
        assert ErrorSeverity.WARNING.log_level == logging.WARNING
        assert ErrorSeverity.CRITICAL.log_level == logging.CRITICAL

    def test_only_transient_errors_retry(self) -> None:
        assert ErrorRecoverability.TRANSIENT.should_retry
        assert not ErrorRecoverability.RECOVERABLE.should_retry
        assert not ErrorRecoverability.FATAL.should_retry


class TestMigrationErrors:
    """Tests for context carried by migration errors."""

    def test_str_includes_ids(self) -> None:
        error = MigrationError("broken", migration_id=4, job_id=9)

        assert str(error) == "broken migration_id=4 job_id=9"

    def test_not_found(self) -> None:
        error = MigrationNotFoundError(12)

        assert error.migration_id == 12
        assert error.error_code == "MIGRATION_NOT_FOUND"
        assert "12" in str(error)

    def test_already_exists(self) -> None:
        identity = ("CopyColumn", "events", "id", ["payload"])
        error = MigrationAlreadyExistsError(identity, 3)

        assert error.identity == identity
        assert error.existing_migration_id == 3
        assert "CopyColumn on events.id" in error.message
        assert error.severity == ErrorSeverity.WARNING

    def test_invalid_transition(self) -> None:
        error = InvalidTransitionError(MigrationStatus.FINISHED, "resume", migration_id=1)

        assert error.event == "resume"
        assert error.operation == "resume"
        assert error.current_status == MigrationStatus.FINISHED
        assert "'finished'" in error.message

    def test_unsucceeded_jobs_is_recoverable(self) -> None:
        error = UnsucceededJobsError(MigrationStatus.ACTIVE, 3, migration_id=1)

        assert error.unsucceeded_count == 3
        assert error.operation == "finish"
        assert error.recoverability == ErrorRecoverability.RECOVERABLE

    def test_batch_job_state(self) -> None:
        error = BatchJobStateError(
            "cannot split", BatchJobStatus.SUCCEEDED, job_id=5, migration_id=2
        )

        assert error.current_status == BatchJobStatus.SUCCEEDED
        assert str(error) == "cannot split migration_id=2 job_id=5"


class TestRegistryErrors:
    def test_job_class_not_found(self) -> None:
        error = JobClassNotFoundError("Missing", ["CopyColumn"])

        assert error.name == "Missing"
        assert error.available == ["CopyColumn"]
        assert error.error_code == "JOB_CLASS_NOT_FOUND"

    def test_duplicate_registration(self) -> None:
        error = DuplicateRegistrationError("job class", "Job", int, str)

        assert (error.kind, error.name, error.existing, error.new) == ("job class", "Job", int, str)

    def test_invalid_plugin(self) -> None:
        error = InvalidPluginError("batching strategy", "sparse", "missing method 'next_range'")

        assert str(error) == "Invalid batching strategy 'sparse': missing method 'next_range'"


class TestToDict:
    def test_to_dict(self) -> None:
        data = MigrationNotFoundError(7).to_dict()

        assert data["migration_id"] == 7
        assert data["job_id"] is None
        assert data["error_code"] == "MIGRATION_NOT_FOUND"
        assert data["classification"] == {
            "severity": "error",
            "recoverability": "fatal",
            "error_code": "MIGRATION_NOT_FOUND",
            "category": "lookup",
            "suggested_action": "Verify the migration ID is correct",
        }
