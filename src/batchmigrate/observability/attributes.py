"""
Standard span attributes for batchmigrate.

Span names follow ``batchmigrate.<component>.<operation>``. Attribute keys
are namespaced under ``batchmigrate.`` except where an OpenTelemetry
semantic convention exists (``db.*``).

Example:
    >>> from batchmigrate.observability.attributes import ATTR_MIGRATION_ID
    >>>
    >>> with tracer.span(
    ...     "batchmigrate.runner.run_once",
    ...     {ATTR_MIGRATION_ID: migration.id},
    ... ):
    ...     pass
"""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_ID = "batchmigrate.migration.id"
"""Store-assigned migration identifier (integer)."""

ATTR_MIGRATION_IDENTIFIER = "batchmigrate.migration.identifier"
"""Human readable identity, e.g. 'CopyColumn/events.id'."""

ATTR_MIGRATION_STATUS = "batchmigrate.migration.status"
"""Migration status value (e.g. 'active')."""

ATTR_MIGRATION_EVENT = "batchmigrate.migration.event"
"""State machine event applied (e.g. 'finish')."""

ATTR_DATABASE_SCHEMA = "batchmigrate.migration.database_schema"
"""Schema the migration is scoped to."""

# =============================================================================
# Batch Job Attributes
# =============================================================================

ATTR_JOB_ID = "batchmigrate.job.id"
"""Store-assigned batch job identifier (integer)."""

ATTR_JOB_STATUS = "batchmigrate.job.status"
"""Batch job status value."""

ATTR_JOB_MIN_VALUE = "batchmigrate.job.min_value"
"""First key of the batch."""

ATTR_JOB_MAX_VALUE = "batchmigrate.job.max_value"
"""Last key of the batch."""

ATTR_JOB_ATTEMPTS = "batchmigrate.job.attempts"
"""Attempts made so far."""

ATTR_BATCH_SIZE = "batchmigrate.batch_size"
"""Batch size in rows."""

ATTR_JOB_COUNT = "batchmigrate.job.count"
"""Number of jobs touched by an operation."""

# =============================================================================
# Runner Attributes
# =============================================================================

ATTR_RUN_OUTCOME = "batchmigrate.runner.outcome"
"""Outcome of one runner iteration."""

# =============================================================================
# Lock Attributes
# =============================================================================

ATTR_LOCK_KEY = "batchmigrate.lock.key"
"""String key of an advisory lock."""

ATTR_LOCK_ID = "batchmigrate.lock.id"
"""Numeric PostgreSQL advisory lock id."""

ATTR_LOCK_ACQUIRED = "batchmigrate.lock.acquired"
"""Whether the lock was acquired."""

# =============================================================================
# Database Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g. 'postgresql')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g. 'SELECT', 'UPDATE')."""


__all__ = [
    "ATTR_MIGRATION_ID",
    "ATTR_MIGRATION_IDENTIFIER",
    "ATTR_MIGRATION_STATUS",
    "ATTR_MIGRATION_EVENT",
    "ATTR_DATABASE_SCHEMA",
    "ATTR_JOB_ID",
    "ATTR_JOB_STATUS",
    "ATTR_JOB_MIN_VALUE",
    "ATTR_JOB_MAX_VALUE",
    "ATTR_JOB_ATTEMPTS",
    "ATTR_BATCH_SIZE",
    "ATTR_JOB_COUNT",
    "ATTR_RUN_OUTCOME",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_ID",
    "ATTR_LOCK_ACQUIRED",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
