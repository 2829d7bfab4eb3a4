"""
Observability utilities for batchmigrate.

Tracing goes through the composition-based Tracer protocol; metrics live in
batchmigrate.metrics. Attribute names are shared through
batchmigrate.observability.attributes.

Example:
    >>> from batchmigrate.observability import create_tracer
    >>>
    >>> class MyStore:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from batchmigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DATABASE_SCHEMA,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_JOB_ATTEMPTS,
    ATTR_JOB_COUNT,
    ATTR_JOB_ID,
    ATTR_JOB_MAX_VALUE,
    ATTR_JOB_MIN_VALUE,
    ATTR_JOB_STATUS,
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_ID,
    ATTR_LOCK_KEY,
    ATTR_MIGRATION_EVENT,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_IDENTIFIER,
    ATTR_MIGRATION_STATUS,
    ATTR_RUN_OUTCOME,
)
from batchmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
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
    "ATTR_JOB_COUNT",
    "ATTR_BATCH_SIZE",
    "ATTR_RUN_OUTCOME",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_ID",
    "ATTR_LOCK_ACQUIRED",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
