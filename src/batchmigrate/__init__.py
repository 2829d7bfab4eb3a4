"""
batchmigrate - Batched background data migrations for Python.

This library provides:
- Resumable migrations over a table's integer key range, split into batch jobs
- A runner that executes one paced job per iteration under a per-migration lease
- A failure monitor that stops migrations with a sustained failure rate
- An optimizer that adapts batch sizes to a target time efficiency
- Retry, split, hold and finalize operations for operators
- In-memory and PostgreSQL stores
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("batchmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from batchmigrate.clock import Clock, FrozenClock, SystemClock
from batchmigrate.config import RunnerConfig
from batchmigrate.coordinator import DEFAULT_HOLD_DURATION, MigrationCoordinator
from batchmigrate.exceptions import (
    BatchingStrategyNotFoundError,
    BatchJobNotFoundError,
    BatchJobStateError,
    DuplicateRegistrationError,
    ErrorClassification,
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
from batchmigrate.health import FailureMonitor, FailureWindow
from batchmigrate.jobs import BatchContext, BatchJobClass
from batchmigrate.locks import (
    InMemoryLockManager,
    LockAcquisitionError,
    LockInfo,
    LockManager,
    LockNotHeldError,
    PostgreSQLLockManager,
    migration_lock_key,
)
from batchmigrate.metrics import MigrationMetrics, MigrationMetricSnapshot
from batchmigrate.models import (
    BatchedJob,
    BatchedMigration,
    BatchJobStatus,
    BatchRange,
    MigrationDefinition,
    MigrationProgress,
    MigrationStatus,
    NewBatchedJob,
)
from batchmigrate.optimizer import BatchOptimizer, smoothed_time_efficiency
from batchmigrate.registry import (
    JobClassRegistry,
    StrategyRegistry,
    job_class_registry,
    register_batching_strategy,
    register_job_class,
    strategy_registry,
)
from batchmigrate.runner import BatchedMigrationRunner, RunOutcome, RunResult
from batchmigrate.state_machine import MigrationEvent, apply_transition, valid_statuses
from batchmigrate.stores import (
    InMemoryMigrationStore,
    MigrationStore,
    PostgreSQLMigrationStore,
)
from batchmigrate.strategies import BatchingStrategy, PrimaryKeyBatchingStrategy

__all__ = [
    "__version__",
    # Models
    "BatchedJob",
    "BatchedMigration",
    "BatchJobStatus",
    "BatchRange",
    "MigrationDefinition",
    "MigrationProgress",
    "MigrationStatus",
    "NewBatchedJob",
    # State machine
    "MigrationEvent",
    "apply_transition",
    "valid_statuses",
    # Coordination and execution
    "DEFAULT_HOLD_DURATION",
    "MigrationCoordinator",
    "BatchedMigrationRunner",
    "RunnerConfig",
    "RunOutcome",
    "RunResult",
    "FailureMonitor",
    "FailureWindow",
    "BatchOptimizer",
    "smoothed_time_efficiency",
    # Plugins
    "BatchContext",
    "BatchJobClass",
    "BatchingStrategy",
    "PrimaryKeyBatchingStrategy",
    "JobClassRegistry",
    "StrategyRegistry",
    "job_class_registry",
    "strategy_registry",
    "register_job_class",
    "register_batching_strategy",
    # Stores
    "MigrationStore",
    "InMemoryMigrationStore",
    "PostgreSQLMigrationStore",
    # Locks
    "LockManager",
    "LockInfo",
    "LockAcquisitionError",
    "LockNotHeldError",
    "InMemoryLockManager",
    "PostgreSQLLockManager",
    "migration_lock_key",
    # Time
    "Clock",
    "SystemClock",
    "FrozenClock",
    # Metrics
    "MigrationMetrics",
    "MigrationMetricSnapshot",
    # Exceptions
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
