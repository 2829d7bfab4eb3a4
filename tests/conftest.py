"""
Shared pytest fixtures for the batchmigrate tests.

This module provides:
- Time fixtures (clock)
- Store and registry fixtures (store, strategies, job_classes)
- Coordinator and runner fixtures
- Job class doubles (RecordingJob, FailingJob, FlakyJob)
- OpenTelemetry metrics fixtures (metric_reader, meter)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from batchmigrate.clock import FrozenClock
from batchmigrate.config import RunnerConfig
from batchmigrate.coordinator import MigrationCoordinator
from batchmigrate.jobs import BatchContext
from batchmigrate.locks.in_memory import InMemoryLockManager
from batchmigrate.metrics import MigrationMetrics
from batchmigrate.models import MigrationDefinition
from batchmigrate.registry import JobClassRegistry, StrategyRegistry, default_strategy_registry
from batchmigrate.runner import BatchedMigrationRunner
from batchmigrate.stores.in_memory import InMemoryMigrationStore

START_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
INTERVAL = timedelta(minutes=2)


# ============================================================================
# Job class doubles
# ============================================================================


class RecordingJob:
    """Succeeds and records every context it was given."""

    name = "RecordingJob"

    def __init__(self) -> None:
        self.contexts: list[BatchContext] = []

    async def perform(self, context: BatchContext) -> None:
        self.contexts.append(context)

    @property
    def ranges(self) -> list[tuple[int, int]]:
        return [(c.min_value, c.max_value) for c in self.contexts]


class FailingJob:
    """Always raises."""

    name = "FailingJob"

    def __init__(self, message: str = "boom") -> None:
        self.message = message
        self.calls = 0

    async def perform(self, context: BatchContext) -> None:
        self.calls += 1
        raise RuntimeError(self.message)


class FlakyJob:
    """Fails the first ``failures`` calls, then succeeds."""

    name = "FlakyJob"

    def __init__(self, failures: int = 1) -> None:
        self.failures = failures
        self.calls = 0

    async def perform(self, context: BatchContext) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")


# ============================================================================
# Core fixtures
# ============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    """A frozen clock starting at START_TIME."""
    return FrozenClock(START_TIME)


@pytest.fixture
def store() -> InMemoryMigrationStore:
    return InMemoryMigrationStore(enable_tracing=False)


@pytest.fixture
def strategies() -> StrategyRegistry:
    """A private strategy registry with the built-in strategies."""
    return default_strategy_registry()


@pytest.fixture
def recording_job() -> RecordingJob:
    return RecordingJob()


@pytest.fixture
def failing_job() -> FailingJob:
    return FailingJob()


@pytest.fixture
def job_classes(recording_job: RecordingJob, failing_job: FailingJob) -> JobClassRegistry:
    """A private job class registry with RecordingJob and FailingJob instances."""
    registry = JobClassRegistry()
    registry.register(recording_job)
    registry.register(failing_job)
    return registry


@pytest.fixture
def metrics() -> MigrationMetrics:
    return MigrationMetrics(enable_metrics=False)


@pytest.fixture
def coordinator(
    store: InMemoryMigrationStore,
    strategies: StrategyRegistry,
    clock: FrozenClock,
    metrics: MigrationMetrics,
) -> MigrationCoordinator:
    return MigrationCoordinator(
        store,
        strategies=strategies,
        clock=clock,
        metrics=metrics,
        enable_tracing=False,
    )


@pytest.fixture
def runner_config() -> RunnerConfig:
    return RunnerConfig(poll_interval=0.01)


@pytest.fixture
def lock_manager() -> InMemoryLockManager:
    return InMemoryLockManager(holder_id="test-runner", enable_tracing=False)


@pytest.fixture
def runner(
    coordinator: MigrationCoordinator,
    job_classes: JobClassRegistry,
    runner_config: RunnerConfig,
    lock_manager: InMemoryLockManager,
) -> BatchedMigrationRunner:
    return BatchedMigrationRunner(
        coordinator,
        job_classes=job_classes,
        config=runner_config,
        lock_manager=lock_manager,
        enable_tracing=False,
    )


@pytest.fixture
def make_definition() -> Callable[..., MigrationDefinition]:
    """
    Factory for migration definitions.

    Defaults describe a RecordingJob migration over keys 1..1000 in
    batches of 100 with no pause between sub-batches.
    """

    def _make(**overrides: Any) -> MigrationDefinition:
        values: dict[str, Any] = {
            "job_class_name": "RecordingJob",
            "table_name": "events",
            "column_name": "id",
            "job_arguments": ["payload"],
            "min_value": 1,
            "max_value": 1_000,
            "batch_size": 100,
            "sub_batch_size": 10,
            "pause_ms": 0,
            "min_batch_size": 10,
            "max_batch_size": 10_000,
            "interval": INTERVAL,
        }
        values.update(overrides)
        return MigrationDefinition(**values)

    return _make


# ============================================================================
# OpenTelemetry metrics fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    """A fresh InMemoryMetricReader for inspecting collected metrics."""
    return InMemoryMetricReader()


@pytest.fixture
def meter(metric_reader: InMemoryMetricReader) -> Any:
    """A meter whose measurements are collected by ``metric_reader``."""
    provider = MeterProvider(metric_readers=[metric_reader])
    yield provider.get_meter("batchmigrate-test")
    provider.shutdown()
