"""
Migration state machine.

Transitions are an explicit table from (current status, event) to the
target status. The table is total: every status accepts every event, so a
failed migration can be re-activated by an operator and a finished one can
be paused. Guards run before the table entry is applied; a failing guard
leaves the migration untouched and raises.

    pause     -> paused
    execute   -> active      (records started_at on first entry)
    finish    -> finished    (guard: every batch job succeeded)
    failure   -> failed
    finalize  -> finalizing
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum

from batchmigrate.exceptions import InvalidTransitionError, UnsucceededJobsError
from batchmigrate.models import BatchedMigration, MigrationStatus

logger = logging.getLogger(__name__)


class MigrationEvent(Enum):
    """Events that drive migration status changes."""

    PAUSE = "pause"
    EXECUTE = "execute"
    FINISH = "finish"
    FAILURE = "failure"
    FINALIZE = "finalize"


_EVENT_TARGETS: dict[MigrationEvent, MigrationStatus] = {
    MigrationEvent.PAUSE: MigrationStatus.PAUSED,
    MigrationEvent.EXECUTE: MigrationStatus.ACTIVE,
    MigrationEvent.FINISH: MigrationStatus.FINISHED,
    MigrationEvent.FAILURE: MigrationStatus.FAILED,
    MigrationEvent.FINALIZE: MigrationStatus.FINALIZING,
}

TRANSITIONS: dict[tuple[MigrationStatus, MigrationEvent], MigrationStatus] = {
    (status, event): target
    for status in MigrationStatus
    for event, target in _EVENT_TARGETS.items()
}


def valid_statuses() -> list[MigrationStatus]:
    """All statuses in declaration order."""
    return list(MigrationStatus)


def target_status(current: MigrationStatus, event: MigrationEvent) -> MigrationStatus | None:
    """Look up the transition table. None when there is no entry."""
    return TRANSITIONS.get((current, event))


def apply_transition(
    migration: BatchedMigration,
    event: MigrationEvent,
    *,
    now: datetime,
    unsucceeded_jobs: int = 0,
) -> MigrationStatus:
    """
    Apply ``event`` to ``migration`` in place.

    Args:
        migration: The migration to transition.
        event: The event to apply.
        now: Current time, used for started_at and updated_at.
        unsucceeded_jobs: Number of the migration's batch jobs that are not
            succeeded. Consulted by the finish guard.

    Returns:
        The status the migration was in before the transition.

    Raises:
        InvalidTransitionError: If the table has no entry for the pair.
        UnsucceededJobsError: If finishing with unsucceeded jobs.
    """
    previous = migration.status
    target = target_status(previous, event)
    if target is None:
        raise InvalidTransitionError(previous, event.value, migration_id=migration.id)

    if event == MigrationEvent.FINISH and unsucceeded_jobs > 0:
        raise UnsucceededJobsError(previous, unsucceeded_jobs, migration_id=migration.id)

    migration.status = target
    migration.updated_at = now
    if target == MigrationStatus.ACTIVE and migration.started_at is None:
        migration.started_at = now

    if previous != target:
        logger.info(
            "%s transitioned %s -> %s on %s",
            migration,
            previous.value,
            target.value,
            event.value,
            extra={"migration_id": migration.id, "event": event.value},
        )
    return previous


__all__ = [
    "MigrationEvent",
    "TRANSITIONS",
    "valid_statuses",
    "target_status",
    "apply_transition",
]
