"""Workflow instance state machine.

Instances move forward only:

    pending -> running -> (paused <-> running) -> completed | failed | cancelled
    running <-> awaiting_approval

Any non-terminal state may be cancelled. Terminal states never change.
"""

from datetime import datetime
from typing import Dict, FrozenSet

from clinical_platform.core.datamodels import InstanceStatus, WorkflowInstance
from clinical_platform.core.exceptions import InvalidTransitionError


ALLOWED_TRANSITIONS: Dict[InstanceStatus, FrozenSet[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset({
        InstanceStatus.RUNNING,
        InstanceStatus.FAILED,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.RUNNING: frozenset({
        InstanceStatus.PAUSED,
        InstanceStatus.AWAITING_APPROVAL,
        InstanceStatus.COMPLETED,
        InstanceStatus.FAILED,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.PAUSED: frozenset({
        InstanceStatus.RUNNING,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.AWAITING_APPROVAL: frozenset({
        InstanceStatus.RUNNING,
        InstanceStatus.FAILED,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.COMPLETED: frozenset(),
    InstanceStatus.FAILED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
}

ACTIVE_STATUSES = frozenset({
    InstanceStatus.PENDING,
    InstanceStatus.RUNNING,
    InstanceStatus.PAUSED,
    InstanceStatus.AWAITING_APPROVAL,
})


def can_transition(current: InstanceStatus, target: InstanceStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(instance: WorkflowInstance, target: InstanceStatus) -> None:
    """Move an instance to a new status.

    Sets ``started_at`` on the first move to running and ``completed_at``
    on reaching a terminal status.

    Raises:
        InvalidTransitionError: If the state machine does not allow the move
    """
    if not can_transition(instance.status, target):
        raise InvalidTransitionError(instance.id, instance.status.value, target.value)

    now = datetime.now()
    instance.status = target
    instance.updated_at = now
    if target == InstanceStatus.RUNNING and instance.started_at is None:
        instance.started_at = now
    if target.is_terminal:
        instance.completed_at = now
