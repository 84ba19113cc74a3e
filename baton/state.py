"""Workflow instance status values and the allowed transition table."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class WorkflowStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_FOR_INPUT = "waiting_for_input"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: Dict[WorkflowStatus, FrozenSet[WorkflowStatus]] = {
    WorkflowStatus.CREATED: frozenset({WorkflowStatus.RUNNING}),
    WorkflowStatus.RUNNING: frozenset(
        {
            WorkflowStatus.PAUSED,
            WorkflowStatus.WAITING_FOR_INPUT,
            WorkflowStatus.WAITING_FOR_APPROVAL,
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        }
    ),
    WorkflowStatus.PAUSED: frozenset(
        {WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED}
    ),
    WorkflowStatus.WAITING_FOR_INPUT: frozenset(
        {WorkflowStatus.RUNNING, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
    ),
    # Paused is reachable here so that an approval timeout can park the instance.
    WorkflowStatus.WAITING_FOR_APPROVAL: frozenset(
        {
            WorkflowStatus.RUNNING,
            WorkflowStatus.WAITING_FOR_INPUT,
            WorkflowStatus.PAUSED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        }
    ),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
)


def is_valid_transition(old: WorkflowStatus, new: WorkflowStatus) -> bool:
    """Return ``True`` when ``old -> new`` appears in the transition table."""
    return new in ALLOWED_TRANSITIONS.get(old, frozenset())


def is_terminal(status: WorkflowStatus) -> bool:
    return status in TERMINAL_STATUSES
