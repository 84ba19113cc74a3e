"""Repository abstraction for workflow engine persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import (
    AgentHandoff,
    ApprovalRequest,
    ApprovalStatus,
    SharedContext,
    StateTransition,
    StepHistoryRecord,
    WorkflowInstance,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow engine persistence backends.

    Documents carrying a ``version`` are written only when the stored version
    still equals the one the caller read; a mismatch returns ``False`` and
    leaves the store untouched.
    """

    # Instances -----------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        """Persist a new workflow instance."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def save_instance(self, instance: WorkflowInstance) -> bool:
        """Write ``instance`` if its version is current.

        On success the stored version and ``instance.version`` are both
        incremented.
        """

    async def list_instances(
        self, owner_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        """Return persisted instances, newest first."""

    # Step history --------------------------------------------------------
    async def append_step_history(self, record: StepHistoryRecord) -> None:
        """Insert an open step history record."""

    async def close_step_history(self, record: StepHistoryRecord) -> bool:
        """Close an open record; returns ``False`` if it was already closed."""

    async def get_step_history(self, instance_id: str) -> list[StepHistoryRecord]:
        """Return step history ordered by start time."""

    # State transitions ---------------------------------------------------
    async def append_transition(self, event: StateTransition) -> None:
        """Append a state transition event."""

    async def get_transitions(self, instance_id: str) -> list[StateTransition]:
        """Return transition events in insertion order."""

    # Shared context ------------------------------------------------------
    async def get_shared_context(self, instance_id: str) -> SharedContext | None:
        """Return the shared context document, if any was written."""

    async def save_shared_context(
        self,
        instance_id: str,
        context: SharedContext,
        expected_version: Optional[int],
    ) -> bool:
        """Store ``context``.

        ``expected_version=None`` means the document must not exist yet.
        """

    # Approvals -----------------------------------------------------------
    async def create_approval(self, approval: ApprovalRequest) -> None:
        """Persist a new approval request."""

    async def get_approval(self, approval_id: str) -> ApprovalRequest | None:
        """Retrieve an approval request by id."""

    async def save_approval(
        self, approval: ApprovalRequest, expected_version: int
    ) -> bool:
        """Store ``approval`` if the stored version equals ``expected_version``."""

    async def list_approvals(
        self,
        instance_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRequest]:
        """Return approval requests ordered by request time."""

    # Handoffs ------------------------------------------------------------
    async def append_handoff(self, handoff: AgentHandoff) -> None:
        """Append an agent handoff record."""

    async def list_handoffs(self, instance_id: str) -> list[AgentHandoff]:
        """Return handoffs ordered by timestamp."""
