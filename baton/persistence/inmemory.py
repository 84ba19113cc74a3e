"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict, List, Optional

from ..contracts import (
    AgentHandoff,
    ApprovalRequest,
    ApprovalStatus,
    SharedContext,
    StateTransition,
    StepHistoryRecord,
    WorkflowInstance,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Documents are copied on the way in
    and out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}
        self._history: Dict[str, List[StepHistoryRecord]] = {}
        self._transitions: Dict[str, List[StateTransition]] = {}
        self._contexts: Dict[str, SharedContext] = {}
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._handoffs: Dict[str, List[AgentHandoff]] = {}

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        if instance.id in self._instances:
            raise ValueError(f"Workflow instance {instance.id} already exists")
        self._instances[instance.id] = instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        stored = self._instances.get(instance_id)
        return stored.model_copy(deep=True) if stored else None

    async def save_instance(self, instance: WorkflowInstance) -> bool:
        stored = self._instances.get(instance.id)
        if stored is None or stored.version != instance.version:
            return False
        instance.version += 1
        self._instances[instance.id] = instance.model_copy(deep=True)
        return True

    async def list_instances(
        self, owner_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        items = [
            wf.model_copy(deep=True)
            for wf in self._instances.values()
            if owner_id is None or wf.owner_id == owner_id
        ]
        return sorted(items, key=lambda wf: wf.created_at, reverse=True)

    # ------------------------------------------------------------------
    async def append_step_history(self, record: StepHistoryRecord) -> None:
        self._history.setdefault(record.instance_id, []).append(
            record.model_copy(deep=True)
        )

    async def close_step_history(self, record: StepHistoryRecord) -> bool:
        for position, stored in enumerate(self._history.get(record.instance_id, [])):
            if stored.id != record.id:
                continue
            if stored.is_closed:
                return False
            self._history[record.instance_id][position] = record.model_copy(deep=True)
            return True
        return False

    async def get_step_history(self, instance_id: str) -> list[StepHistoryRecord]:
        return [r.model_copy(deep=True) for r in self._history.get(instance_id, [])]

    # ------------------------------------------------------------------
    async def append_transition(self, event: StateTransition) -> None:
        self._transitions.setdefault(event.instance_id, []).append(
            event.model_copy(deep=True)
        )

    async def get_transitions(self, instance_id: str) -> list[StateTransition]:
        return [e.model_copy(deep=True) for e in self._transitions.get(instance_id, [])]

    # ------------------------------------------------------------------
    async def get_shared_context(self, instance_id: str) -> SharedContext | None:
        stored = self._contexts.get(instance_id)
        return stored.model_copy(deep=True) if stored else None

    async def save_shared_context(
        self,
        instance_id: str,
        context: SharedContext,
        expected_version: Optional[int],
    ) -> bool:
        stored = self._contexts.get(instance_id)
        if expected_version is None:
            if stored is not None:
                return False
        elif stored is None or stored.version != expected_version:
            return False
        self._contexts[instance_id] = context.model_copy(deep=True)
        return True

    # ------------------------------------------------------------------
    async def create_approval(self, approval: ApprovalRequest) -> None:
        self._approvals[approval.id] = approval.model_copy(deep=True)

    async def get_approval(self, approval_id: str) -> ApprovalRequest | None:
        stored = self._approvals.get(approval_id)
        return stored.model_copy(deep=True) if stored else None

    async def save_approval(
        self, approval: ApprovalRequest, expected_version: int
    ) -> bool:
        stored = self._approvals.get(approval.id)
        if stored is None or stored.version != expected_version:
            return False
        self._approvals[approval.id] = approval.model_copy(deep=True)
        return True

    async def list_approvals(
        self,
        instance_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRequest]:
        items = [
            a.model_copy(deep=True)
            for a in self._approvals.values()
            if (instance_id is None or a.instance_id == instance_id)
            and (status is None or a.status == status)
        ]
        return sorted(items, key=lambda a: a.requested_at)

    # ------------------------------------------------------------------
    async def append_handoff(self, handoff: AgentHandoff) -> None:
        self._handoffs.setdefault(handoff.instance_id, []).append(
            handoff.model_copy(deep=True)
        )

    async def list_handoffs(self, instance_id: str) -> list[AgentHandoff]:
        items = [h.model_copy(deep=True) for h in self._handoffs.get(instance_id, [])]
        return sorted(items, key=lambda h: h.timestamp)
