"""Workflow instance lifecycle: creation, transitions and progress."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import CONTEXT_REFRESH_AFTER_HOURS, SYSTEM_ACTOR
from .contracts import (
    StateTransition,
    StepHistoryRecord,
    StepStatus,
    TransitionResult,
    WorkflowInstance,
    utcnow,
)
from .errors import ErrorKind, NotFoundError
from .persistence import WorkflowRepository
from .registry import WorkflowRegistry
from .state import WorkflowStatus, is_terminal, is_valid_transition

logger = logging.getLogger(__name__)

STATE_TRANSITION = "StateTransition"
WORKFLOW_PAUSED = "WorkflowPaused"
WORKFLOW_RESUMED = "WorkflowResumed"
WORKFLOW_CANCELLED = "WorkflowCancelled"
STEP_REVISIT = "StepRevisit"


class StepProgressEntry(BaseModel):
    step_id: str
    name: str
    agent_capability_id: str
    status: str
    completed_at: Optional[datetime] = None


class WorkflowStatusReport(BaseModel):
    """Progress summary of one instance against its definition."""

    instance_id: str
    definition_id: str
    name: str
    status: WorkflowStatus
    current_step: int
    total_steps: int
    percent_complete: int
    started_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    steps: List[StepProgressEntry] = Field(default_factory=list)


def calculate_progress(instance: WorkflowInstance, total_steps: int) -> int:
    if total_steps == 0:
        return 0
    if is_terminal(instance.status):
        return 100
    completed = max(0, instance.current_step_index - 1)
    return min(round(completed / total_steps * 100), 100)


class WorkflowInstanceService:
    """Authoritative owner of instance status.

    Every accepted status change is validated against the transition table,
    saved with the instance's version token and recorded as an append-only
    :class:`StateTransition` event. Rejected requests are reported through a
    failed :class:`TransitionResult` and leave the stored instance untouched.
    """

    def __init__(
        self, repository: WorkflowRepository, registry: WorkflowRegistry
    ) -> None:
        self._repository = repository
        self._registry = registry

    async def create_instance(
        self,
        definition_id: str,
        owner_id: str,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        if self._registry.get_definition(definition_id) is None:
            raise NotFoundError(f"Workflow definition {definition_id} not found")
        if not owner_id:
            raise ValueError("owner_id must be a non-empty string")

        instance = WorkflowInstance(
            definition_id=definition_id,
            owner_id=owner_id,
            workflow_context=dict(initial_context or {}),
        )
        instance.shared_context_ref = instance.id
        await self._repository.create_instance(instance)
        logger.info(
            f"Created workflow instance {instance.id} of {definition_id} for {owner_id}"
        )
        return instance

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return await self._repository.get_instance(instance_id)

    async def list_instances(
        self, owner_id: Optional[str] = None, include_cancelled: bool = False
    ) -> List[WorkflowInstance]:
        instances = await self._repository.list_instances(owner_id)
        if include_cancelled:
            return instances
        return [i for i in instances if i.status != WorkflowStatus.CANCELLED]

    async def get_transition_history(self, instance_id: str) -> List[StateTransition]:
        return await self._repository.get_transitions(instance_id)

    async def get_step_history(self, instance_id: str) -> List[StepHistoryRecord]:
        return await self._repository.get_step_history(instance_id)

    async def save_instance(self, instance: WorkflowInstance) -> bool:
        """Persist non-status changes with the instance's version token."""
        instance.updated_at = utcnow()
        return await self._repository.save_instance(instance)

    async def start_workflow(
        self, instance_id: str, actor: str = SYSTEM_ACTOR
    ) -> TransitionResult:
        def begin(instance: WorkflowInstance) -> None:
            instance.current_step_index = 1

        return await self.transition_state(
            instance_id, WorkflowStatus.RUNNING, actor, mutate=begin
        )

    async def transition_state(
        self,
        instance_id: str,
        new_status: WorkflowStatus,
        actor: str = SYSTEM_ACTOR,
        event_type: str = STATE_TRANSITION,
        mutate: Optional[Callable[[WorkflowInstance], None]] = None,
    ) -> TransitionResult:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            return TransitionResult(
                success=False,
                message=f"Workflow instance {instance_id} not found",
                error_kind=ErrorKind.NOT_FOUND,
            )
        return await self.apply_transition(
            instance, new_status, actor, event_type=event_type, mutate=mutate
        )

    async def apply_transition(
        self,
        instance: WorkflowInstance,
        new_status: WorkflowStatus,
        actor: str = SYSTEM_ACTOR,
        event_type: str = STATE_TRANSITION,
        mutate: Optional[Callable[[WorkflowInstance], None]] = None,
    ) -> TransitionResult:
        """Transition an already loaded ``instance`` and save it.

        ``mutate`` is applied to the instance only once the transition has
        been accepted, so that its changes land in the same versioned write.
        """
        old_status = instance.status
        if not is_valid_transition(old_status, new_status):
            logger.warning(
                f"Invalid state transition for instance {instance.id}: "
                f"{old_status.value} -> {new_status.value}"
            )
            return TransitionResult(
                success=False,
                message=f"Invalid transition from {old_status.value} to {new_status.value}",
                old_status=old_status,
                new_status=old_status,
                error_kind=ErrorKind.INVALID_STATE,
            )

        candidate = instance.model_copy(deep=True)
        candidate.status = new_status
        if mutate is not None:
            mutate(candidate)
        if not await self.save_instance(candidate):
            logger.warning(f"Concurrent update detected on instance {instance.id}")
            return TransitionResult(
                success=False,
                message="Workflow instance was modified concurrently",
                old_status=old_status,
                new_status=old_status,
                error_kind=ErrorKind.CONCURRENCY_CONFLICT,
            )

        for field in WorkflowInstance.model_fields:
            setattr(instance, field, getattr(candidate, field))
        await self._repository.append_transition(
            StateTransition(
                instance_id=instance.id,
                event_type=event_type,
                old_status=old_status,
                new_status=new_status,
                actor=actor,
            )
        )
        logger.info(
            f"Instance {instance.id} transitioned {old_status.value} -> {new_status.value} by {actor}"
        )
        return TransitionResult(
            success=True, old_status=old_status, new_status=new_status
        )

    async def pause_workflow(
        self, instance_id: str, actor: str = SYSTEM_ACTOR
    ) -> TransitionResult:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            return _not_found(instance_id)
        if instance.status == WorkflowStatus.PAUSED:
            return _refused(instance, "Workflow is already paused")

        def stamp(candidate: WorkflowInstance) -> None:
            candidate.paused_at = utcnow()

        result = await self.apply_transition(
            instance, WorkflowStatus.PAUSED, actor, WORKFLOW_PAUSED, mutate=stamp
        )
        if not result.success and result.error_kind == ErrorKind.INVALID_STATE:
            result.message = f"Cannot pause workflow in {instance.status.value} state"
        return result

    async def resume_workflow(
        self, instance_id: str, actor: str = SYSTEM_ACTOR
    ) -> TransitionResult:
        """Resume a paused or input-waiting instance.

        The result message asks the caller to refresh its context when the
        instance has been paused for longer than a day.
        """
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            return _not_found(instance_id)
        if instance.status == WorkflowStatus.CANCELLED:
            return _refused(instance, "Cannot resume a cancelled workflow")
        if instance.status not in (
            WorkflowStatus.PAUSED,
            WorkflowStatus.WAITING_FOR_INPUT,
        ):
            return _refused(
                instance, f"Cannot resume workflow in {instance.status.value} state"
            )

        message = None
        if instance.paused_at is not None and utcnow() - instance.paused_at > timedelta(
            hours=CONTEXT_REFRESH_AFTER_HOURS
        ):
            message = "Workflow resumed. Context has been refreshed."

        result = await self.apply_transition(
            instance, WorkflowStatus.RUNNING, actor, WORKFLOW_RESUMED
        )
        if result.success:
            result.message = message
        return result

    async def cancel_workflow(
        self, instance_id: str, actor: str = SYSTEM_ACTOR
    ) -> TransitionResult:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            return _not_found(instance_id)
        if is_terminal(instance.status):
            return _refused(
                instance, f"Cannot cancel a {instance.status.value} workflow"
            )

        def stamp(candidate: WorkflowInstance) -> None:
            candidate.cancelled_at = utcnow()

        return await self.apply_transition(
            instance, WorkflowStatus.CANCELLED, actor, WORKFLOW_CANCELLED, mutate=stamp
        )

    async def go_to_step(
        self, instance_id: str, step_id: str, actor: str = SYSTEM_ACTOR
    ) -> TransitionResult:
        """Point a running instance back at a step it has already visited."""
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            return _not_found(instance_id)
        if instance.status != WorkflowStatus.RUNNING:
            return _refused(
                instance,
                f"Cannot navigate to step when workflow is in {instance.status.value} state",
            )

        definition = self._registry.get_definition(instance.definition_id)
        if definition is None:
            return TransitionResult(
                success=False,
                message=f"Workflow definition {instance.definition_id} not found",
                error_kind=ErrorKind.NOT_FOUND,
            )
        target = definition.index_of(step_id)
        if target is None:
            return TransitionResult(
                success=False,
                message=f"Step {step_id} not found in workflow definition",
                error_kind=ErrorKind.NOT_FOUND,
            )

        history = await self._repository.get_step_history(instance_id)
        if not any(record.step_id == step_id for record in history):
            return _refused(instance, "Can only navigate to previously visited steps")

        instance.current_step_index = target
        if not await self.save_instance(instance):
            return TransitionResult(
                success=False,
                message="Workflow instance was modified concurrently",
                error_kind=ErrorKind.CONCURRENCY_CONFLICT,
            )
        await self._repository.append_transition(
            StateTransition(
                instance_id=instance_id,
                event_type=STEP_REVISIT,
                old_status=instance.status,
                new_status=instance.status,
                actor=actor,
            )
        )
        logger.info(
            f"Instance {instance_id} moved back to step {step_id} (index {target}) by {actor}"
        )
        return TransitionResult(
            success=True, old_status=instance.status, new_status=instance.status
        )

    async def get_workflow_status(
        self, instance_id: str
    ) -> Optional[WorkflowStatusReport]:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            return None
        definition = self._registry.get_definition(instance.definition_id)
        if definition is None:
            logger.warning(
                f"Workflow definition {instance.definition_id} not found for instance {instance_id}"
            )
            return None

        history = await self._repository.get_step_history(instance_id)
        latest: Dict[str, StepHistoryRecord] = {}
        for record in history:
            latest[record.step_id] = record

        steps = []
        for number, step in enumerate(definition.steps, start=1):
            record = latest.get(step.step_id)
            completed_at = record.completed_at if record is not None else None
            if number == instance.current_step_index and not is_terminal(
                instance.status
            ):
                status = "Current"
            elif record is not None:
                status = {
                    StepStatus.COMPLETED: "Completed",
                    StepStatus.FAILED: "Failed",
                }.get(record.status, "Current")
            elif number < instance.current_step_index:
                status = "Completed"
            else:
                status = "Pending"
            steps.append(
                StepProgressEntry(
                    step_id=step.step_id,
                    name=step.name,
                    agent_capability_id=step.agent_capability_id,
                    status=status,
                    completed_at=completed_at,
                )
            )

        return WorkflowStatusReport(
            instance_id=instance.id,
            definition_id=instance.definition_id,
            name=definition.name,
            status=instance.status,
            current_step=instance.current_step_index,
            total_steps=len(definition.steps),
            percent_complete=calculate_progress(instance, len(definition.steps)),
            started_at=None
            if instance.status == WorkflowStatus.CREATED
            else instance.created_at,
            estimated_completion=_estimate_completion(
                instance, len(definition.steps), history
            ),
            steps=steps,
        )


def _estimate_completion(
    instance: WorkflowInstance, total_steps: int, history: List[StepHistoryRecord]
) -> Optional[datetime]:
    if is_terminal(instance.status) or instance.status == WorkflowStatus.CREATED:
        return None
    remaining = total_steps - instance.current_step_index + 1
    durations = [
        (r.completed_at - r.started_at).total_seconds()
        for r in history
        if r.status == StepStatus.COMPLETED and r.completed_at is not None
    ]
    if remaining <= 0 or not durations:
        return None
    average = sum(durations) / len(durations)
    return utcnow() + timedelta(seconds=average * remaining)


def _not_found(instance_id: str) -> TransitionResult:
    return TransitionResult(
        success=False,
        message=f"Workflow instance {instance_id} not found",
        error_kind=ErrorKind.NOT_FOUND,
    )


def _refused(instance: WorkflowInstance, message: str) -> TransitionResult:
    logger.warning(f"Refused request on instance {instance.id}: {message}")
    return TransitionResult(
        success=False,
        message=message,
        old_status=instance.status,
        new_status=instance.status,
        error_kind=ErrorKind.INVALID_STATE,
    )
