"""Step execution: agent invocation, validation and instance advancement."""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from typing import Any, AsyncIterator, Callable, Optional

from .agents import AgentHandler, AgentRouter
from .approval import ApprovalGate
from .config import EngineConfig
from .contracts import (
    AgentContext,
    AgentResult,
    ApprovalRequest,
    ApprovalStatus,
    ConversationMessage,
    SharedContext,
    StepExecutionResult,
    StepHistoryRecord,
    StepProgress,
    StepStatus,
    WorkflowInstance,
    utcnow,
)
from .context import ContextSummarizer, SharedContextStore
from .errors import ErrorKind
from .handoff import HandoffTracker
from .instances import WorkflowInstanceService
from .notifications import AGENT_HANDOFF, APPROVAL_REQUIRED, NotificationChannel, notify
from .persistence import WorkflowRepository
from .registry import WorkflowDefinition, WorkflowRegistry, WorkflowStep
from .state import WorkflowStatus, is_valid_transition
from .validation import validate_output

logger = logging.getLogger(__name__)


class StepExecutor:
    """Advance workflow instances one step at a time.

    Calls for the same instance are serialized with a per-instance lock that
    is dropped once no call holds or awaits it;
    different instances execute concurrently. Expected failures are reported
    through :class:`StepExecutionResult` with an :class:`ErrorKind` rather
    than raised. The only exception that escapes is task cancellation.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: WorkflowRegistry,
        router: AgentRouter,
        instances: Optional[WorkflowInstanceService] = None,
        shared_context: Optional[SharedContextStore] = None,
        summarizer: Optional[ContextSummarizer] = None,
        handoffs: Optional[HandoffTracker] = None,
        approvals: Optional[ApprovalGate] = None,
        notifier: Optional[NotificationChannel] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self._repository = repository
        self._registry = registry
        self._router = router
        self._instances = instances or WorkflowInstanceService(repository, registry)
        self._shared_context = shared_context or SharedContextStore(
            repository,
            max_attempts=self.config.shared_context_max_attempts,
            backoff_seconds=self.config.shared_context_backoff_seconds,
        )
        self._summarizer = summarizer or ContextSummarizer()
        self._handoffs = handoffs or HandoffTracker(repository)
        self._approvals = approvals or ApprovalGate(repository)
        self._notifier = notifier
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    async def execute_step(
        self,
        instance_id: str,
        user_input: Optional[str] = None,
        token_budget: Optional[int] = None,
    ) -> StepExecutionResult:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        async with lock:
            return await self._execute_step(instance_id, user_input, token_budget)

    async def _execute_step(
        self,
        instance_id: str,
        user_input: Optional[str],
        token_budget: Optional[int],
    ) -> StepExecutionResult:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            return _failure(
                ErrorKind.NOT_FOUND, f"Workflow instance {instance_id} not found"
            )
        definition = self._registry.get_definition(instance.definition_id)
        if definition is None:
            return _failure(
                ErrorKind.NOT_FOUND,
                f"Workflow definition {instance.definition_id} not found",
            )

        if instance.status == WorkflowStatus.WAITING_FOR_APPROVAL:
            return await self._resume_from_approval(instance, definition)
        if instance.status not in (
            WorkflowStatus.RUNNING,
            WorkflowStatus.WAITING_FOR_INPUT,
        ):
            return _failure(
                ErrorKind.INVALID_STATE,
                f"Cannot execute step while workflow is {instance.status.value}",
                new_instance_status=instance.status,
            )

        step = definition.step_at(instance.current_step_index)
        if step is None:
            return _failure(
                ErrorKind.INVALID_STATE,
                f"Invalid step index {instance.current_step_index} for workflow "
                f"{definition.id} with {len(definition.steps)} steps",
                new_instance_status=instance.status,
            )

        record = StepHistoryRecord(
            instance_id=instance.id,
            step_id=step.step_id,
            step_name=step.name,
            input={"user_input": user_input, "step_parameters": step.input_schema},
        )
        await self._repository.append_step_history(record)

        handler = self._router.get_handler(step.agent_capability_id)
        if handler is None:
            message = f"No handler registered for agent capability {step.agent_capability_id}"
            await self._close_history(record, StepStatus.FAILED, error_message=message)
            return _failure(
                ErrorKind.NOT_FOUND,
                message,
                step=step,
                new_instance_status=instance.status,
                next_step_index=instance.current_step_index,
            )

        try:
            return await self._run_step(
                instance, definition, step, record, handler, user_input, token_budget
            )
        except asyncio.CancelledError:
            logger.warning(f"Step {step.step_id} of instance {instance.id} was cancelled")
            if not record.is_closed:
                await self._close_history(
                    record, StepStatus.FAILED, error_message="Step cancelled"
                )
            raise
        except Exception as e:
            logger.exception(
                f"Unexpected error executing step {step.step_id} of instance {instance.id}"
            )
            return await self._fail_unexpectedly(instance.id, step, record, e)

    async def _run_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        record: StepHistoryRecord,
        handler: AgentHandler,
        user_input: Optional[str],
        token_budget: Optional[int],
    ) -> StepExecutionResult:
        if instance.status == WorkflowStatus.WAITING_FOR_INPUT:
            resumed = await self._instances.apply_transition(
                instance, WorkflowStatus.RUNNING, actor=instance.owner_id
            )
            if not resumed.success:
                await self._close_history(
                    record, StepStatus.FAILED, error_message=resumed.message
                )
                return _failure(
                    resumed.error_kind or ErrorKind.INVALID_STATE,
                    resumed.message or "Could not resume workflow",
                    step=step,
                    new_instance_status=instance.status,
                )

        await self._track_handoff(instance, definition, step)

        context = await self.build_agent_context(instance, step, user_input, token_budget)
        result = await self._invoke(handler, context)

        if not result.success:
            return await self._fail_agent(instance, step, record, result)

        if step.output_schema is not None:
            violations = validate_output(step.output_schema, result.output)
            if violations:
                return await self._fail_validation(instance, step, record, violations)

        threshold = (
            step.approval_threshold
            if step.approval_threshold is not None
            else self.config.approval_threshold
        )
        if self._approvals.requires_approval(result.confidence_score, threshold):
            return await self._request_approval(instance, step, record, result)

        return await self._complete_step(
            instance, definition, step, record, result.output, user_input
        )

    async def _invoke(self, handler: AgentHandler, context: AgentContext) -> AgentResult:
        timeout = self.config.agent_timeout_seconds
        if not timeout:
            return await handler.execute(context)
        try:
            return await asyncio.wait_for(handler.execute(context), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Agent for step {context.step_id} timed out after {timeout} seconds"
            )
            return AgentResult(
                success=False,
                error_message=f"Agent timed out after {timeout} seconds",
                retryable=True,
            )

    async def build_agent_context(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        user_input: Optional[str] = None,
        token_budget: Optional[int] = None,
    ) -> AgentContext:
        shared = await self._shared_context.get(instance.id) or SharedContext()
        budget = token_budget if token_budget is not None else self.config.context_token_budget
        window = self.config.conversation_window
        return AgentContext(
            instance_id=instance.id,
            step_id=step.step_id,
            step_name=step.name,
            workflow_context=instance.workflow_context,
            step_data=instance.step_data,
            step_parameters=step.input_schema,
            conversation_history=instance.conversation_history[-window:] if window > 0 else [],
            user_input=user_input,
            shared_context=self._summarizer.summarize_if_needed(shared, budget),
        )

    async def _track_handoff(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep,
    ) -> None:
        previous = definition.step_at(instance.current_step_index - 1)
        if previous is None or previous.agent_capability_id == step.agent_capability_id:
            return
        try:
            if await self._handoffs.get_current_agent(instance.id) == step.agent_capability_id:
                return
        except Exception as e:
            logger.warning(f"Could not read handoff history of instance {instance.id}: {e}")

        reason = f"Step {step.name} is handled by {step.agent_capability_id}"
        recorded = await self._handoffs.record_handoff(
            instance.id,
            previous.agent_capability_id,
            step.agent_capability_id,
            step.step_id,
            reason=reason,
        )
        if recorded.ok:
            await notify(
                self._notifier,
                AGENT_HANDOFF,
                {
                    "workflow_instance_id": instance.id,
                    "from_agent_id": previous.agent_capability_id,
                    "to_agent_id": step.agent_capability_id,
                    "step_id": step.step_id,
                    "step_name": step.name,
                    "reason": reason,
                },
            )

    async def _fail_agent(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        record: StepHistoryRecord,
        result: AgentResult,
    ) -> StepExecutionResult:
        message = result.error_message or "Agent execution failed"
        await self._close_history(record, StepStatus.FAILED, error_message=message)
        target = (
            WorkflowStatus.WAITING_FOR_INPUT if result.retryable else WorkflowStatus.FAILED
        )
        await self._instances.apply_transition(instance, target)
        logger.warning(
            f"Agent failed on step {step.step_id} of instance {instance.id} "
            f"(retryable={result.retryable}): {message}"
        )
        return _failure(
            ErrorKind.AGENT_FAILURE,
            message,
            step=step,
            new_instance_status=instance.status,
            next_step_index=instance.current_step_index,
        )

    async def _fail_validation(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        record: StepHistoryRecord,
        violations: list[str],
    ) -> StepExecutionResult:
        message = "Output validation failed: " + "; ".join(violations)
        await self._close_history(record, StepStatus.FAILED, error_message=message)
        await self._instances.apply_transition(instance, WorkflowStatus.FAILED)
        logger.warning(f"Step {step.step_id} of instance {instance.id}: {message}")
        return _failure(
            ErrorKind.VALIDATION_FAILURE,
            message,
            step=step,
            new_instance_status=instance.status,
            next_step_index=instance.current_step_index,
        )

    async def _fail_unexpectedly(
        self,
        instance_id: str,
        step: WorkflowStep,
        record: StepHistoryRecord,
        error: Exception,
    ) -> StepExecutionResult:
        message = f"Unexpected error: {error}"
        status: Optional[WorkflowStatus] = None
        try:
            if not record.is_closed:
                await self._close_history(record, StepStatus.FAILED, error_message=message)
            current = await self._repository.get_instance(instance_id)
            if current is not None:
                if is_valid_transition(current.status, WorkflowStatus.FAILED):
                    await self._instances.apply_transition(current, WorkflowStatus.FAILED)
                status = current.status
        except Exception as e:
            logger.error(f"Failed to record failure of instance {instance_id}: {e}")
        return _failure(
            ErrorKind.UNEXPECTED, message, step=step, new_instance_status=status
        )

    async def _request_approval(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        record: StepHistoryRecord,
        result: AgentResult,
    ) -> StepExecutionResult:
        await self._close_history(
            record, StepStatus.WAITING_FOR_APPROVAL, output=result.output
        )
        approval = await self._approvals.create_approval_request(
            instance_id=instance.id,
            agent_id=step.agent_capability_id,
            step_id=step.step_id,
            proposed_response=result.output,
            confidence_score=result.confidence_score,
            requested_by=instance.owner_id,
            reasoning=result.reasoning,
        )
        await self._instances.apply_transition(
            instance, WorkflowStatus.WAITING_FOR_APPROVAL
        )
        await notify(
            self._notifier,
            APPROVAL_REQUIRED,
            {
                "approval_request_id": approval.id,
                "workflow_instance_id": instance.id,
                "step_id": step.step_id,
                "agent_id": step.agent_capability_id,
                "confidence_score": result.confidence_score,
                "proposed_response": result.output,
                "reasoning": result.reasoning,
            },
        )
        return StepExecutionResult(
            success=True,
            step_id=step.step_id,
            step_name=step.name,
            status=StepStatus.WAITING_FOR_APPROVAL,
            new_instance_status=instance.status,
            next_step_index=instance.current_step_index,
            requires_approval=True,
            pending_approval_id=approval.id,
        )

    async def _resume_from_approval(
        self, instance: WorkflowInstance, definition: WorkflowDefinition
    ) -> StepExecutionResult:
        step = definition.step_at(instance.current_step_index)
        if step is None:
            return _failure(
                ErrorKind.INVALID_STATE,
                f"Invalid step index {instance.current_step_index}",
                new_instance_status=instance.status,
            )
        approval = await self._approvals.get_latest_approval(instance.id, step.step_id)
        if approval is None:
            return _failure(
                ErrorKind.INVALID_STATE,
                f"No approval request found for step {step.step_id}",
                step=step,
                new_instance_status=instance.status,
            )

        if approval.status == ApprovalStatus.PENDING:
            result = _failure(
                ErrorKind.INVALID_STATE,
                f"Step {step.step_id} is awaiting approval",
                step=step,
                new_instance_status=instance.status,
                next_step_index=instance.current_step_index,
            )
            result.status = StepStatus.WAITING_FOR_APPROVAL
            result.requires_approval = True
            result.pending_approval_id = approval.id
            return result

        if approval.status in (ApprovalStatus.REJECTED, ApprovalStatus.TIMED_OUT):
            await self._instances.apply_transition(
                instance,
                WorkflowStatus.WAITING_FOR_INPUT,
                actor=approval.resolved_by or instance.owner_id,
            )
            detail = approval.rejection_reason or approval.status.value
            return _failure(
                ErrorKind.AGENT_FAILURE,
                f"Proposed response was not approved: {detail}",
                step=step,
                new_instance_status=instance.status,
                next_step_index=instance.current_step_index,
            )

        return await self._complete_approved(instance, definition, step, approval)

    async def _complete_approved(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        approval: ApprovalRequest,
    ) -> StepExecutionResult:
        resumed = await self._instances.apply_transition(
            instance,
            WorkflowStatus.RUNNING,
            actor=approval.resolved_by or instance.owner_id,
        )
        if not resumed.success:
            return _failure(
                resumed.error_kind or ErrorKind.INVALID_STATE,
                resumed.message or "Could not resume workflow",
                step=step,
                new_instance_status=instance.status,
            )

        output = (
            approval.modified_response
            if approval.status == ApprovalStatus.MODIFIED
            else approval.proposed_response
        )
        record = StepHistoryRecord(
            instance_id=instance.id,
            step_id=step.step_id,
            step_name=step.name,
            input={"approval_request_id": approval.id, "approval_status": approval.status.value},
        )
        await self._repository.append_step_history(record)

        try:
            if approval.status == ApprovalStatus.MODIFIED and step.output_schema is not None:
                violations = validate_output(step.output_schema, output)
                if violations:
                    return await self._fail_validation(instance, step, record, violations)
            return await self._complete_step(instance, definition, step, record, output)
        except asyncio.CancelledError:
            if not record.is_closed:
                await self._close_history(
                    record, StepStatus.FAILED, error_message="Step cancelled"
                )
            raise
        except Exception as e:
            logger.exception(
                f"Unexpected error completing approved step {step.step_id} of instance {instance.id}"
            )
            return await self._fail_unexpectedly(instance.id, step, record, e)

    async def _complete_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        record: StepHistoryRecord,
        output: Any,
        user_input: Optional[str] = None,
    ) -> StepExecutionResult:
        def advance(candidate: WorkflowInstance) -> None:
            candidate.step_data[step.step_id] = output
            if user_input:
                candidate.conversation_history.append(
                    ConversationMessage(role="user", content=user_input)
                )
            candidate.conversation_history.append(
                ConversationMessage(role="assistant", content=_as_text(output))
            )
            candidate.current_step_index += 1

        commit = asyncio.ensure_future(
            self._commit_step(instance, definition, record, advance, output)
        )
        try:
            saved = await asyncio.shield(commit)
        except asyncio.CancelledError:
            # The save may already be durable; the history record has to follow it.
            await commit
            raise

        if not saved:
            return _failure(
                ErrorKind.CONCURRENCY_CONFLICT,
                record.error_message or "Workflow instance was modified during step execution",
                step=step,
                new_instance_status=instance.status,
                next_step_index=instance.current_step_index,
            )

        await self._persist_shared_output(instance.id, step, output)
        logger.info(
            f"Completed step {step.step_id} of instance {instance.id}; "
            f"next index {instance.current_step_index}"
        )
        return StepExecutionResult(
            success=True,
            step_id=step.step_id,
            step_name=step.name,
            status=StepStatus.COMPLETED,
            new_instance_status=instance.status,
            next_step_index=instance.current_step_index,
        )

    async def _commit_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        record: StepHistoryRecord,
        advance: Callable[[WorkflowInstance], None],
        output: Any,
    ) -> bool:
        """Save the advanced instance and close ``record`` to match the outcome."""
        if instance.current_step_index >= len(definition.steps):
            transition = await self._instances.apply_transition(
                instance, WorkflowStatus.COMPLETED, mutate=advance
            )
            saved = transition.success
        else:
            saved = await self._save_with(instance, advance)

        if saved:
            await self._close_history(record, StepStatus.COMPLETED, output=output)
        else:
            await self._close_history(
                record,
                StepStatus.FAILED,
                error_message="Workflow instance was modified during step execution",
            )
        return saved

    async def _save_with(
        self,
        instance: WorkflowInstance,
        mutate: Callable[[WorkflowInstance], None],
    ) -> bool:
        candidate = instance.model_copy(deep=True)
        mutate(candidate)
        if not await self._instances.save_instance(candidate):
            return False
        for field in WorkflowInstance.model_fields:
            setattr(instance, field, getattr(candidate, field))
        return True

    async def _persist_shared_output(
        self, instance_id: str, step: WorkflowStep, output: Any
    ) -> None:
        try:
            await self._shared_context.add_step_output(
                instance_id, step.step_id, output, modified_by=step.agent_capability_id
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"Failed to store output of step {step.step_id} in shared context "
                f"of instance {instance_id}: {e}"
            )

    async def _close_history(
        self,
        record: StepHistoryRecord,
        status: StepStatus,
        output: Any = None,
        error_message: Optional[str] = None,
    ) -> None:
        closed = record.model_copy(
            update={
                "status": status,
                "completed_at": utcnow(),
                "output": output,
                "error_message": error_message,
            }
        )
        if not await self._repository.close_step_history(closed):
            logger.warning(f"Step history record {record.id} was already closed")
        record.status = closed.status
        record.completed_at = closed.completed_at
        record.output = closed.output
        record.error_message = closed.error_message

    async def execute_step_streaming(
        self,
        instance_id: str,
        user_input: Optional[str] = None,
        token_budget: Optional[int] = None,
    ) -> AsyncIterator[StepProgress]:
        """Forward the current step's progress once it has run long enough.

        Updates emitted before ``streaming_threshold_seconds`` have elapsed are
        dropped. A failed precondition yields a single diagnostic update.
        """
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            yield StepProgress(message=f"Workflow instance {instance_id} not found")
            return
        definition = self._registry.get_definition(instance.definition_id)
        if definition is None:
            yield StepProgress(
                message=f"Workflow definition {instance.definition_id} not found"
            )
            return
        if instance.status not in (
            WorkflowStatus.RUNNING,
            WorkflowStatus.WAITING_FOR_INPUT,
        ):
            yield StepProgress(
                message=f"Cannot execute step while workflow is {instance.status.value}"
            )
            return
        step = definition.step_at(instance.current_step_index)
        if step is None:
            yield StepProgress(
                message=f"Invalid step index {instance.current_step_index}"
            )
            return
        handler = self._router.get_handler(step.agent_capability_id)
        if handler is None:
            yield StepProgress(
                message=f"No handler registered for agent capability {step.agent_capability_id}"
            )
            return

        context = await self.build_agent_context(instance, step, user_input, token_budget)
        loop = asyncio.get_running_loop()
        started = loop.time()
        threshold = self.config.streaming_threshold_seconds
        async for progress in handler.execute_streaming(context):
            if loop.time() - started >= threshold:
                yield progress


def _as_text(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)


def _failure(
    kind: ErrorKind,
    message: str,
    step: Optional[WorkflowStep] = None,
    new_instance_status: Optional[WorkflowStatus] = None,
    next_step_index: Optional[int] = None,
) -> StepExecutionResult:
    return StepExecutionResult(
        success=False,
        step_id=step.step_id if step else None,
        step_name=step.name if step else None,
        status=StepStatus.FAILED,
        error_message=message,
        error_kind=kind,
        new_instance_status=new_instance_status,
        next_step_index=next_step_index,
    )
