"""Core data contracts for the baton workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .errors import ErrorKind
from .state import WorkflowStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_FOR_APPROVAL = "waiting_for_approval"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    MODIFIED = "modified"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class ConversationMessage(BaseModel):
    """A single message in an instance's rolling conversation."""

    role: str
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowInstance(BaseModel):
    """One running execution of a workflow definition."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    owner_id: str
    current_step_index: int = 0
    status: WorkflowStatus = WorkflowStatus.CREATED
    workflow_context: Dict[str, Any] = Field(default_factory=dict)
    step_data: Dict[str, Any] = Field(default_factory=dict)
    shared_context_ref: Optional[str] = None
    conversation_history: List[ConversationMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paused_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int = 0


class StepHistoryRecord(BaseModel):
    """Audit record of a single step attempt.

    Opened with ``status=running`` before the agent is invoked and closed
    exactly once afterwards.
    """

    id: str = Field(default_factory=new_id)
    instance_id: str
    step_id: str
    step_name: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: StepStatus = StepStatus.RUNNING
    input: Optional[Dict[str, Any]] = None
    output: Optional[Any] = None
    error_message: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.completed_at is not None


class StateTransition(BaseModel):
    """Durable event describing an accepted status change."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    event_type: str = "StateTransition"
    old_status: Optional[WorkflowStatus] = None
    new_status: Optional[WorkflowStatus] = None
    timestamp: datetime = Field(default_factory=utcnow)
    actor: Optional[str] = None


class DecisionRecord(BaseModel):
    step_id: str
    decision: str
    timestamp: datetime = Field(default_factory=utcnow)
    agent_id: Optional[str] = None
    reasoning: Optional[str] = None


class ArtifactReference(BaseModel):
    step_id: str
    artifact_id: str
    artifact_type: str
    path: str
    created_at: datetime = Field(default_factory=utcnow)


class SharedContext(BaseModel):
    """Versioned cross-step memory of a workflow instance."""

    step_outputs: Dict[str, Any] = Field(default_factory=dict)
    decision_history: List[DecisionRecord] = Field(default_factory=list)
    user_preferences: Dict[str, str] = Field(default_factory=dict)
    artifact_references: Dict[str, ArtifactReference] = Field(default_factory=dict)
    version: int = 0
    last_modified_at: datetime = Field(default_factory=utcnow)
    last_modified_by: str = ""


class ApprovalRequest(BaseModel):
    """Human review request raised for a low-confidence agent result."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    agent_id: str
    step_id: str
    proposed_response: Any
    confidence_score: float
    reasoning: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = Field(default_factory=utcnow)
    requested_by: str
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    modified_response: Optional[Any] = None
    rejection_reason: Optional[str] = None
    version: int = 1

    @field_validator("confidence_score")
    @classmethod
    def _ensure_confidence_range(cls, v: float) -> float:
        if v < 0 or v > 1:
            raise ValueError("confidence_score must be between 0 and 1")
        return v

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING


class AgentHandoff(BaseModel):
    """Recorded transfer of control between two agent capabilities."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    from_agent_id: str
    to_agent_id: str
    step_id: str
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class AgentContext(BaseModel):
    """Everything an agent handler receives for one step."""

    instance_id: str
    step_id: str
    step_name: str
    workflow_context: Dict[str, Any] = Field(default_factory=dict)
    step_data: Dict[str, Any] = Field(default_factory=dict)
    step_parameters: Optional[Dict[str, Any]] = None
    conversation_history: List[ConversationMessage] = Field(default_factory=list)
    user_input: Optional[str] = None
    shared_context: Optional[SharedContext] = None


class AgentResult(BaseModel):
    success: bool
    output: Optional[Any] = None
    confidence_score: float = 1.0
    reasoning: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False


class StepProgress(BaseModel):
    """Progress update emitted by a streaming agent."""

    message: Optional[str] = None
    percent_complete: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)


class StepExecutionResult(BaseModel):
    success: bool
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    status: StepStatus = StepStatus.FAILED
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    new_instance_status: Optional[WorkflowStatus] = None
    next_step_index: Optional[int] = None
    requires_approval: bool = False
    pending_approval_id: Optional[str] = None


class TransitionResult(BaseModel):
    success: bool
    message: Optional[str] = None
    old_status: Optional[WorkflowStatus] = None
    new_status: Optional[WorkflowStatus] = None
    error_kind: Optional[ErrorKind] = None


class BestEffortResult(BaseModel):
    """Outcome of an operation whose failure is logged and discarded.

    Callers are free to ignore it; it exists so the outcome stays inspectable.
    """

    ok: bool = True
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "BestEffortResult":
        return cls(ok=False, error=error)
