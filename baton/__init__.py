"""Baton: workflow execution engine for multi-agent workflows."""

from .agents import AgentRouter, MockAgentHandler
from .approval import ApprovalGate, ApprovalTimeoutSweeper
from .context import ContextSummarizer, SharedContextStore
from .engine import WorkflowEngine, build_engine
from .executor import StepExecutor
from .handoff import HandoffTracker
from .instances import WorkflowInstanceService
from .persistence import get_repository
from .registry import REGISTRY, WorkflowDefinition, WorkflowStep, register_workflow
from .state import WorkflowStatus

__version__ = "0.1.0"
__all__ = [
    "AgentRouter",
    "MockAgentHandler",
    "ApprovalGate",
    "ApprovalTimeoutSweeper",
    "ContextSummarizer",
    "SharedContextStore",
    "WorkflowEngine",
    "build_engine",
    "StepExecutor",
    "HandoffTracker",
    "WorkflowInstanceService",
    "get_repository",
    "REGISTRY",
    "register_workflow",
    "WorkflowDefinition",
    "WorkflowStep",
    "WorkflowStatus",
]
