"""Agent handler contract."""

from __future__ import annotations

from typing import AsyncIterator, Protocol, runtime_checkable

from ..contracts import AgentContext, AgentResult, StepProgress


@runtime_checkable
class AgentHandler(Protocol):
    """Capability that executes one workflow step."""

    async def execute(self, context: AgentContext) -> AgentResult:
        """Run the step and return its result."""

    def execute_streaming(self, context: AgentContext) -> AsyncIterator[StepProgress]:
        """Yield progress updates while the step runs.

        The sequence is finite, cannot be restarted, and stops when the
        surrounding task is cancelled.
        """
