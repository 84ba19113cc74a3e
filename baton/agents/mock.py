"""Scriptable agent handler for tests and demos."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from ..contracts import AgentContext, AgentResult, StepProgress, utcnow


class MockAgentHandler:
    """Agent handler returning canned results.

    Args:
        should_succeed: Whether ``execute`` reports success.
        retryable: Retryable flag attached to failures.
        error_message: Error text attached to failures.
        delay_seconds: Artificial latency before answering.
        output: Output document returned on success. Defaults to a small echo
            of the step and user input.
        confidence_score: Confidence attached to successful results.
        execute_func: Optional coroutine function replacing the canned logic.
        progress_interval: Delay between streaming progress updates.
    """

    def __init__(
        self,
        should_succeed: bool = True,
        retryable: bool = False,
        error_message: Optional[str] = None,
        delay_seconds: float = 0,
        output: Any = None,
        confidence_score: float = 1.0,
        reasoning: Optional[str] = None,
        execute_func: Optional[Callable[[AgentContext], Awaitable[AgentResult]]] = None,
        progress_interval: float = 0.5,
    ) -> None:
        self.should_succeed = should_succeed
        self.retryable = retryable
        self.error_message = error_message
        self.delay_seconds = delay_seconds
        self.output = output
        self.confidence_score = confidence_score
        self.reasoning = reasoning
        self.execute_func = execute_func
        self.progress_interval = progress_interval
        self.calls: list[AgentContext] = []

    async def execute(self, context: AgentContext) -> AgentResult:
        self.calls.append(context)
        if self.execute_func is not None:
            return await self.execute_func(context)

        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)

        if not self.should_succeed:
            return AgentResult(
                success=False,
                error_message=self.error_message or "Mock agent failed",
                retryable=self.retryable,
            )

        output = self.output
        if output is None:
            output = {
                "message": "Step completed successfully",
                "processed_input": context.user_input or "no input",
                "timestamp": utcnow().isoformat(),
            }
        return AgentResult(
            success=True,
            output=output,
            confidence_score=self.confidence_score,
            reasoning=self.reasoning,
        )

    async def execute_streaming(self, context: AgentContext) -> AsyncIterator[StepProgress]:
        for percent in range(0, 101, 10):
            yield StepProgress(
                message=f"Processing step {context.step_name}... {percent}%",
                percent_complete=percent,
            )
            await asyncio.sleep(self.progress_interval)

        yield StepProgress(message="Step completed", percent_complete=100)
