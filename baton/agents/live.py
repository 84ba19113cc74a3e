"""Agent handler backed by a pydantic-ai ``Agent``."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx
from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError

from ..contracts import AgentContext, AgentResult, StepProgress

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_TEMPLATE = (
    "You are executing workflow step '{step_name}' ({step_id}).\n"
    "Workflow context: {workflow_context}\n"
    "Shared context: {shared_context}\n"
    "User input: {user_input}"
)


RETRYABLE_STATUS_CODES = frozenset({408, 429})


def is_retryable_error(error: BaseException) -> bool:
    """Whether a failed model call may succeed if the step is submitted again.

    Timeouts, connection failures, rate limits and provider-side (5xx) errors
    are transient. Anything else points at the request or the agent itself.
    """
    seen = set()
    while error is not None and id(error) not in seen:
        seen.add(id(error))
        if isinstance(error, ModelHTTPError):
            return _retryable_status(error.status_code)
        if isinstance(error, httpx.HTTPStatusError):
            return _retryable_status(error.response.status_code)
        if isinstance(
            error, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)
        ):
            return True
        # Provider SDK errors often wrap the transport failure.
        error = error.__cause__ or error.__context__
    return False


def _retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


class PydanticAIAgentHandler:
    """Run a workflow step through a pydantic-ai agent.

    The agent receives the :class:`AgentContext` as its deps. When the
    agent's output exposes ``confidence_score`` or ``reasoning`` attributes
    they are lifted onto the :class:`AgentResult`.
    """

    def __init__(
        self,
        agent: Agent,
        prompt_template: str = DEFAULT_PROMPT_TEMPLATE,
        default_confidence: float = 1.0,
    ) -> None:
        self.agent = agent
        self.prompt_template = prompt_template
        self.default_confidence = default_confidence

    def build_prompt(self, context: AgentContext) -> str:
        shared = (
            context.shared_context.model_dump_json()
            if context.shared_context is not None
            else "{}"
        )
        return self.prompt_template.format(
            step_name=context.step_name,
            step_id=context.step_id,
            workflow_context=json.dumps(context.workflow_context, default=str),
            shared_context=shared,
            user_input=context.user_input or "",
        )

    async def execute(self, context: AgentContext) -> AgentResult:
        try:
            result = await self.agent.run(self.build_prompt(context), deps=context)
        except Exception as e:
            retryable = is_retryable_error(e)
            if retryable:
                logger.warning(f"Transient failure running step {context.step_id}: {e}")
            else:
                logger.error(f"Agent failed on step {context.step_id}: {e}")
            return AgentResult(success=False, error_message=str(e), retryable=retryable)

        raw = result.output if hasattr(result, "output") else result
        return AgentResult(
            success=True,
            output=_to_document(raw),
            confidence_score=_attribute(raw, "confidence_score", self.default_confidence),
            reasoning=_attribute(raw, "reasoning", None),
        )

    async def execute_streaming(self, context: AgentContext) -> AsyncIterator[StepProgress]:
        yield StepProgress(message=f"Running step {context.step_name}", percent_complete=0)
        result = await self.execute(context)
        if result.success:
            yield StepProgress(message="Step completed", percent_complete=100)
        else:
            yield StepProgress(
                message=f"Step failed: {result.error_message}", percent_complete=100
            )


def _to_document(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, str):
        return {"text": value}
    return value


def _attribute(value: Any, name: str, default: Optional[Any]) -> Any:
    if isinstance(value, BaseModel) and hasattr(value, name):
        return getattr(value, name)
    if isinstance(value, dict) and name in value:
        return value[name]
    return default
