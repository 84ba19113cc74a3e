"""Append-only log of agent-to-agent control transfers."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .contracts import AgentHandoff, BestEffortResult
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class HandoffTracker:
    """Record and query :class:`AgentHandoff` entries."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def record_handoff(
        self,
        instance_id: str,
        from_agent_id: str,
        to_agent_id: str,
        step_id: str,
        reason: Optional[str] = None,
    ) -> BestEffortResult:
        """Append a handoff entry.

        Failures are logged and reported through the returned result; they
        never interrupt the caller.
        """
        try:
            handoff = AgentHandoff(
                instance_id=instance_id,
                from_agent_id=from_agent_id,
                to_agent_id=to_agent_id,
                step_id=step_id,
                reason=reason,
            )
            await self._repository.append_handoff(handoff)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Failed to record handoff {from_agent_id} -> {to_agent_id} "
                f"for instance {instance_id}: {e}"
            )
            return BestEffortResult.failed(str(e))

        logger.info(
            f"Recorded handoff {from_agent_id} -> {to_agent_id} "
            f"at step {step_id} of instance {instance_id}"
        )
        return BestEffortResult()

    async def get_handoff_history(self, instance_id: str) -> List[AgentHandoff]:
        return await self._repository.list_handoffs(instance_id)

    async def get_recent_handoffs(
        self, instance_id: str, limit: int = 5
    ) -> List[AgentHandoff]:
        """Most recent handoffs, newest first."""
        history = await self.get_handoff_history(instance_id)
        return list(reversed(history))[:limit]

    async def get_current_agent(self, instance_id: str) -> Optional[str]:
        history = await self.get_handoff_history(instance_id)
        return history[-1].to_agent_id if history else None
