"""Record/replay agent handler backed by JSON fixtures on disk."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator

from anyio import Path as AsyncPath
from pydantic import BaseModel, Field

from ..contracts import AgentContext, AgentResult, StepProgress, utcnow
from .base import AgentHandler

logger = logging.getLogger(__name__)


class CachedAgentResult(BaseModel):
    """On-disk representation of a recorded agent result."""

    result: AgentResult
    cached_at: datetime = Field(default_factory=utcnow)


class ReplayAgentHandler:
    """Replay recorded results, recording new ones through a live handler.

    Only successful results are recorded so transient failures are retried
    on the next run. Streaming is always delegated to the live handler.
    """

    def __init__(self, live_handler: AgentHandler, fixtures_path: str | Path) -> None:
        self._live = live_handler
        self._fixtures = AsyncPath(fixtures_path)

    async def execute(self, context: AgentContext) -> AgentResult:
        cache_key = self.cache_key(context)
        cache_path = self._fixtures / f"{cache_key}.json"

        if await cache_path.exists():
            logger.debug(f"Replaying cached response for {cache_key}")
            cached = CachedAgentResult.model_validate_json(await cache_path.read_text())
            return cached.result

        logger.info(f"Recording new response for {cache_key}")
        result = await self._live.execute(context)
        if result.success:
            await self._fixtures.mkdir(parents=True, exist_ok=True)
            await cache_path.write_text(
                CachedAgentResult(result=result).model_dump_json(indent=2)
            )
        return result

    async def execute_streaming(self, context: AgentContext) -> AsyncIterator[StepProgress]:
        async for progress in self._live.execute_streaming(context):
            yield progress

    @staticmethod
    def cache_key(context: AgentContext) -> str:
        """Deterministic fixture name derived from the step and its input."""
        material = "|".join(
            [context.step_id, context.step_name, context.user_input or ""]
        )
        if context.step_parameters is not None:
            material += "|" + json.dumps(context.step_parameters, sort_keys=True)
        digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
        return f"{_safe_file_name(context.step_name)}-{digest}"


def _safe_file_name(name: str) -> str:
    safe = []
    for char in name.lower():
        if char.isalnum() or char in "-_":
            safe.append(char)
        elif char == " ":
            safe.append("-")
    return "".join(safe)
