"""Versioned shared context with optimistic concurrency."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..constants import (
    SHARED_CONTEXT_BACKOFF_SECONDS,
    SHARED_CONTEXT_MAX_ATTEMPTS,
    SYSTEM_ACTOR,
)
from ..contracts import ArtifactReference, DecisionRecord, SharedContext, utcnow
from ..errors import ConcurrencyConflictError
from ..persistence import WorkflowRepository
from ..utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class SharedContextStore:
    """Read and write the shared context of workflow instances.

    Every write is applied against the version that was read. The mutating
    helpers reload and reapply on conflict, up to ``max_attempts`` times with
    a linear backoff, and raise :class:`ConcurrencyConflictError` once the
    attempts are exhausted. :meth:`update` performs a single attempt and
    reports a conflict by returning ``False``.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        max_attempts: int = SHARED_CONTEXT_MAX_ATTEMPTS,
        backoff_seconds: float = SHARED_CONTEXT_BACKOFF_SECONDS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._repository = repository
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def get(self, instance_id: str) -> Optional[SharedContext]:
        return await self._repository.get_shared_context(instance_id)

    async def get_step_output(self, instance_id: str, step_id: str) -> Any:
        context = await self.get(instance_id)
        if context is None:
            return None
        return context.step_outputs.get(step_id)

    async def add_step_output(
        self,
        instance_id: str,
        step_id: str,
        output: Any,
        modified_by: str = SYSTEM_ACTOR,
    ) -> SharedContext:
        def apply(context: SharedContext) -> None:
            context.step_outputs[step_id] = output

        return await self._mutate(instance_id, apply, modified_by)

    async def add_decision(
        self,
        instance_id: str,
        decision: DecisionRecord,
        modified_by: str = SYSTEM_ACTOR,
    ) -> SharedContext:
        def apply(context: SharedContext) -> None:
            context.decision_history.append(decision)

        return await self._mutate(instance_id, apply, modified_by)

    async def set_user_preference(
        self,
        instance_id: str,
        key: str,
        value: str,
        modified_by: str = SYSTEM_ACTOR,
    ) -> SharedContext:
        def apply(context: SharedContext) -> None:
            context.user_preferences[key] = value

        return await self._mutate(instance_id, apply, modified_by)

    async def add_artifact_reference(
        self,
        instance_id: str,
        artifact: ArtifactReference,
        modified_by: str = SYSTEM_ACTOR,
    ) -> SharedContext:
        def apply(context: SharedContext) -> None:
            context.artifact_references[artifact.artifact_id] = artifact

        return await self._mutate(instance_id, apply, modified_by)

    async def update(self, instance_id: str, context: SharedContext) -> bool:
        """Write ``context`` if the stored document is still at ``context.version``.

        On success the stored document carries ``context.version + 1`` and the
        passed object is updated to match.
        """
        if await self._repository.get_shared_context(instance_id) is None:
            logger.warning(f"No shared context to update for instance {instance_id}")
            return False

        expected = context.version
        candidate = context.model_copy(
            deep=True, update={"version": expected + 1, "last_modified_at": utcnow()}
        )
        saved = await self._repository.save_shared_context(
            instance_id, candidate, expected_version=expected
        )
        if not saved:
            logger.warning(
                f"Shared context version conflict for instance {instance_id} at version {expected}"
            )
            return False
        context.version = candidate.version
        context.last_modified_at = candidate.last_modified_at
        return True

    async def _mutate(
        self,
        instance_id: str,
        apply: Callable[[SharedContext], None],
        modified_by: str,
    ) -> SharedContext:
        for attempt in range(1, self.max_attempts + 1):
            current = await self._repository.get_shared_context(instance_id)
            expected: Optional[int]
            if current is None:
                current = SharedContext()
                expected = None
            else:
                expected = current.version

            apply(current)
            current.version = (expected or 0) + 1
            current.last_modified_at = utcnow()
            current.last_modified_by = modified_by

            if await self._repository.save_shared_context(
                instance_id, current, expected_version=expected
            ):
                return current

            logger.warning(
                f"Shared context conflict for instance {instance_id} "
                f"(attempt {attempt}/{self.max_attempts})"
            )
            if attempt < self.max_attempts:
                await schedule_retry(attempt, self.backoff_seconds)

        raise ConcurrencyConflictError(
            f"Failed to update shared context for instance {instance_id} "
            f"after {self.max_attempts} attempts",
            attempts=self.max_attempts,
        )
