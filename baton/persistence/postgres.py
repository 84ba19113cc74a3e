"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import asyncpg

from ..contracts import (
    AgentHandoff,
    ApprovalRequest,
    ApprovalStatus,
    SharedContext,
    StateTransition,
    StepHistoryRecord,
    WorkflowInstance,
)
from .repository import WorkflowRepository

logger = logging.getLogger(__name__)


def _affected(status: str) -> int:
    """Return the row count from an asyncpg command status such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow engine state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None
        self._pool_loop: asyncio.AbstractEventLoop | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop is not loop:
            # The old pool is bound to a loop that is gone and cannot be closed from here.
            logger.debug("Event loop changed, opening a new Postgres pool")
            self._pool = None
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self._dsn)
            self._pool_loop = loop
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._pool_loop = None

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT UNIQUE NOT NULL,
                instance_id TEXT NOT NULL,
                completed_at TIMESTAMPTZ,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS state_transitions (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT UNIQUE NOT NULL,
                instance_id TEXT NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS shared_contexts (
                instance_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                status TEXT NOT NULL,
                requested_at TIMESTAMPTZ NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_handoffs (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT UNIQUE NOT NULL,
                instance_id TEXT NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(query, *params)
        return _affected(status)

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetch(query, *params)

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchrow(query, *params)

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        rows = await self._execute(
            """
            INSERT INTO workflow_instances (id, owner_id, status, created_at, version, data)
            VALUES ($1, $2, $3, $4, $5, $6) ON CONFLICT (id) DO NOTHING
            """,
            instance.id,
            instance.owner_id,
            instance.status.value,
            instance.created_at,
            instance.version,
            instance.model_dump_json(),
        )
        if rows != 1:
            raise ValueError(f"Workflow instance {instance.id} already exists")

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await self._fetchrow(
            "SELECT data FROM workflow_instances WHERE id = $1", instance_id
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def save_instance(self, instance: WorkflowInstance) -> bool:
        expected = instance.version
        updated = instance.model_copy(update={"version": expected + 1})
        rows = await self._execute(
            "UPDATE workflow_instances SET status = $1, version = $2, data = $3 WHERE id = $4 AND version = $5",
            updated.status.value,
            updated.version,
            updated.model_dump_json(),
            instance.id,
            expected,
        )
        if rows != 1:
            return False
        instance.version = updated.version
        return True

    async def list_instances(
        self, owner_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        if owner_id is None:
            rows = await self._fetch(
                "SELECT data FROM workflow_instances ORDER BY created_at DESC"
            )
        else:
            rows = await self._fetch(
                "SELECT data FROM workflow_instances WHERE owner_id = $1 ORDER BY created_at DESC",
                owner_id,
            )
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def append_step_history(self, record: StepHistoryRecord) -> None:
        await self._execute(
            "INSERT INTO step_history (id, instance_id, completed_at, data) VALUES ($1, $2, $3, $4)",
            record.id,
            record.instance_id,
            record.completed_at,
            record.model_dump_json(),
        )

    async def close_step_history(self, record: StepHistoryRecord) -> bool:
        rows = await self._execute(
            "UPDATE step_history SET completed_at = $1, data = $2 WHERE id = $3 AND completed_at IS NULL",
            record.completed_at,
            record.model_dump_json(),
            record.id,
        )
        return rows == 1

    async def get_step_history(self, instance_id: str) -> list[StepHistoryRecord]:
        rows = await self._fetch(
            "SELECT data FROM step_history WHERE instance_id = $1 ORDER BY seq",
            instance_id,
        )
        return [StepHistoryRecord.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def append_transition(self, event: StateTransition) -> None:
        await self._execute(
            "INSERT INTO state_transitions (id, instance_id, data) VALUES ($1, $2, $3)",
            event.id,
            event.instance_id,
            event.model_dump_json(),
        )

    async def get_transitions(self, instance_id: str) -> list[StateTransition]:
        rows = await self._fetch(
            "SELECT data FROM state_transitions WHERE instance_id = $1 ORDER BY seq",
            instance_id,
        )
        return [StateTransition.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def get_shared_context(self, instance_id: str) -> SharedContext | None:
        row = await self._fetchrow(
            "SELECT data FROM shared_contexts WHERE instance_id = $1", instance_id
        )
        return SharedContext.model_validate_json(row["data"]) if row else None

    async def save_shared_context(
        self,
        instance_id: str,
        context: SharedContext,
        expected_version: Optional[int],
    ) -> bool:
        if expected_version is None:
            rows = await self._execute(
                """
                INSERT INTO shared_contexts (instance_id, version, data)
                VALUES ($1, $2, $3) ON CONFLICT (instance_id) DO NOTHING
                """,
                instance_id,
                context.version,
                context.model_dump_json(),
            )
        else:
            rows = await self._execute(
                "UPDATE shared_contexts SET version = $1, data = $2 WHERE instance_id = $3 AND version = $4",
                context.version,
                context.model_dump_json(),
                instance_id,
                expected_version,
            )
        return rows == 1

    # ------------------------------------------------------------------
    async def create_approval(self, approval: ApprovalRequest) -> None:
        await self._execute(
            """
            INSERT INTO approval_requests (id, instance_id, status, requested_at, version, data)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            approval.id,
            approval.instance_id,
            approval.status.value,
            approval.requested_at,
            approval.version,
            approval.model_dump_json(),
        )

    async def get_approval(self, approval_id: str) -> ApprovalRequest | None:
        row = await self._fetchrow(
            "SELECT data FROM approval_requests WHERE id = $1", approval_id
        )
        return ApprovalRequest.model_validate_json(row["data"]) if row else None

    async def save_approval(
        self, approval: ApprovalRequest, expected_version: int
    ) -> bool:
        rows = await self._execute(
            "UPDATE approval_requests SET status = $1, version = $2, data = $3 WHERE id = $4 AND version = $5",
            approval.status.value,
            approval.version,
            approval.model_dump_json(),
            approval.id,
            expected_version,
        )
        return rows == 1

    async def list_approvals(
        self,
        instance_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRequest]:
        clauses: list[str] = []
        params: list[Any] = []
        if instance_id is not None:
            params.append(instance_id)
            clauses.append(f"instance_id = ${len(params)}")
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetch(
            f"SELECT data FROM approval_requests{where} ORDER BY requested_at",
            *params,
        )
        return [ApprovalRequest.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def append_handoff(self, handoff: AgentHandoff) -> None:
        await self._execute(
            "INSERT INTO agent_handoffs (id, instance_id, timestamp, data) VALUES ($1, $2, $3, $4)",
            handoff.id,
            handoff.instance_id,
            handoff.timestamp,
            handoff.model_dump_json(),
        )

    async def list_handoffs(self, instance_id: str) -> list[AgentHandoff]:
        rows = await self._fetch(
            "SELECT data FROM agent_handoffs WHERE instance_id = $1 ORDER BY timestamp, seq",
            instance_id,
        )
        return [AgentHandoff.model_validate_json(r["data"]) for r in rows]
