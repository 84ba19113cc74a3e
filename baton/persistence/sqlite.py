"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

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


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow engine state using SQLite.

    Each document is stored as JSON next to the columns needed for lookups
    and version checks.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                version INTEGER NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                instance_id TEXT NOT NULL,
                completed_at TEXT,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS state_transitions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                instance_id TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS shared_contexts (
                instance_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                status TEXT NOT NULL,
                requested_at TEXT NOT NULL,
                version INTEGER NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_handoffs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                instance_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _insert_unique(self, query: str, *params: Any) -> bool:
        with self._lock:
            try:
                self._conn.execute(query, params)
            except sqlite3.IntegrityError:
                self._conn.rollback()
                return False
            self._conn.commit()
            return True

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: WorkflowInstance) -> None:
        inserted = await asyncio.to_thread(
            self._insert_unique,
            "INSERT INTO workflow_instances (id, owner_id, status, created_at, version, data) VALUES (?, ?, ?, ?, ?, ?)",
            instance.id,
            instance.owner_id,
            instance.status.value,
            _ts(instance.created_at),
            instance.version,
            instance.model_dump_json(),
        )
        if not inserted:
            raise ValueError(f"Workflow instance {instance.id} already exists")

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflow_instances WHERE id = ?",
            instance_id,
        )
        if not row:
            return None
        return WorkflowInstance.model_validate_json(row["data"])

    async def save_instance(self, instance: WorkflowInstance) -> bool:
        expected = instance.version
        updated = instance.model_copy(update={"version": expected + 1})
        rows = await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_instances SET status = ?, version = ?, data = ? WHERE id = ? AND version = ?",
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
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT data FROM workflow_instances ORDER BY created_at DESC",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT data FROM workflow_instances WHERE owner_id = ? ORDER BY created_at DESC",
                owner_id,
            )
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Step history
    async def append_step_history(self, record: StepHistoryRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO step_history (id, instance_id, completed_at, data) VALUES (?, ?, ?, ?)",
            record.id,
            record.instance_id,
            _ts(record.completed_at),
            record.model_dump_json(),
        )

    async def close_step_history(self, record: StepHistoryRecord) -> bool:
        rows = await asyncio.to_thread(
            self._execute,
            "UPDATE step_history SET completed_at = ?, data = ? WHERE id = ? AND completed_at IS NULL",
            _ts(record.completed_at),
            record.model_dump_json(),
            record.id,
        )
        return rows == 1

    async def get_step_history(self, instance_id: str) -> list[StepHistoryRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM step_history WHERE instance_id = ? ORDER BY seq",
            instance_id,
        )
        return [StepHistoryRecord.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # State transitions
    async def append_transition(self, event: StateTransition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO state_transitions (id, instance_id, data) VALUES (?, ?, ?)",
            event.id,
            event.instance_id,
            event.model_dump_json(),
        )

    async def get_transitions(self, instance_id: str) -> list[StateTransition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM state_transitions WHERE instance_id = ? ORDER BY seq",
            instance_id,
        )
        return [StateTransition.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Shared context
    async def get_shared_context(self, instance_id: str) -> SharedContext | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM shared_contexts WHERE instance_id = ?",
            instance_id,
        )
        if not row:
            return None
        return SharedContext.model_validate_json(row["data"])

    async def save_shared_context(
        self,
        instance_id: str,
        context: SharedContext,
        expected_version: Optional[int],
    ) -> bool:
        if expected_version is None:
            return await asyncio.to_thread(
                self._insert_unique,
                "INSERT INTO shared_contexts (instance_id, version, data) VALUES (?, ?, ?)",
                instance_id,
                context.version,
                context.model_dump_json(),
            )
        rows = await asyncio.to_thread(
            self._execute,
            "UPDATE shared_contexts SET version = ?, data = ? WHERE instance_id = ? AND version = ?",
            context.version,
            context.model_dump_json(),
            instance_id,
            expected_version,
        )
        return rows == 1

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval(self, approval: ApprovalRequest) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO approval_requests (id, instance_id, status, requested_at, version, data) VALUES (?, ?, ?, ?, ?, ?)",
            approval.id,
            approval.instance_id,
            approval.status.value,
            _ts(approval.requested_at),
            approval.version,
            approval.model_dump_json(),
        )

    async def get_approval(self, approval_id: str) -> ApprovalRequest | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM approval_requests WHERE id = ?",
            approval_id,
        )
        if not row:
            return None
        return ApprovalRequest.model_validate_json(row["data"])

    async def save_approval(
        self, approval: ApprovalRequest, expected_version: int
    ) -> bool:
        rows = await asyncio.to_thread(
            self._execute,
            "UPDATE approval_requests SET status = ?, version = ?, data = ? WHERE id = ? AND version = ?",
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
            clauses.append("instance_id = ?")
            params.append(instance_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT data FROM approval_requests{where} ORDER BY requested_at",
            *params,
        )
        return [ApprovalRequest.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Handoffs
    async def append_handoff(self, handoff: AgentHandoff) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO agent_handoffs (id, instance_id, timestamp, data) VALUES (?, ?, ?, ?)",
            handoff.id,
            handoff.instance_id,
            _ts(handoff.timestamp),
            handoff.model_dump_json(),
        )

    async def list_handoffs(self, instance_id: str) -> list[AgentHandoff]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM agent_handoffs WHERE instance_id = ? ORDER BY timestamp, seq",
            instance_id,
        )
        return [AgentHandoff.model_validate_json(r["data"]) for r in rows]
