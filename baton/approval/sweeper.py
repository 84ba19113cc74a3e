"""Background escalation of stale approval requests."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from ..config import ApprovalTimeoutConfig
from ..constants import (
    SYSTEM_ACTOR,
    TIMEOUT_PAUSE_BACKOFF_SECONDS,
    TIMEOUT_PAUSE_MAX_ATTEMPTS,
)
from ..contracts import TransitionResult, utcnow
from ..errors import ErrorKind
from ..instances import WorkflowInstanceService
from ..notifications import (
    APPROVAL_REMINDER,
    APPROVAL_TIMEOUT,
    NotificationChannel,
    notify,
)
from ..utils.retry import schedule_retry
from .gate import ApprovalGate

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    """Approval ids handled during one sweep."""

    reminders: List[str] = Field(default_factory=list)
    timeouts: List[str] = Field(default_factory=list)


class ApprovalTimeoutSweeper:
    """Send reminders for aging approvals and time out expired ones.

    A timed-out request pauses its workflow instance. The pause only happens
    for the sweep that actually moved the request to ``timed_out``, so an
    instance is paused once no matter how often the sweep runs.
    """

    def __init__(
        self,
        gate: ApprovalGate,
        instances: WorkflowInstanceService,
        notifier: Optional[NotificationChannel] = None,
        config: Optional[ApprovalTimeoutConfig] = None,
    ) -> None:
        self._gate = gate
        self._instances = instances
        self._notifier = notifier
        self.config = config or ApprovalTimeoutConfig()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def reminder_threshold(self) -> timedelta:
        return timedelta(hours=self.config.reminder_threshold_hours)

    @property
    def timeout_threshold(self) -> timedelta:
        return timedelta(hours=self.config.timeout_threshold_hours)

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()
        need_reminder, timed_out = await self._gate.get_timed_out_approvals(
            self.reminder_threshold, self.timeout_threshold, now=now
        )

        for approval in need_reminder:
            await notify(
                self._notifier,
                APPROVAL_REMINDER,
                {
                    "approval_request_id": approval.id,
                    "workflow_instance_id": approval.instance_id,
                    "step_id": approval.step_id,
                    "agent_id": approval.agent_id,
                    "requested_at": approval.requested_at.isoformat(),
                },
            )
            report.reminders.append(approval.id)

        for approval in timed_out:
            if not await self._gate.mark_as_timed_out(approval.id):
                logger.info(f"Approval {approval.id} was resolved before it could time out")
                continue
            result = await self._pause_timed_out(approval.instance_id)
            if not result.success:
                logger.warning(
                    f"Could not pause instance {approval.instance_id} after approval "
                    f"timeout: {result.message}"
                )
            await notify(
                self._notifier,
                APPROVAL_TIMEOUT,
                {
                    "approval_request_id": approval.id,
                    "workflow_instance_id": approval.instance_id,
                    "step_id": approval.step_id,
                    "message": "Approval request timed out and the workflow was paused",
                },
            )
            report.timeouts.append(approval.id)

        if report.reminders or report.timeouts:
            logger.info(
                f"Approval sweep sent {len(report.reminders)} reminders and "
                f"timed out {len(report.timeouts)} requests"
            )
        return report

    async def _pause_timed_out(self, instance_id: str) -> TransitionResult:
        """Pause the instance of a timed-out request, retrying lost version races.

        Later sweeps never see the request again once it is ``timed_out``, so
        this is the only chance to pause the instance.
        """
        for attempt in range(1, TIMEOUT_PAUSE_MAX_ATTEMPTS + 1):
            result = await self._instances.pause_workflow(instance_id, actor=SYSTEM_ACTOR)
            if result.success or result.error_kind != ErrorKind.CONCURRENCY_CONFLICT:
                return result
            logger.warning(
                f"Pausing instance {instance_id} conflicted with a concurrent update "
                f"(attempt {attempt}/{TIMEOUT_PAUSE_MAX_ATTEMPTS})"
            )
            if attempt < TIMEOUT_PAUSE_MAX_ATTEMPTS:
                await schedule_retry(attempt, TIMEOUT_PAUSE_BACKOFF_SECONDS)
        return result

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Sweep every ``check_interval_seconds`` until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info("Approval timeout sweeper started")
        while not stop_event.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error during approval sweep: {e}")
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.config.check_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
        logger.info("Approval timeout sweeper stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event = asyncio.Event()
            self._task = asyncio.create_task(self.run(self._stop_event))
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        await self._task
        self._task = None
