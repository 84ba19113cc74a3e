"""Human-in-the-loop review of low-confidence agent results."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel

from ..constants import DEFAULT_APPROVAL_THRESHOLD, SYSTEM_ACTOR
from ..contracts import ApprovalRequest, ApprovalStatus, utcnow
from ..errors import ErrorKind
from ..persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class ApprovalOutcome(BaseModel):
    """Result of an approve, modify or reject action."""

    success: bool
    message: str
    approval: Optional[ApprovalRequest] = None
    error_kind: Optional[ErrorKind] = None


def requires_approval(
    confidence_score: float, threshold: float = DEFAULT_APPROVAL_THRESHOLD
) -> bool:
    return confidence_score < threshold


class ApprovalGate:
    """Create and resolve :class:`ApprovalRequest` documents.

    Resolutions are only accepted from the owner of the workflow instance
    and only while the request is pending. Writes are version-gated so a
    request resolved concurrently is never overwritten.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def create_approval_request(
        self,
        instance_id: str,
        agent_id: str,
        step_id: str,
        proposed_response: Any,
        confidence_score: float,
        requested_by: str,
        reasoning: Optional[str] = None,
    ) -> ApprovalRequest:
        for name, value in (
            ("instance_id", instance_id),
            ("agent_id", agent_id),
            ("step_id", step_id),
            ("requested_by", requested_by),
        ):
            if not value:
                raise ValueError(f"{name} must be a non-empty string")
        if confidence_score < 0 or confidence_score > 1:
            raise ValueError("confidence_score must be between 0 and 1")

        approval = ApprovalRequest(
            instance_id=instance_id,
            agent_id=agent_id,
            step_id=step_id,
            proposed_response=proposed_response,
            confidence_score=confidence_score,
            reasoning=reasoning,
            requested_by=requested_by,
        )
        await self._repository.create_approval(approval)
        logger.info(
            f"Created approval request {approval.id} for step {step_id} of instance "
            f"{instance_id} (confidence {confidence_score:.2f})"
        )
        return approval

    async def get_approval_request(self, approval_id: str) -> Optional[ApprovalRequest]:
        return await self._repository.get_approval(approval_id)

    async def get_pending_approval(self, instance_id: str) -> Optional[ApprovalRequest]:
        """Oldest pending request for ``instance_id``."""
        pending = await self._repository.list_approvals(
            instance_id=instance_id, status=ApprovalStatus.PENDING
        )
        return pending[0] if pending else None

    async def get_latest_approval(
        self, instance_id: str, step_id: str
    ) -> Optional[ApprovalRequest]:
        approvals = [
            a
            for a in await self._repository.list_approvals(instance_id=instance_id)
            if a.step_id == step_id
        ]
        return approvals[-1] if approvals else None

    async def get_approval_history(self, instance_id: str) -> List[ApprovalRequest]:
        return await self._repository.list_approvals(instance_id=instance_id)

    def requires_approval(
        self, confidence_score: float, threshold: float = DEFAULT_APPROVAL_THRESHOLD
    ) -> bool:
        return requires_approval(confidence_score, threshold)

    async def approve(self, approval_id: str, user_id: str) -> ApprovalOutcome:
        return await self._resolve(
            approval_id, user_id, ApprovalStatus.APPROVED, "Approval request approved"
        )

    async def modify_and_approve(
        self, approval_id: str, user_id: str, modified_response: Any
    ) -> ApprovalOutcome:
        if modified_response is None or modified_response == "":
            return ApprovalOutcome(
                success=False,
                message="Modified response must not be empty",
                error_kind=ErrorKind.VALIDATION_FAILURE,
            )
        return await self._resolve(
            approval_id,
            user_id,
            ApprovalStatus.MODIFIED,
            "Approval request modified and approved",
            modified_response=modified_response,
        )

    async def reject(
        self, approval_id: str, user_id: str, reason: str
    ) -> ApprovalOutcome:
        if not reason or not reason.strip():
            return ApprovalOutcome(
                success=False,
                message="A rejection reason is required",
                error_kind=ErrorKind.VALIDATION_FAILURE,
            )
        return await self._resolve(
            approval_id,
            user_id,
            ApprovalStatus.REJECTED,
            "Approval request rejected",
            rejection_reason=reason,
        )

    async def get_timed_out_approvals(
        self,
        reminder_threshold: timedelta,
        timeout_threshold: timedelta,
        now: Optional[datetime] = None,
    ) -> Tuple[List[ApprovalRequest], List[ApprovalRequest]]:
        """Partition pending requests into ``(need_reminder, timed_out)`` by age."""
        now = now or utcnow()
        need_reminder: List[ApprovalRequest] = []
        timed_out: List[ApprovalRequest] = []
        for approval in await self._repository.list_approvals(
            status=ApprovalStatus.PENDING
        ):
            age = now - approval.requested_at
            if age >= timeout_threshold:
                timed_out.append(approval)
            elif age >= reminder_threshold:
                need_reminder.append(approval)
        return need_reminder, timed_out

    async def mark_as_timed_out(self, approval_id: str) -> bool:
        approval = await self._repository.get_approval(approval_id)
        if approval is None or not approval.is_pending:
            return False
        updated = approval.model_copy(
            update={
                "status": ApprovalStatus.TIMED_OUT,
                "resolved_at": utcnow(),
                "resolved_by": SYSTEM_ACTOR,
                "version": approval.version + 1,
            }
        )
        saved = await self._repository.save_approval(updated, approval.version)
        if saved:
            logger.info(f"Approval request {approval_id} timed out")
        return saved

    async def _resolve(
        self,
        approval_id: str,
        user_id: str,
        status: ApprovalStatus,
        message: str,
        **changes: Any,
    ) -> ApprovalOutcome:
        approval = await self._repository.get_approval(approval_id)
        if approval is None:
            return ApprovalOutcome(
                success=False,
                message=f"Approval request {approval_id} not found",
                error_kind=ErrorKind.NOT_FOUND,
            )
        if not approval.is_pending:
            logger.warning(
                f"Rejected {status.value} of approval {approval_id}: already {approval.status.value}"
            )
            return ApprovalOutcome(
                success=False,
                message=f"Approval request is already {approval.status.value}",
                approval=approval,
                error_kind=ErrorKind.INVALID_STATE,
            )

        instance = await self._repository.get_instance(approval.instance_id)
        if instance is None:
            return ApprovalOutcome(
                success=False,
                message=f"Workflow instance {approval.instance_id} not found",
                approval=approval,
                error_kind=ErrorKind.NOT_FOUND,
            )
        if instance.owner_id != user_id:
            logger.warning(
                f"User {user_id} is not allowed to resolve approval {approval_id}"
            )
            return ApprovalOutcome(
                success=False,
                message="Only the workflow owner can resolve this approval request",
                approval=approval,
                error_kind=ErrorKind.AUTHORIZATION_FAILURE,
            )

        updated = approval.model_copy(
            update={
                "status": status,
                "resolved_at": utcnow(),
                "resolved_by": user_id,
                "version": approval.version + 1,
                **changes,
            }
        )
        if not await self._repository.save_approval(updated, approval.version):
            logger.warning(f"Concurrent update detected on approval {approval_id}")
            return ApprovalOutcome(
                success=False,
                message="Approval request was modified concurrently",
                approval=approval,
                error_kind=ErrorKind.CONCURRENCY_CONFLICT,
            )

        logger.info(f"Approval request {approval_id} {status.value} by {user_id}")
        return ApprovalOutcome(success=True, message=message, approval=updated)
