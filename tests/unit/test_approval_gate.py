from datetime import timedelta

import pytest

from baton.approval import ApprovalGate, requires_approval
from baton.contracts import ApprovalStatus, WorkflowInstance, utcnow
from baton.errors import ErrorKind
from baton.state import WorkflowStatus


async def _pending(repository, gate, owner="alice", step_id="step-1"):
    instance = WorkflowInstance(
        definition_id="onboarding",
        owner_id=owner,
        status=WorkflowStatus.WAITING_FOR_APPROVAL,
        current_step_index=1,
    )
    await repository.create_instance(instance)
    approval = await gate.create_approval_request(
        instance_id=instance.id,
        agent_id="writer",
        step_id=step_id,
        proposed_response={"text": "draft"},
        confidence_score=0.4,
        requested_by=owner,
        reasoning="unsure about tone",
    )
    return instance, approval


def test_requires_approval_threshold():
    assert requires_approval(0.4, 0.7)
    assert not requires_approval(0.7, 0.7)
    assert not requires_approval(0.9)


@pytest.mark.asyncio
async def test_create_validates_arguments(repository):
    gate = ApprovalGate(repository)
    with pytest.raises(ValueError):
        await gate.create_approval_request("wf", "writer", "s1", {}, 1.5, "alice")
    with pytest.raises(ValueError):
        await gate.create_approval_request("", "writer", "s1", {}, 0.5, "alice")


@pytest.mark.asyncio
async def test_approve_by_owner(repository):
    gate = ApprovalGate(repository)
    instance, approval = await _pending(repository, gate)
    assert (await gate.get_pending_approval(instance.id)).id == approval.id

    outcome = await gate.approve(approval.id, "alice")

    assert outcome.success
    assert outcome.approval.status == ApprovalStatus.APPROVED
    assert outcome.approval.resolved_by == "alice"
    stored = await gate.get_approval_request(approval.id)
    assert stored.status == ApprovalStatus.APPROVED
    assert stored.version == 2
    assert await gate.get_pending_approval(instance.id) is None


@pytest.mark.asyncio
async def test_non_owner_is_refused(repository):
    gate = ApprovalGate(repository)
    _, approval = await _pending(repository, gate)

    outcome = await gate.approve(approval.id, "mallory")

    assert not outcome.success
    assert outcome.error_kind == ErrorKind.AUTHORIZATION_FAILURE
    assert (await gate.get_approval_request(approval.id)).status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_resolved_request_rejects_further_actions(repository):
    gate = ApprovalGate(repository)
    _, approval = await _pending(repository, gate)
    assert (await gate.reject(approval.id, "alice", "wrong tone")).success
    before = await gate.get_approval_request(approval.id)

    for outcome in (
        await gate.approve(approval.id, "alice"),
        await gate.modify_and_approve(approval.id, "alice", {"text": "fixed"}),
        await gate.reject(approval.id, "alice", "again"),
    ):
        assert not outcome.success
        assert outcome.error_kind == ErrorKind.INVALID_STATE

    after = await gate.get_approval_request(approval.id)
    assert after == before
    assert after.rejection_reason == "wrong tone"
    assert not await gate.mark_as_timed_out(approval.id)


@pytest.mark.asyncio
async def test_modify_and_approve_keeps_proposal(repository):
    gate = ApprovalGate(repository)
    _, approval = await _pending(repository, gate)

    empty = await gate.modify_and_approve(approval.id, "alice", None)
    assert not empty.success
    outcome = await gate.modify_and_approve(approval.id, "alice", {"text": "better"})

    assert outcome.success
    assert outcome.approval.status == ApprovalStatus.MODIFIED
    assert outcome.approval.modified_response == {"text": "better"}
    assert outcome.approval.proposed_response == {"text": "draft"}


@pytest.mark.asyncio
async def test_reject_requires_reason(repository):
    gate = ApprovalGate(repository)
    _, approval = await _pending(repository, gate)
    outcome = await gate.reject(approval.id, "alice", " ")
    assert not outcome.success
    assert outcome.error_kind == ErrorKind.VALIDATION_FAILURE


@pytest.mark.asyncio
async def test_stale_write_has_no_side_effects(repository):
    gate = ApprovalGate(repository)
    _, approval = await _pending(repository, gate)

    original_save = repository.save_approval

    async def racing_save(updated, expected_version):
        competing = approval.model_copy(
            update={"status": ApprovalStatus.TIMED_OUT, "version": approval.version + 1}
        )
        await original_save(competing, approval.version)
        return await original_save(updated, expected_version)

    repository.save_approval = racing_save
    outcome = await gate.approve(approval.id, "alice")

    assert not outcome.success
    assert outcome.error_kind == ErrorKind.CONCURRENCY_CONFLICT
    assert (await gate.get_approval_request(approval.id)).status == ApprovalStatus.TIMED_OUT


@pytest.mark.asyncio
async def test_missing_request(repository):
    outcome = await ApprovalGate(repository).approve("missing", "alice")
    assert outcome.error_kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_timed_out_partition(repository):
    gate = ApprovalGate(repository)
    _, fresh = await _pending(repository, gate)
    _, aging = await _pending(repository, gate)
    _, stale = await _pending(repository, gate)
    now = utcnow()
    for approval, age in ((aging, 30), (stale, 80)):
        stored = await repository.get_approval(approval.id)
        repository._approvals[approval.id] = stored.model_copy(
            update={"requested_at": now - timedelta(hours=age)}
        )

    need_reminder, timed_out = await gate.get_timed_out_approvals(
        timedelta(hours=24), timedelta(hours=72), now=now
    )

    assert [a.id for a in need_reminder] == [aging.id]
    assert [a.id for a in timed_out] == [stale.id]
    assert fresh.id not in {a.id for a in need_reminder + timed_out}

    assert await gate.mark_as_timed_out(stale.id)
    assert not await gate.mark_as_timed_out(stale.id)
    assert (await gate.get_approval_request(stale.id)).status == ApprovalStatus.TIMED_OUT


@pytest.mark.asyncio
async def test_latest_approval_and_history(repository):
    gate = ApprovalGate(repository)
    instance, first = await _pending(repository, gate)
    await gate.reject(first.id, "alice", "no")
    second = await gate.create_approval_request(
        instance.id, "writer", "step-1", {"text": "v2"}, 0.5, "alice"
    )

    latest = await gate.get_latest_approval(instance.id, "step-1")
    assert latest.id == second.id
    assert await gate.get_latest_approval(instance.id, "step-2") is None
    assert [a.id for a in await gate.get_approval_history(instance.id)] == [first.id, second.id]
