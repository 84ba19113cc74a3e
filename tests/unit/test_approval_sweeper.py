import asyncio
from datetime import timedelta

import pytest

from baton.approval import ApprovalGate, ApprovalTimeoutSweeper
from baton.config import ApprovalTimeoutConfig
from baton.contracts import ApprovalStatus, WorkflowInstance, utcnow
from baton.instances import WorkflowInstanceService
from baton.notifications import APPROVAL_REMINDER, APPROVAL_TIMEOUT
from baton.state import WorkflowStatus


async def _waiting_instance(repository, gate, age_hours):
    instance = WorkflowInstance(
        definition_id="onboarding",
        owner_id="alice",
        status=WorkflowStatus.WAITING_FOR_APPROVAL,
        current_step_index=2,
    )
    await repository.create_instance(instance)
    approval = await gate.create_approval_request(
        instance.id, "writer", "step-2", {"text": "draft"}, 0.4, "alice"
    )
    stored = await repository.get_approval(approval.id)
    repository._approvals[approval.id] = stored.model_copy(
        update={"requested_at": utcnow() - timedelta(hours=age_hours)}
    )
    return instance, approval


@pytest.fixture
def sweeper_parts(repository, registry, notifier):
    gate = ApprovalGate(repository)
    instances = WorkflowInstanceService(repository, registry)
    sweeper = ApprovalTimeoutSweeper(gate, instances, notifier=notifier)
    return gate, instances, sweeper


@pytest.mark.asyncio
async def test_stale_approval_pauses_instance_exactly_once(repository, notifier, sweeper_parts):
    gate, instances, sweeper = sweeper_parts
    instance, approval = await _waiting_instance(repository, gate, age_hours=73)

    first = await sweeper.run_once()
    second = await sweeper.run_once()
    third = await sweeper.run_once(now=utcnow() + timedelta(days=10))

    assert first.timeouts == [approval.id]
    assert second.timeouts == [] and third.timeouts == []
    assert (await gate.get_approval_request(approval.id)).status == ApprovalStatus.TIMED_OUT
    stored = await instances.get_instance(instance.id)
    assert stored.status == WorkflowStatus.PAUSED
    pauses = [
        e
        for e in await instances.get_transition_history(instance.id)
        if e.new_status == WorkflowStatus.PAUSED
    ]
    assert len(pauses) == 1
    assert len(notifier.events_of(APPROVAL_TIMEOUT)) == 1


@pytest.mark.asyncio
async def test_timeout_pause_retries_after_concurrent_update(repository, sweeper_parts):
    gate, instances, sweeper = sweeper_parts
    instance, approval = await _waiting_instance(repository, gate, age_hours=73)
    original_save = instances.save_instance
    raced = []

    async def save_after_concurrent_write(candidate):
        if not raced:
            raced.append(candidate.id)
            concurrent = await repository.get_instance(candidate.id)
            concurrent.workflow_context["touched"] = True
            await repository.save_instance(concurrent)
        return await original_save(candidate)

    instances.save_instance = save_after_concurrent_write
    report = await sweeper.run_once()

    assert report.timeouts == [approval.id]
    assert raced == [instance.id]
    stored = await instances.get_instance(instance.id)
    assert stored.status == WorkflowStatus.PAUSED
    assert stored.workflow_context == {"touched": True}


@pytest.mark.asyncio
async def test_due_approval_gets_reminder(repository, notifier, sweeper_parts):
    gate, instances, sweeper = sweeper_parts
    instance, approval = await _waiting_instance(repository, gate, age_hours=30)
    _, fresh = await _waiting_instance(repository, gate, age_hours=1)

    report = await sweeper.run_once()

    assert report.reminders == [approval.id]
    assert report.timeouts == []
    events = notifier.events_of(APPROVAL_REMINDER)
    assert [e.payload["approval_request_id"] for e in events] == [approval.id]
    assert (await instances.get_instance(instance.id)).status == WorkflowStatus.WAITING_FOR_APPROVAL


@pytest.mark.asyncio
async def test_approval_resolved_meanwhile_is_not_paused(repository, sweeper_parts):
    gate, instances, sweeper = sweeper_parts
    instance, approval = await _waiting_instance(repository, gate, age_hours=80)
    original = gate.mark_as_timed_out

    async def resolved_first(approval_id):
        await gate.approve(approval_id, "alice")
        return await original(approval_id)

    gate.mark_as_timed_out = resolved_first
    report = await sweeper.run_once()

    assert report.timeouts == []
    assert (await instances.get_instance(instance.id)).status == WorkflowStatus.WAITING_FOR_APPROVAL


@pytest.mark.asyncio
async def test_notification_failure_does_not_stop_sweep(repository, registry):
    class BrokenChannel:
        async def broadcast(self, event_type, payload):
            raise ConnectionError("channel down")

    gate = ApprovalGate(repository)
    instances = WorkflowInstanceService(repository, registry)
    sweeper = ApprovalTimeoutSweeper(gate, instances, notifier=BrokenChannel())
    instance, approval = await _waiting_instance(repository, gate, age_hours=100)

    report = await sweeper.run_once()

    assert report.timeouts == [approval.id]
    assert (await instances.get_instance(instance.id)).status == WorkflowStatus.PAUSED


@pytest.mark.asyncio
async def test_run_loop_survives_errors_and_stops(repository, registry):
    gate = ApprovalGate(repository)
    instances = WorkflowInstanceService(repository, registry)
    sweeper = ApprovalTimeoutSweeper(
        gate, instances, config=ApprovalTimeoutConfig(check_interval_seconds=0.01)
    )
    calls = 0

    async def flaky_run_once(now=None):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("database unavailable")

    sweeper.run_once = flaky_run_once
    stop = asyncio.Event()
    task = asyncio.create_task(sweeper.run(stop))
    while calls < 3:
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert calls >= 3


@pytest.mark.asyncio
async def test_start_and_stop_background_task(repository, registry):
    gate = ApprovalGate(repository)
    instances = WorkflowInstanceService(repository, registry)
    sweeper = ApprovalTimeoutSweeper(gate, instances)

    task = sweeper.start()
    assert sweeper.start() is task
    await asyncio.sleep(0)
    await sweeper.stop()

    assert task.done()
