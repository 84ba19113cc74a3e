from datetime import timedelta

import pytest

from baton.agents import AgentRouter, MockAgentHandler
from baton.config import BatonConfig
from baton.contracts import ApprovalStatus, StepStatus, utcnow
from baton.engine import WorkflowEngine
from baton.notifications import APPROVAL_TIMEOUT, InMemoryNotificationChannel
from baton.persistence import SQLiteWorkflowRepository
from baton.registry import InMemoryWorkflowRegistry
from baton.state import WorkflowStatus


def _engine(db_path, definition, handlers, notifier=None) -> WorkflowEngine:
    config = BatonConfig()
    config.engine.shared_context_backoff_seconds = 0
    return WorkflowEngine(
        SQLiteWorkflowRepository(db_path),
        InMemoryWorkflowRegistry([definition]),
        AgentRouter(handlers),
        notifier=notifier or InMemoryNotificationChannel(),
        config=config,
    )


@pytest.mark.asyncio
async def test_workflow_survives_restart(tmp_path, definition_factory):
    db_path = tmp_path / "baton.db"
    handlers = {"analyst": MockAgentHandler(), "writer": MockAgentHandler()}

    engine = _engine(db_path, definition_factory(), handlers)
    instance = await engine.instances.create_instance("onboarding", "alice", {"team": "core"})
    await engine.instances.start_workflow(instance.id, actor="alice")
    first = await engine.executor.execute_step(instance.id, user_input="hello")
    assert first.success
    await engine.close()

    engine = _engine(db_path, definition_factory(), handlers)
    for _ in range(2):
        assert (await engine.executor.execute_step(instance.id)).success

    stored = await engine.instances.get_instance(instance.id)
    assert stored.status == WorkflowStatus.COMPLETED
    assert stored.workflow_context == {"team": "core"}
    assert list(stored.step_data) == ["step-1", "step-2", "step-3"]
    assert stored.conversation_history[0].content == "hello"

    history = await engine.instances.get_step_history(instance.id)
    assert [r.status for r in history] == [StepStatus.COMPLETED] * 3
    handoffs = await engine.handoffs.get_handoff_history(instance.id)
    assert [(h.from_agent_id, h.to_agent_id) for h in handoffs] == [("analyst", "writer")]
    shared = await engine.shared_context.get(instance.id)
    assert shared.version == 3
    assert shared.last_modified_by == "writer"

    transitions = await engine.instances.get_transition_history(instance.id)
    assert [(t.old_status, t.new_status) for t in transitions] == [
        (WorkflowStatus.CREATED, WorkflowStatus.RUNNING),
        (WorkflowStatus.RUNNING, WorkflowStatus.COMPLETED),
    ]
    status = await engine.instances.get_workflow_status(instance.id)
    assert status.percent_complete == 100
    await engine.close()


@pytest.mark.asyncio
async def test_timed_out_approval_pauses_until_resumed(tmp_path, definition_factory):
    notifier = InMemoryNotificationChannel()
    analyst = MockAgentHandler(output={"summary": "guess"}, confidence_score=0.3)
    engine = _engine(
        tmp_path / "baton.db",
        definition_factory(),
        {"analyst": analyst, "writer": MockAgentHandler()},
        notifier=notifier,
    )
    instance = await engine.instances.create_instance("onboarding", "alice")
    await engine.instances.start_workflow(instance.id, actor="alice")

    pending = await engine.executor.execute_step(instance.id)
    assert pending.requires_approval

    report = await engine.sweeper.run_once(now=utcnow() + timedelta(hours=73))
    assert report.timeouts == [pending.pending_approval_id]
    assert len(notifier.events_of(APPROVAL_TIMEOUT)) == 1
    approval = await engine.approvals.get_approval_request(pending.pending_approval_id)
    assert approval.status == ApprovalStatus.TIMED_OUT
    stored = await engine.instances.get_instance(instance.id)
    assert stored.status == WorkflowStatus.PAUSED

    again = await engine.sweeper.run_once(now=utcnow() + timedelta(hours=74))
    assert again.timeouts == []

    resumed = await engine.instances.resume_workflow(instance.id, actor="alice")
    assert resumed.success

    analyst.confidence_score = 0.9
    retried = await engine.executor.execute_step(instance.id, user_input="be precise")
    assert retried.success
    assert retried.next_step_index == 2
    await engine.close()


@pytest.mark.asyncio
async def test_revisiting_a_step_reruns_it(tmp_path, definition_factory):
    analyst = MockAgentHandler()
    engine = _engine(tmp_path / "baton.db", definition_factory(), {"analyst": analyst, "writer": MockAgentHandler()})
    instance = await engine.instances.create_instance("onboarding", "alice")
    await engine.instances.start_workflow(instance.id)
    await engine.executor.execute_step(instance.id)
    await engine.executor.execute_step(instance.id)

    moved = await engine.instances.go_to_step(instance.id, "step-1", actor="alice")
    assert moved.success
    result = await engine.executor.execute_step(instance.id, user_input="redo")

    assert result.success
    assert result.step_id == "step-1"
    assert len(analyst.calls) == 2
    assert analyst.calls[-1].step_data["step-2"]["processed_input"] == "no input"
    await engine.close()
