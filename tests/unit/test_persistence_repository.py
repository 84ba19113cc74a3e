import pytest

from baton.contracts import (
    AgentHandoff,
    ApprovalRequest,
    ApprovalStatus,
    SharedContext,
    StateTransition,
    StepHistoryRecord,
    StepStatus,
    WorkflowInstance,
    utcnow,
)
from baton.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    create_repository,
)
from baton.state import WorkflowStatus


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
        yield repo
        repo.close()
    else:
        yield InMemoryWorkflowRepository()


@pytest.mark.asyncio
async def test_instance_save_is_version_gated(repo):
    instance = WorkflowInstance(definition_id="onboarding", owner_id="alice")
    await repo.create_instance(instance)

    first = await repo.get_instance(instance.id)
    second = await repo.get_instance(instance.id)
    first.status = WorkflowStatus.RUNNING
    assert await repo.save_instance(first)
    assert first.version == 1

    second.status = WorkflowStatus.CANCELLED
    assert not await repo.save_instance(second)
    stored = await repo.get_instance(instance.id)
    assert stored.status == WorkflowStatus.RUNNING
    assert stored.version == 1

    with pytest.raises(ValueError):
        await repo.create_instance(instance)


@pytest.mark.asyncio
async def test_list_instances_filters_by_owner(repo):
    a = WorkflowInstance(definition_id="d", owner_id="alice")
    b = WorkflowInstance(definition_id="d", owner_id="bob")
    await repo.create_instance(a)
    await repo.create_instance(b)

    assert [i.id for i in await repo.list_instances("alice")] == [a.id]
    assert {i.id for i in await repo.list_instances()} == {a.id, b.id}


@pytest.mark.asyncio
async def test_step_history_closes_once(repo):
    record = StepHistoryRecord(instance_id="wf-1", step_id="s1", step_name="Step 1")
    await repo.append_step_history(record)

    closed = record.model_copy(
        update={"status": StepStatus.COMPLETED, "completed_at": utcnow(), "output": {"x": 1}}
    )
    assert await repo.close_step_history(closed)

    again = record.model_copy(
        update={"status": StepStatus.FAILED, "completed_at": utcnow()}
    )
    assert not await repo.close_step_history(again)

    history = await repo.get_step_history("wf-1")
    assert len(history) == 1
    assert history[0].status == StepStatus.COMPLETED
    assert history[0].output == {"x": 1}


@pytest.mark.asyncio
async def test_transitions_and_handoffs_are_ordered(repo):
    for new in (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED):
        await repo.append_transition(
            StateTransition(instance_id="wf-1", new_status=new, actor="alice")
        )
    await repo.append_handoff(
        AgentHandoff(instance_id="wf-1", from_agent_id="a", to_agent_id="b", step_id="s2")
    )
    await repo.append_handoff(
        AgentHandoff(instance_id="wf-1", from_agent_id="b", to_agent_id="c", step_id="s3")
    )

    transitions = await repo.get_transitions("wf-1")
    assert [t.new_status for t in transitions] == [
        WorkflowStatus.RUNNING,
        WorkflowStatus.PAUSED,
    ]
    handoffs = await repo.list_handoffs("wf-1")
    assert [h.to_agent_id for h in handoffs] == ["b", "c"]
    assert await repo.list_handoffs("other") == []


@pytest.mark.asyncio
async def test_shared_context_writes_check_version(repo):
    assert await repo.get_shared_context("wf-1") is None

    created = SharedContext(step_outputs={"s1": {"a": 1}}, version=1)
    assert await repo.save_shared_context("wf-1", created, expected_version=None)
    assert not await repo.save_shared_context("wf-1", created, expected_version=None)

    updated = SharedContext(step_outputs={"s1": {"a": 2}}, version=2)
    assert await repo.save_shared_context("wf-1", updated, expected_version=1)
    stale = SharedContext(step_outputs={"s1": {"a": 3}}, version=2)
    assert not await repo.save_shared_context("wf-1", stale, expected_version=1)

    stored = await repo.get_shared_context("wf-1")
    assert stored.version == 2
    assert stored.step_outputs == {"s1": {"a": 2}}


@pytest.mark.asyncio
async def test_approvals_version_gate_and_filters(repo):
    approval = ApprovalRequest(
        instance_id="wf-1",
        agent_id="writer",
        step_id="s1",
        proposed_response={"text": "draft"},
        confidence_score=0.4,
        requested_by="alice",
    )
    await repo.create_approval(approval)

    resolved = approval.model_copy(
        update={"status": ApprovalStatus.APPROVED, "version": approval.version + 1}
    )
    assert await repo.save_approval(resolved, expected_version=1)
    assert not await repo.save_approval(resolved, expected_version=1)

    assert await repo.list_approvals(status=ApprovalStatus.PENDING) == []
    approved = await repo.list_approvals(instance_id="wf-1", status=ApprovalStatus.APPROVED)
    assert [a.id for a in approved] == [approval.id]
    assert (await repo.get_approval(approval.id)).version == 2


@pytest.mark.asyncio
async def test_sqlite_repository_survives_reopen(tmp_path):
    db_path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(db_path)
    instance = WorkflowInstance(definition_id="d", owner_id="alice")
    await repo.create_instance(instance)
    repo.close()

    reopened = SQLiteWorkflowRepository(db_path)
    stored = await reopened.get_instance(instance.id)
    assert stored is not None
    assert stored.owner_id == "alice"
    reopened.close()


def test_create_repository_selects_backend_by_scheme(tmp_path):
    assert isinstance(create_repository(None), InMemoryWorkflowRepository)
    sqlite_repo = create_repository(f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(sqlite_repo, SQLiteWorkflowRepository)
    sqlite_repo.close()
    with pytest.raises(ValueError):
        create_repository("mongodb://localhost/baton")
