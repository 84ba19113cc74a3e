import pytest
from pydantic import ValidationError

from baton.registry import (
    InMemoryWorkflowRegistry,
    WorkflowDefinition,
    WorkflowStep,
    load_definitions,
)


def test_step_accepts_schema_text():
    step = WorkflowStep(
        step_id="s1",
        name="Collect",
        agent_capability_id="analyst",
        output_schema='{"type": "object"}',
        input_schema="  ",
    )
    assert step.output_schema == {"type": "object"}
    assert step.input_schema is None


def test_step_requires_capability():
    with pytest.raises(ValidationError):
        WorkflowStep(step_id="s1", name="Collect", agent_capability_id="")


def test_definition_indexing_is_one_based():
    definition = WorkflowDefinition(
        id="wf",
        steps=[
            WorkflowStep(step_id="a", name="A", agent_capability_id="x"),
            WorkflowStep(step_id="b", name="B", agent_capability_id="y"),
        ],
    )
    assert definition.step_at(1).step_id == "a"
    assert definition.step_at(2).step_id == "b"
    assert definition.step_at(0) is None
    assert definition.step_at(3) is None
    assert definition.index_of("b") == 2
    assert definition.index_of("z") is None


def test_load_definitions_from_yaml(tmp_path):
    path = tmp_path / "workflows.yaml"
    path.write_text(
        """
workflows:
  - id: onboarding
    name: Onboarding
    steps:
      - step_id: collect
        name: Collect requirements
        agent_capability_id: analyst
      - step_id: draft
        name: Draft plan
        agent_capability_id: writer
        approval_threshold: 0.9
        output_schema:
          type: object
          required: [plan]
"""
    )
    registry = load_definitions(path)

    definition = registry.get_definition("onboarding")
    assert [s.step_id for s in definition.steps] == ["collect", "draft"]
    assert definition.steps[1].approval_threshold == 0.9
    assert definition.steps[1].output_schema["required"] == ["plan"]
    assert registry.get_definition("missing") is None
    assert isinstance(registry, InMemoryWorkflowRegistry)
