import pytest

from baton.agents import AgentRouter, MockAgentHandler
from baton.config import BatonConfig
from baton.engine import WorkflowEngine
from baton.notifications import InMemoryNotificationChannel
from baton.persistence import InMemoryWorkflowRepository
from baton.registry import InMemoryWorkflowRegistry, WorkflowDefinition, WorkflowStep


def make_definition(definition_id: str = "onboarding", agents=("analyst", "writer", "writer"), **step_overrides):
    steps = [
        WorkflowStep(
            step_id=f"step-{n}",
            name=f"Step {n}",
            agent_capability_id=agent,
            **step_overrides.get(f"step-{n}", {}),
        )
        for n, agent in enumerate(agents, start=1)
    ]
    return WorkflowDefinition(id=definition_id, name=definition_id.title(), steps=steps)


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def registry():
    return InMemoryWorkflowRegistry([make_definition()])


@pytest.fixture
def notifier():
    return InMemoryNotificationChannel()


@pytest.fixture
def router():
    return AgentRouter(
        {
            "analyst": MockAgentHandler(progress_interval=0),
            "writer": MockAgentHandler(progress_interval=0),
        }
    )


@pytest.fixture
def config():
    config = BatonConfig()
    config.engine.shared_context_backoff_seconds = 0
    return config


@pytest.fixture
def engine(repository, registry, router, notifier, config):
    return WorkflowEngine(repository, registry, router, notifier=notifier, config=config)


@pytest.fixture
def definition_factory():
    return make_definition
