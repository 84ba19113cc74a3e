import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest
from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError
from pydantic_ai.models.function import FunctionModel

from baton.agents import (
    AgentHandler,
    AgentRouter,
    MockAgentHandler,
    PydanticAIAgentHandler,
    ReplayAgentHandler,
)
from baton.agents.live import is_retryable_error
from baton.contracts import AgentContext


def _context(**overrides) -> AgentContext:
    values = dict(
        instance_id="wf-1",
        step_id="step-1",
        step_name="Draft Summary",
        user_input="hello",
        workflow_context={"project": "apollo"},
    )
    values.update(overrides)
    return AgentContext(**values)


def test_router_registration_and_lookup():
    router = AgentRouter()
    handler = MockAgentHandler()
    router.register_handler("writer", handler)

    assert router.get_handler("writer") is handler
    assert router.get_handler("unknown") is None
    assert router.get_handler("") is None
    assert router.capabilities() == ["writer"]
    assert isinstance(handler, AgentHandler)

    assert router.unregister_handler("writer")
    assert not router.unregister_handler("writer")
    with pytest.raises(ValueError):
        router.register_handler(" ", handler)
    with pytest.raises(ValueError):
        router.register_handler("writer", None)


@pytest.mark.asyncio
async def test_mock_handler_success_and_failure():
    ok = await MockAgentHandler(confidence_score=0.9).execute(_context())
    assert ok.success
    assert ok.output["processed_input"] == "hello"
    assert ok.confidence_score == 0.9

    failing = MockAgentHandler(should_succeed=False, retryable=True, error_message="rate limited")
    result = await failing.execute(_context())
    assert not result.success
    assert result.retryable
    assert result.error_message == "rate limited"
    assert len(failing.calls) == 1


@pytest.mark.asyncio
async def test_mock_handler_streams_progress():
    updates = [p async for p in MockAgentHandler(progress_interval=0).execute_streaming(_context())]
    assert updates[0].percent_complete == 0
    assert updates[-1].message == "Step completed"
    assert all(u.percent_complete is not None for u in updates)


@pytest.mark.asyncio
async def test_replay_records_then_replays(tmp_path):
    live = MockAgentHandler(output={"text": "recorded"})
    replay = ReplayAgentHandler(live, tmp_path / "fixtures")

    first = await replay.execute(_context())
    live.output = {"text": "changed"}
    second = await replay.execute(_context())

    assert first.output == {"text": "recorded"}
    assert second.output == {"text": "recorded"}
    assert len(live.calls) == 1
    files = list((tmp_path / "fixtures").glob("*.json"))
    assert len(files) == 1
    assert files[0].name.startswith("draft-summary-")
    assert json.loads(files[0].read_text())["result"]["output"] == {"text": "recorded"}


@pytest.mark.asyncio
async def test_replay_does_not_cache_failures(tmp_path):
    live = MockAgentHandler(should_succeed=False)
    replay = ReplayAgentHandler(live, tmp_path)

    await replay.execute(_context())
    await replay.execute(_context())

    assert len(live.calls) == 2
    assert list(tmp_path.glob("*.json")) == []


def test_replay_cache_key_depends_on_input():
    base = ReplayAgentHandler.cache_key(_context())
    assert base == ReplayAgentHandler.cache_key(_context())
    assert base != ReplayAgentHandler.cache_key(_context(user_input="other"))
    assert base != ReplayAgentHandler.cache_key(_context(step_parameters={"type": "object"}))


class Draft(BaseModel):
    text: str
    confidence_score: float
    reasoning: str


class DummyAgent:
    def __init__(self, output=None, error=None):
        self.output = output
        self.error = error
        self.prompts = []

    async def run(self, prompt, deps=None):
        self.prompts.append((prompt, deps))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(output=self.output)


@pytest.mark.asyncio
async def test_pydantic_ai_handler_lifts_confidence():
    agent = DummyAgent(Draft(text="hi", confidence_score=0.5, reasoning="guess"))
    handler = PydanticAIAgentHandler(agent)

    result = await handler.execute(_context())

    assert result.success
    assert result.output == {"text": "hi", "confidence_score": 0.5, "reasoning": "guess"}
    assert result.confidence_score == 0.5
    assert result.reasoning == "guess"
    prompt, deps = agent.prompts[0]
    assert "Draft Summary" in prompt and "hello" in prompt
    assert deps.instance_id == "wf-1"


@pytest.mark.asyncio
async def test_pydantic_ai_handler_wraps_text_output():
    result = await PydanticAIAgentHandler(DummyAgent("plain answer")).execute(_context())
    assert result.output == {"text": "plain answer"}
    assert result.confidence_score == 1.0


@pytest.mark.asyncio
async def test_pydantic_ai_handler_classifies_errors():
    transient = PydanticAIAgentHandler(DummyAgent(error=httpx.ConnectError("refused")))
    timeout = PydanticAIAgentHandler(DummyAgent(error=asyncio.TimeoutError()))
    fatal = PydanticAIAgentHandler(DummyAgent(error=RuntimeError("bad prompt")))

    assert (await transient.execute(_context())).retryable
    assert (await timeout.execute(_context())).retryable
    result = await fatal.execute(_context())
    assert not result.success
    assert not result.retryable
    assert result.error_message == "bad prompt"


def _failing_model_agent(status_code):
    def respond(messages, info):
        raise ModelHTTPError(status_code=status_code, model_name="function")

    return Agent(FunctionModel(respond), deps_type=AgentContext)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,retryable", [(503, True), (429, True), (408, True), (400, False), (401, False)]
)
async def test_pydantic_ai_handler_classifies_provider_status(status_code, retryable):
    handler = PydanticAIAgentHandler(_failing_model_agent(status_code))

    result = await handler.execute(_context())

    assert not result.success
    assert result.retryable is retryable


@pytest.mark.asyncio
async def test_pydantic_ai_handler_follows_wrapped_transport_errors():
    try:
        try:
            raise httpx.ReadTimeout("read timed out")
        except httpx.ReadTimeout as e:
            raise RuntimeError("provider request failed") from e
    except RuntimeError as wrapped:
        error = wrapped

    result = await PydanticAIAgentHandler(DummyAgent(error=error)).execute(_context())

    assert result.retryable
    assert not is_retryable_error(ValueError("bad schema"))
