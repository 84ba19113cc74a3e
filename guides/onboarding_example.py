"""Two-agent onboarding workflow run end to end with baton.

The research step uses a pydantic-ai agent; the drafting step uses a mock
handler so the example only needs one model key. Set ``BATON_DATABASE_URL``
(for example ``sqlite://baton.db``) to keep the run around for the CLI.
"""

import asyncio
import logging

from pydantic import BaseModel
from pydantic_ai import Agent

from baton import (
    AgentRouter,
    MockAgentHandler,
    WorkflowDefinition,
    WorkflowStep,
    build_engine,
    register_workflow,
)
from baton.agents import PydanticAIAgentHandler
from baton.contracts import AgentContext


class Research(BaseModel):
    summary: str
    open_questions: list[str]
    confidence_score: float


research_agent = Agent(
    "anthropic:claude-3-5-sonnet-latest",
    deps_type=AgentContext,
    output_type=Research,
    system_prompt=(
        "Research the customer described in the workflow context. "
        "Rate how sure you are with a confidence_score between 0 and 1."
    ),
)

register_workflow(
    WorkflowDefinition(
        id="customer-onboarding",
        name="Customer onboarding",
        steps=[
            WorkflowStep(
                step_id="research",
                name="Research customer",
                agent_capability_id="researcher",
                output_schema={
                    "type": "object",
                    "required": ["summary", "open_questions"],
                },
            ),
            WorkflowStep(
                step_id="welcome",
                name="Draft welcome email",
                agent_capability_id="writer",
            ),
        ],
    )
)


async def main():
    logging.basicConfig(level=logging.INFO)
    router = AgentRouter(
        {
            "researcher": PydanticAIAgentHandler(research_agent),
            "writer": MockAgentHandler(output={"email": "Welcome aboard!"}),
        }
    )
    engine = build_engine(router=router)
    await engine.start()
    try:
        instance = await engine.instances.create_instance(
            "customer-onboarding", "alice", {"customer": "Acme Corp"}
        )
        await engine.instances.start_workflow(instance.id, actor="alice")

        while True:
            result = await engine.executor.execute_step(instance.id)
            print(f"{result.step_name}: {result.status.value}")
            if result.requires_approval:
                print(f"Approve with: baton approval approve {result.pending_approval_id} --user alice")
                break
            if not result.success or result.new_instance_status.value == "completed":
                break

        status = await engine.instances.get_workflow_status(instance.id)
        print(f"Progress: {status.percent_complete}%")
    finally:
        await engine.close()


if __name__ == "__main__":
    asyncio.run(main())
