"""Agent capability handlers and routing."""

from .base import AgentHandler
from .live import PydanticAIAgentHandler
from .mock import MockAgentHandler
from .replay import ReplayAgentHandler
from .router import AgentRouter

__all__ = [
    "AgentHandler",
    "AgentRouter",
    "MockAgentHandler",
    "ReplayAgentHandler",
    "PydanticAIAgentHandler",
]
