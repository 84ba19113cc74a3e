"""Routing of agent capability ids to handlers."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .base import AgentHandler

logger = logging.getLogger(__name__)


class AgentRouter:
    """Registry mapping capability ids to :class:`AgentHandler` instances."""

    def __init__(self, handlers: Optional[Dict[str, AgentHandler]] = None) -> None:
        self._handlers: Dict[str, AgentHandler] = {}
        for capability_id, handler in (handlers or {}).items():
            self.register_handler(capability_id, handler)

    def register_handler(self, capability_id: str, handler: AgentHandler) -> None:
        """Register ``handler`` for ``capability_id``, replacing any previous one."""
        if not capability_id or not capability_id.strip():
            raise ValueError("capability_id must be a non-empty string")
        if handler is None:
            raise ValueError("handler must not be None")
        self._handlers[capability_id] = handler
        logger.info(f"Registered handler for agent capability {capability_id}")

    def unregister_handler(self, capability_id: str) -> bool:
        return self._handlers.pop(capability_id, None) is not None

    def get_handler(self, capability_id: str) -> Optional[AgentHandler]:
        """Return the handler for ``capability_id`` or ``None`` if unknown."""
        if not capability_id or not capability_id.strip():
            logger.warning("Attempted to get handler with empty capability id")
            return None
        handler = self._handlers.get(capability_id)
        if handler is None:
            logger.warning(f"No handler registered for agent capability {capability_id}")
        return handler

    def capabilities(self) -> List[str]:
        return sorted(self._handlers)
