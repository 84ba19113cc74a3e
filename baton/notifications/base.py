"""Base notification channel interface."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, Field

from ..contracts import new_id, utcnow

AGENT_HANDOFF = "AGENT_HANDOFF"
APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
APPROVAL_REMINDER = "APPROVAL_REMINDER"
APPROVAL_TIMEOUT = "APPROVAL_TIMEOUT"


class NotificationEvent(BaseModel):
    """Envelope broadcast to interested clients."""

    event_id: str = Field(default_factory=new_id)
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "NotificationEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)


class NotificationChannel(metaclass=abc.ABCMeta):
    """Abstract fire-and-forget broadcast channel."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def broadcast(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Send an event to every listener."""
        raise NotImplementedError
