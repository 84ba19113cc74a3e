"""Notification channel factory and fire-and-forget helper."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from ..config import BatonConfig, load_config
from ..contracts import BestEffortResult
from .base import (
    AGENT_HANDOFF,
    APPROVAL_REMINDER,
    APPROVAL_REQUIRED,
    APPROVAL_TIMEOUT,
    NotificationChannel,
    NotificationEvent,
)
from .inmemory import InMemoryNotificationChannel

logger = logging.getLogger(__name__)


def get_notification_channel(
    backend: Optional[str] = None, config: Optional[BatonConfig] = None
) -> NotificationChannel:
    """Factory function to get the configured notification channel."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("BATON_NOTIFICATIONS")
        or config.notifications.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryNotificationChannel()
    elif backend == "redis":
        from .redis import RedisNotificationChannel

        return RedisNotificationChannel(config.notifications.redis)
    else:
        raise ValueError(f"Unsupported notification backend: {backend}")


async def notify(
    channel: Optional[NotificationChannel],
    event_type: str,
    payload: Dict[str, Any],
) -> BestEffortResult:
    """Broadcast ``payload``; failures are logged and never propagate."""
    if channel is None:
        return BestEffortResult.failed("no notification channel configured")
    try:
        await channel.broadcast(event_type, payload)
    except Exception as e:
        logger.warning(f"Failed to broadcast {event_type} event: {e}")
        return BestEffortResult.failed(str(e))
    return BestEffortResult()


__all__ = [
    "AGENT_HANDOFF",
    "APPROVAL_REQUIRED",
    "APPROVAL_REMINDER",
    "APPROVAL_TIMEOUT",
    "NotificationChannel",
    "NotificationEvent",
    "InMemoryNotificationChannel",
    "get_notification_channel",
    "notify",
]
