"""Redis pub/sub notification channel for cross-process listeners."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..config import RedisConfig
from .base import NotificationChannel, NotificationEvent

logger = logging.getLogger(__name__)


class RedisNotificationChannel(NotificationChannel):
    """Publish each event on the Redis channel ``<prefix>:<event_type>``.

    Listeners in other processes pattern-subscribe to ``<prefix>:*``; events
    published while nobody listens are dropped, matching the fire-and-forget
    contract of :class:`NotificationChannel`.
    """

    def __init__(
        self, config: Optional[RedisConfig] = None, channel_prefix: str = "baton"
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisNotificationChannel")

        self.config = config or RedisConfig()
        self.channel_prefix = channel_prefix
        self._client: Optional[Any] = None

    def channel_for(self, event_type: str) -> str:
        return f"{self.channel_prefix}:{event_type}"

    async def connect(self) -> None:
        self._client = redis.Redis(
            host=self.config.host,
            port=self.config.port,
            db=self.config.db,
            password=self.config.password,
            decode_responses=True,
        )
        await self._client.ping()
        logger.info(
            f"Connected notification channel to redis {self.config.host}:{self.config.port}"
        )

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def broadcast(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._client is None:
            await self.connect()
        event = NotificationEvent(event_type=event_type, payload=payload)
        receivers = await self._client.publish(self.channel_for(event_type), event.to_json())
        logger.debug(f"Published {event_type} to {receivers} listeners")

    async def subscribe(
        self, lifespan: Optional[float] = None
    ) -> AsyncIterator[NotificationEvent]:
        """Yield events published by any process until ``lifespan`` expires."""
        if self._client is None:
            await self.connect()
        pubsub = self._client.pubsub()
        await pubsub.psubscribe(self.channel_for("*"))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while deadline is None or loop.time() < deadline:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message is None:
                    continue
                yield NotificationEvent.from_json(message["data"])
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()
