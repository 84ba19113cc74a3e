"""In-memory notification channel for tests and single-process use."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

from .base import NotificationChannel, NotificationEvent


class InMemoryNotificationChannel(NotificationChannel):
    """Keep broadcast events in process memory."""

    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []
        self._subscribers: List[asyncio.Queue[NotificationEvent]] = []
        self._lock = asyncio.Lock()

    async def broadcast(self, event_type: str, payload: Dict[str, Any]) -> None:
        event = NotificationEvent(event_type=event_type, payload=payload)
        async with self._lock:
            self.events.append(event)
            for queue in self._subscribers:
                queue.put_nowait(event)

    def events_of(self, event_type: str) -> List[NotificationEvent]:
        return [e for e in self.events if e.event_type == event_type]

    async def subscribe(
        self, lifespan: Optional[float] = None
    ) -> AsyncIterator[NotificationEvent]:
        """Yield events broadcast after subscribing.

        Args:
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        queue: asyncio.Queue[NotificationEvent] = asyncio.Queue()
        async with self._lock:
            self._subscribers.append(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    yield await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
        finally:
            async with self._lock:
                self._subscribers.remove(queue)
