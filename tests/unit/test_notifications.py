import asyncio

import pytest

from baton.config import BatonConfig, RedisConfig
from baton.notifications import (
    APPROVAL_REQUIRED,
    InMemoryNotificationChannel,
    NotificationEvent,
    get_notification_channel,
    notify,
)


@pytest.mark.asyncio
async def test_inmemory_channel_records_and_fans_out():
    channel = InMemoryNotificationChannel()
    received = []

    async def listen():
        async for event in channel.subscribe(lifespan=0.5):
            received.append(event)
            break

    listener = asyncio.create_task(listen())
    await asyncio.sleep(0.01)
    await channel.broadcast(APPROVAL_REQUIRED, {"approval_request_id": "a-1"})
    await listener

    assert received[0].payload == {"approval_request_id": "a-1"}
    assert [e.event_type for e in channel.events_of(APPROVAL_REQUIRED)] == [APPROVAL_REQUIRED]


@pytest.mark.asyncio
async def test_notify_swallows_channel_errors():
    class Broken(InMemoryNotificationChannel):
        async def broadcast(self, event_type, payload):
            raise ConnectionError("down")

    result = await notify(Broken(), APPROVAL_REQUIRED, {})
    assert not result.ok
    assert "down" in result.error

    assert not (await notify(None, APPROVAL_REQUIRED, {})).ok
    assert (await notify(InMemoryNotificationChannel(), APPROVAL_REQUIRED, {})).ok


def test_event_json_round_trip():
    event = NotificationEvent(event_type="AGENT_HANDOFF", payload={"to_agent_id": "writer"})
    assert NotificationEvent.from_json(event.to_json()) == event


def test_factory_selects_backend(monkeypatch):
    monkeypatch.delenv("BATON_NOTIFICATIONS", raising=False)
    assert isinstance(
        get_notification_channel(config=BatonConfig()), InMemoryNotificationChannel
    )
    with pytest.raises(ValueError):
        get_notification_channel("carrier-pigeon", config=BatonConfig())


def test_redis_channel_import():
    """Redis channel can be constructed when redis is installed."""
    try:
        from baton.notifications.redis import RedisNotificationChannel

        try:
            channel = RedisNotificationChannel(RedisConfig(host="example", port=6390))
            assert channel.config.port == 6390
            assert channel.channel_for("APPROVAL_TIMEOUT") == "baton:APPROVAL_TIMEOUT"
        except ImportError:
            pytest.skip("redis not available")
    except ImportError:
        pytest.skip("redis not available")
