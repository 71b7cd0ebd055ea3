"""Transport tests."""

import pytest

from rconflow.config import RconflowConfig
from rconflow.contracts import EventType, TriggerEvent
from rconflow.transports import get_transport, publish_event
from rconflow.transports.inmemory import InMemoryTransport
from rconflow.transports.redis import RedisTransport


def _event():
    return TriggerEvent(
        event_type=EventType.LOG_PLAYER_CONNECTED,
        server_id="server-1",
        payload={"steam_id": "765"},
        source="log",
    )


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()
    event = _event()

    await transport.publish("events", event)
    assert transport.pending("events") == 1

    message_received = False
    async for raw_msg, received in transport.subscribe("events"):
        assert received.id == event.id
        assert received.payload == {"steam_id": "765"}
        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.pending("events") == 0


@pytest.mark.asyncio
async def test_inmemory_transport_drops_malformed_messages(caplog):
    transport = InMemoryTransport()
    await transport.publish_raw("events", "{not json")
    await transport.publish_raw("events", '{"event_type": "NOPE", "server_id": "s"}')
    await transport.publish("events", _event())

    with caplog.at_level("WARNING"):
        received = [event async for _, event in transport.subscribe("events", lifespan=0.2)]

    assert [e.event_type for e in received] == [EventType.LOG_PLAYER_CONNECTED]
    assert caplog.text.count("Dropping malformed event") == 2


@pytest.mark.asyncio
async def test_subscribe_stops_after_lifespan():
    transport = InMemoryTransport()
    received = [event async for _, event in transport.subscribe("events", lifespan=0.1)]
    assert received == []


def test_redis_transport_defaults():
    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert RedisTransport.queue_name("events") == "rconflow:events"


@pytest.mark.asyncio
async def test_publish_event_uses_configured_topic():
    transport = InMemoryTransport()
    config = RconflowConfig(event_topic="moderation")

    await publish_event(_event(), transport=transport, config=config)

    assert transport.pending("moderation") == 1
    assert transport.pending("events") == 0


def test_get_transport_rejects_unknown_backend():
    with pytest.raises(ValueError, match="kafka"):
        get_transport("kafka", config=RconflowConfig())
