"""Transport tests."""

import pytest

from jobweave.contracts import Notification
from jobweave.transports.inmemory import InMemoryTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()
    subscription = await transport.subscribe("job_progress:1")

    # Published after subscribing, consumed later
    await transport.publish("job_progress:1", Notification(topic="job_progress:1", payload={"n": 1}))
    await transport.publish("job_progress:1", Notification(topic="job_progress:1", payload={"n": 2}))
    await transport.publish("job_progress:2", Notification(topic="job_progress:2", payload={"n": 3}))

    received = []
    async for notification in subscription:
        received.append(notification.payload["n"])
        if len(received) == 2:
            break

    assert received == [1, 2]
    assert await subscription.get(timeout=0.01) is None
    await subscription.close()
    assert transport.subscriber_count("job_progress:1") == 0


@pytest.mark.asyncio
async def test_inmemory_transport_fans_out():
    transport = InMemoryTransport()
    first = await transport.subscribe("topic")
    second = await transport.subscribe("topic")

    await transport.publish("topic", Notification(topic="topic", payload={"x": 1}))

    assert (await first.get(timeout=1)).payload == {"x": 1}
    assert (await second.get(timeout=1)).payload == {"x": 1}


@pytest.mark.asyncio
async def test_subscription_lifespan_ends_iteration():
    transport = InMemoryTransport()
    subscription = await transport.subscribe("quiet", lifespan=0.05)

    received = [n async for n in subscription]
    assert received == []


def test_notification_json_round_trip():
    notification = Notification(topic="t", payload={"percentage": 40})
    assert Notification.from_json(notification.to_json()) == notification


@pytest.mark.asyncio
async def test_redis_transport_import():
    """Test Redis transport can be imported (even if redis not available)."""
    try:
        from jobweave.transports.redis import RedisTransport

        # If redis is available, test basic instantiation
        try:
            transport = RedisTransport()
            assert transport.host == "localhost"
            assert transport.port == 6379
        except ImportError:
            # Redis not available, just test import worked
            pass
    except ImportError:
        pytest.fail("RedisTransport should be importable")
