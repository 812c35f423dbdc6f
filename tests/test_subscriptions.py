import pytest

from schemas.events import GenerationEvent
from tracking.subscriptions import SubscriptionManager, parse_event
from transport.subjects import event_subject


def progress(request_id="req-1", tenant_id="tenant-a", value=0.5):
    return GenerationEvent(tenantId=tenant_id, requestId=request_id, status="in_progress", progress=value)


@pytest.mark.asyncio
async def test_tenant_subscription_routes_events(multiplexer, server, eventually):
    manager = SubscriptionManager(multiplexer)
    received = []
    manager.add_listener(received.append)

    assert await manager.subscribe_tenant("tenant-a")
    assert not await manager.subscribe_tenant("tenant-a")

    await server.publish(event_subject("tenant-a", "req-1"), progress())
    await server.publish(event_subject("tenant-b", "req-2"), progress("req-2", "tenant-b"))
    await server.publish(event_subject("tenant-a", "req-3"), progress("req-3"))

    await eventually(lambda: len(received) == 2)
    assert [event.request_id for event in received] == ["req-1", "req-3"]
    assert manager.is_subscribed("tenant-a")
    assert not manager.is_subscribed("tenant-b")

    await manager.close()


@pytest.mark.asyncio
async def test_malformed_event_does_not_kill_subscription(multiplexer, server, eventually):
    manager = SubscriptionManager(multiplexer)
    received = []
    manager.add_listener(received.append)
    await manager.subscribe_tenant("tenant-a")

    subject = event_subject("tenant-a", "req-1")
    await server.publish(subject, b"{not json")
    await server.publish(subject, {"requestId": "req-1"})  # tenantId missing
    await server.publish(subject, progress())

    await eventually(lambda: len(received) == 1)
    assert received[0].request_id == "req-1"

    await manager.close()


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others(multiplexer, server, eventually):
    manager = SubscriptionManager(multiplexer)
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    async def collect(event):
        received.append(event)

    manager.add_listener(broken)
    manager.add_listener(collect)
    await manager.subscribe_request("tenant-a", "req-1")

    await server.publish(event_subject("tenant-a", "req-1"), progress())
    await eventually(lambda: len(received) == 1)

    await manager.close()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(multiplexer, server, eventually):
    manager = SubscriptionManager(multiplexer)
    received = []
    manager.add_listener(received.append)

    await manager.subscribe_request("tenant-a", "req-1")
    await server.publish(event_subject("tenant-a", "req-1"), progress(value=0.1))
    await eventually(lambda: len(received) == 1)

    assert await manager.unsubscribe_request("req-1")
    assert not await manager.unsubscribe_request("req-1")
    assert manager.subscribed_requests() == []

    await server.publish(event_subject("tenant-a", "req-1"), progress(value=0.2))
    await server.publish(event_subject("tenant-a", "req-x"), progress("req-x"))
    assert len(received) == 1
    assert not manager.is_subscribed()


@pytest.mark.asyncio
async def test_close_drops_every_subscription(broker, multiplexer):
    manager = SubscriptionManager(multiplexer)
    await manager.subscribe_tenant("tenant-a")
    await manager.subscribe_tenant("tenant-b")
    await manager.subscribe_request("tenant-c", "req-1")
    assert manager.subscribed_tenants() == ["tenant-a", "tenant-b"]

    await manager.close()
    assert manager.subscribed_tenants() == []
    assert broker.subscription_count() == 0


def test_parse_event_accepts_enveloped_event():
    raw = (
        b'{"meta": {"timestamp": "2025-01-01T00:00:00Z", "request_id": "req-1"},'
        b' "payload": {"tenantId": "t", "requestId": "req-1", "status": "completed"}}'
    )
    event = parse_event(raw)
    assert event.request_id == "req-1"
    assert event.status.is_terminal


def test_parse_event_rejects_garbage():
    with pytest.raises(ValueError):
        parse_event(b"\xff")


@pytest.mark.asyncio
@pytest.mark.parametrize("tenant_id", ["*", ">", "tenant.a", "tenant a", ""])
async def test_tenant_id_cannot_widen_subscription(broker, multiplexer, tenant_id):
    manager = SubscriptionManager(multiplexer)

    with pytest.raises(ValueError):
        await manager.subscribe_tenant(tenant_id)
    with pytest.raises(ValueError):
        await manager.subscribe_request(tenant_id, "req-1")

    assert manager.subscribed_tenants() == []
    assert broker.subscription_count() == 0


@pytest.mark.asyncio
async def test_other_tenants_events_stay_private(multiplexer, server, eventually):
    manager = SubscriptionManager(multiplexer)
    received = []
    manager.add_listener(received.append)
    await manager.subscribe_tenant("tenant-a")

    await server.publish(event_subject("victim", "req-9"), progress("req-9", "victim"))
    await server.publish(event_subject("tenant-a", "req-1"), progress())

    await eventually(lambda: len(received) == 1)
    assert [event.tenant_id for event in received] == ["tenant-a"]

    await manager.close()
