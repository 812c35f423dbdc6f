import pytest

from observability.feed import EventFeed
from orchestration.client import DEFAULT_SUBMIT_SUBJECT, GenerationClient, SubmissionRejected
from schemas.events import EventStatus, GenerationEvent
from tracking.tracker import RequestNotFound, RequestTracker
from transport.codec import default_codec
from transport.errors import NoResponders
from transport.subjects import event_subject


PARAMS = {"tenant_id": "tenant-a", "theme": "Space Adventure", "node_count": 8}


@pytest.fixture
def client(multiplexer, clock):
    return GenerationClient(
        multiplexer,
        tracker=RequestTracker(clock=clock),
        feed=EventFeed(max_events=50),
        request_timeout=1.0,
    )


@pytest.fixture
def orchestrator(server):
    """Captures submissions published on the orchestrator subject."""
    received = []

    async def capture(message):
        received.append(default_codec.decode(message.data))

    async def start():
        await server.subscribe(DEFAULT_SUBMIT_SUBJECT, capture, queue="orchestrator")
        return received

    return start


def event(request_id, status="in_progress", progress=None, phase=None, **extra):
    return GenerationEvent(
        tenantId="tenant-a", requestId=request_id, status=status,
        progress=progress, servicePhase=phase, **extra,
    )


# ============================================================
# SUBMISSION
# ============================================================

@pytest.mark.asyncio
async def test_submit_is_fire_and_forget(client, orchestrator, eventually):
    received = await orchestrator()

    request_id = await client.submit(PARAMS)

    assert client.get_status(request_id).status == EventStatus.PENDING
    await eventually(lambda: received)
    envelope = received[0]
    assert envelope.request_id == request_id
    assert envelope.meta.tenant == "tenant-a"
    assert envelope.payload["request_id"] == request_id
    assert envelope.payload["theme"] == "Space Adventure"
    assert client.subscriptions.subscribed_requests() == [request_id]

    await client.close()


@pytest.mark.asyncio
async def test_submit_validates_parameters(client):
    with pytest.raises(ValueError):
        await client.submit({"tenant_id": "tenant-a", "theme": "x", "node_count": 3})
    assert client.tracker.count() == 0


@pytest.mark.asyncio
async def test_events_drive_tracker_until_terminal(client, server, orchestrator, eventually):
    await orchestrator()
    request_id = await client.submit(PARAMS)
    subject = event_subject("tenant-a", request_id)

    await server.publish(subject, event(request_id, progress=0.4, phase="story-generator"))
    await eventually(lambda: client.get_status(request_id).progress == 0.4)
    assert client.get_status(request_id).current_phase == "story-generator"

    await server.publish(subject, event(request_id, status="completed", file_path="/trails/x.json"))
    await eventually(lambda: client.get_status(request_id).status == EventStatus.COMPLETED)

    # Terminal event releases the per-request subscription
    await eventually(lambda: client.subscriptions.subscribed_requests() == [])
    await eventually(lambda: len(client.recent_events(request_id=request_id)) == 2)
    assert client.recent_events(limit=1)[0].status == EventStatus.COMPLETED

    await client.close()


@pytest.mark.asyncio
async def test_replay_resubmits_under_new_id(client, orchestrator, eventually):
    received = await orchestrator()
    first = await client.submit(PARAMS)
    second = await client.replay(first)

    assert second != first
    await eventually(lambda: len(received) == 2)
    assert received[1].payload["metadata"]["original_request_id"] == first
    assert received[1].payload["theme"] == "Space Adventure"

    await client.close()


@pytest.mark.asyncio
async def test_replay_unknown_request(client):
    with pytest.raises(RequestNotFound):
        await client.replay("never-submitted")


# ============================================================
# ACKNOWLEDGED SUBMISSION
# ============================================================

@pytest.mark.asyncio
async def test_ack_without_orchestrator_rolls_back(multiplexer, clock):
    client = GenerationClient(multiplexer, tracker=RequestTracker(clock=clock), wait_for_ack=True, request_timeout=1.0)

    with pytest.raises(NoResponders):
        await client.submit(PARAMS)

    assert client.tracker.count() == 0
    assert not client.subscriptions.is_subscribed()


@pytest.mark.asyncio
async def test_ack_with_error_payload_is_rejected(multiplexer, server, clock):
    async def refuse(request):
        raise ValueError("queue full")

    await server.serve(DEFAULT_SUBMIT_SUBJECT, refuse)
    client = GenerationClient(multiplexer, tracker=RequestTracker(clock=clock), wait_for_ack=True, request_timeout=1.0)

    with pytest.raises(SubmissionRejected) as info:
        await client.submit(PARAMS)
    assert info.value.error["message"] == "queue full"
    assert client.tracker.count() == 0


@pytest.mark.asyncio
async def test_ack_accepted(multiplexer, server, clock):
    async def accept(request):
        return {"accepted": True}

    await server.serve(DEFAULT_SUBMIT_SUBJECT, accept)
    client = GenerationClient(multiplexer, tracker=RequestTracker(clock=clock), wait_for_ack=True, request_timeout=1.0)

    request_id = await client.submit(PARAMS)
    assert client.get_status(request_id).status == EventStatus.PENDING
    await client.close()


# ============================================================
# TENANT SUBSCRIPTION
# ============================================================

@pytest.mark.asyncio
async def test_tenant_subscription_and_connection_status(client, server, eventually):
    status = client.connection_status()
    assert status.connected and not status.subscribed and status.tenant_id is None

    await client.subscribe("tenant-a")
    # Events for requests submitted elsewhere are tracked too
    await server.publish(event_subject("tenant-a", "external-1"), event("external-1", progress=0.1))
    await eventually(lambda: client.tracker.count() == 1)

    status = client.connection_status()
    assert status.to_dict() == {
        "connected": True,
        "subscribed": True,
        "tenant_id": "tenant-a",
        "active_requests": 1,
        "tenants": ["tenant-a"],
    }

    await client.unsubscribe()
    assert client.tracker.count() == 0
    assert client.connection_status().tenant_id is None
    assert not client.subscriptions.is_subscribed()


@pytest.mark.asyncio
async def test_submit_reuses_tenant_subscription(client, orchestrator):
    await orchestrator()
    await client.subscribe("tenant-a")

    await client.submit(PARAMS)
    assert client.subscriptions.subscribed_requests() == []

    await client.close()


@pytest.mark.asyncio
async def test_reconstruct_uses_cache(client):
    steps = [
        {"temp_node_id": "A", "content": {"choices": [{"id": "c1", "next_node_id": "B"}]}},
        {"temp_node_id": "B", "content": {}},
    ]
    first = client.reconstruct(steps, "A")
    assert client.reconstruct(steps, "A") == first
    assert first.dag.convergence_points == []
