import asyncio
import json

import pytest

from schemas.envelope import Envelope
from transport.errors import ConnectionLost, NoResponders, RequestTimeout
from transport.multiplexer import TransportMultiplexer


# ============================================================
# RPC
# ============================================================

@pytest.mark.asyncio
async def test_request_reply_keeps_request_id(multiplexer, server):
    async def echo(request: Envelope):
        return {"echo": request.payload["text"]}

    await server.serve("example.echo", echo)

    envelope = multiplexer.codec.encode({"text": "hello"}, multiplexer.new_request_id())
    reply = await multiplexer.send_request("example.echo", envelope, timeout=1.0)

    assert reply.payload == {"echo": "hello"}
    assert reply.request_id == envelope.request_id
    assert multiplexer.pending_count() == 0


@pytest.mark.asyncio
async def test_no_responders_fails_fast(multiplexer):
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(NoResponders):
        await multiplexer.request("nobody.home", {"x": 1}, timeout=5.0)

    assert loop.time() - started < 1.0
    assert multiplexer.pending_count() == 0


@pytest.mark.asyncio
async def test_timeout_when_handler_never_replies(multiplexer, server):
    async def swallow(message):
        return None

    await server.subscribe("slow.service", swallow)

    with pytest.raises(RequestTimeout) as info:
        await multiplexer.request("slow.service", {}, timeout=0.05)

    assert isinstance(info.value, TimeoutError)
    assert multiplexer.pending_count() == 0


@pytest.mark.asyncio
async def test_reply_with_foreign_request_id_is_ignored(multiplexer, server):
    async def impostor(message):
        wrong = server.codec.encode({"hijack": True}, "someone-else")
        await server.connection.publish(message.reply, server.codec.to_bytes(wrong))

    await server.subscribe("svc.impostor", impostor)

    with pytest.raises(RequestTimeout):
        await multiplexer.request("svc.impostor", {}, timeout=0.1)


@pytest.mark.asyncio
async def test_handler_failure_becomes_error_reply(multiplexer, server):
    async def broken(request):
        raise RuntimeError("boom")

    await server.serve("svc.broken", broken)
    reply = await multiplexer.request("svc.broken", {}, timeout=1.0)

    assert reply.payload["error"]["type"] == "RuntimeError"
    assert reply.payload["error"]["message"] == "boom"


@pytest.mark.asyncio
async def test_queue_group_delivers_each_request_once(broker, multiplexer):
    first = TransportMultiplexer(broker.connect("worker-1"))
    second = TransportMultiplexer(broker.connect("worker-2"))
    handled = {"worker-1": [], "worker-2": []}

    def worker(name):
        async def handle(request):
            handled[name].append(request.request_id)
            return {"worker": name}
        return handle

    await first.serve("mcp.orchestrator.request", worker("worker-1"), queue="orchestrator")
    await second.serve("mcp.orchestrator.request", worker("worker-2"), queue="orchestrator")

    for _ in range(10):
        await multiplexer.request("mcp.orchestrator.request", {}, timeout=1.0)

    all_ids = handled["worker-1"] + handled["worker-2"]
    assert len(all_ids) == 10
    assert len(set(all_ids)) == 10
    assert len(handled["worker-1"]) == 5
    assert len(handled["worker-2"]) == 5

    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_concurrent_requests_are_correlated(multiplexer, server):
    async def double(request):
        await asyncio.sleep(0.01 * (request.payload["n"] % 3))
        return {"n": request.payload["n"] * 2}

    await server.serve("math.double", double)
    replies = await asyncio.gather(
        *(multiplexer.request("math.double", {"n": n}, timeout=1.0) for n in range(20))
    )

    assert [reply.payload["n"] for reply in replies] == [n * 2 for n in range(20)]


# ============================================================
# CANCELLATION / CONNECTION LOSS
# ============================================================

@pytest.mark.asyncio
async def test_abandoned_request_leaves_no_correlation_entry(multiplexer, server, eventually):
    release = asyncio.Event()
    seen = []

    async def slow(request):
        seen.append(request.request_id)
        await release.wait()
        return {"late": True}

    await server.serve("svc.slow", slow)

    task = asyncio.create_task(multiplexer.request("svc.slow", {}, timeout=5.0))
    await eventually(lambda: seen)
    assert multiplexer.pending_count() == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert multiplexer.pending_count() == 0

    # The late reply arrives and is dropped
    release.set()
    await asyncio.sleep(0.05)
    assert multiplexer.pending_count() == 0


@pytest.mark.asyncio
async def test_connection_loss_fails_pending_requests(broker, server, eventually):
    connection = broker.connect("fragile")
    mux = TransportMultiplexer(connection)
    release = asyncio.Event()
    seen = []

    async def never(request):
        seen.append(request.request_id)
        await release.wait()

    await server.serve("svc.never", never)

    task = asyncio.create_task(mux.request("svc.never", {}, timeout=5.0))
    await eventually(lambda: seen)
    await connection.drop("network down")

    with pytest.raises(ConnectionLost):
        await task

    assert not mux.is_connected
    with pytest.raises(ConnectionLost):
        await mux.publish("anything", b"x")
    release.set()


# ============================================================
# PUB/SUB
# ============================================================

@pytest.mark.asyncio
async def test_overlapping_subscriptions_each_get_a_copy(multiplexer, server, eventually):
    wide, narrow = [], []

    async def on_wide(message):
        wide.append(json.loads(message.data))

    async def on_narrow(message):
        narrow.append(json.loads(message.data))

    wide_handle = await multiplexer.subscribe("events.>", on_wide)
    await multiplexer.subscribe("events.tenant-a", on_narrow)

    await server.publish("events.tenant-a", {"n": 1})
    await eventually(lambda: len(wide) == 1 and len(narrow) == 1)
    assert wide == narrow == [{"n": 1}]

    await wide_handle.unsubscribe()
    await server.publish("events.tenant-a", {"n": 2})
    await eventually(lambda: len(narrow) == 2)
    assert len(wide) == 1


@pytest.mark.asyncio
async def test_publish_without_subscribers_does_not_block(multiplexer):
    await multiplexer.publish("nobody.listens", {"ok": True})


@pytest.mark.asyncio
async def test_publish_rejects_unknown_message_type(multiplexer):
    with pytest.raises(TypeError):
        await multiplexer.publish("x.y", 42)


# ============================================================
# CONNECTION OWNERSHIP
# ============================================================

@pytest.mark.asyncio
async def test_borrowed_connection_survives_close(broker):
    connection = broker.connect("shared")
    borrowed = TransportMultiplexer.from_existing(connection)

    async def noop(message):
        return None

    await borrowed.subscribe("a.b", noop)
    await borrowed.close()

    assert connection.is_connected
    assert broker.subscription_count() == 0

    # Another user of the same connection keeps working
    other = TransportMultiplexer.from_existing(connection)
    await other.publish("a.b", b"still here")
    await other.close()
    await connection.close()


@pytest.mark.asyncio
async def test_owned_connection_closed_with_multiplexer(broker):
    connection = broker.connect("owned")
    owner = TransportMultiplexer(connection, owns_connection=True)
    await owner.close()
    assert not connection.is_connected
