import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from transport.memory import InMemoryBroker
from transport.multiplexer import TransportMultiplexer


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest_asyncio.fixture
async def multiplexer(broker):
    mux = TransportMultiplexer(broker.connect("client"), owns_connection=True, default_timeout=2.0)
    yield mux
    await mux.close()


@pytest_asyncio.fixture
async def server(broker):
    mux = TransportMultiplexer(broker.connect("server"), owns_connection=True, default_timeout=2.0)
    yield mux
    await mux.close()


@pytest.fixture
def eventually():
    """Poll a predicate until it holds; deliveries run on pump tasks."""

    async def _wait(predicate, timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met within timeout")
            await asyncio.sleep(0.005)

    return _wait
