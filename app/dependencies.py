"""
FastAPI Dependencies

All object creation happens here, not per request.

RULE: routes talk to exactly two entry points, GenerationClient and
TrailStore. The transport is opened once in the app lifespan.
"""

import logging
from functools import lru_cache
from typing import Optional

from app.core.config import settings
from observability.feed import EventFeed
from orchestration.client import GenerationClient
from tracking.tracker import RequestTracker
from trail.cache import TrailCache
from trail.store import TrailStore
from transport.memory import InMemoryBroker
from transport.multiplexer import TransportMultiplexer


logger = logging.getLogger(__name__)


_multiplexer: Optional[TransportMultiplexer] = None
_client: Optional[GenerationClient] = None


@lru_cache(maxsize=1)
def get_broker() -> InMemoryBroker:
    """Process-wide broker used when settings.transport == "memory"."""
    return InMemoryBroker()


@lru_cache(maxsize=1)
def get_trail_cache() -> TrailCache:
    return TrailCache(max_entries=settings.trail_cache_size)


def get_trail_store() -> TrailStore:
    return TrailStore(settings.trails_dir)


async def _open_multiplexer() -> TransportMultiplexer:
    if settings.transport == "memory":
        connection = get_broker().connect(settings.client_name)
        return TransportMultiplexer(
            connection,
            owns_connection=True,
            default_timeout=settings.request_timeout_seconds,
        )
    if settings.transport == "nats":
        return await TransportMultiplexer.connect(
            settings.nats_url,
            name=settings.client_name,
            connect_timeout=settings.connect_timeout_seconds,
            default_timeout=settings.request_timeout_seconds,
            tls_ca_file=settings.tls_ca_file,
            nkey_file=settings.nkey_file,
        )
    raise ValueError(f"Unknown transport: {settings.transport!r}")


async def start_client() -> GenerationClient:
    """
    Open the transport and wire the client.

    Components:
    - TransportMultiplexer: one connection for RPC and events
    - RequestTracker: state per request
    - EventFeed: recent events
    - TrailCache: reconstruction results
    """
    global _multiplexer, _client
    if _client is not None:
        return _client

    _multiplexer = await _open_multiplexer()
    _client = GenerationClient(
        multiplexer=_multiplexer,
        tracker=RequestTracker(
            retention_seconds=settings.tracker_retention_seconds,
            stale_timeout_seconds=settings.tracker_stale_timeout_seconds,
            reconcile_by_timestamp=settings.reconcile_by_timestamp,
        ),
        feed=EventFeed(max_events=settings.event_buffer_size),
        cache=get_trail_cache(),
        submit_subject=settings.submit_subject,
        event_prefix=settings.event_subject_prefix,
        request_timeout=settings.request_timeout_seconds,
        wait_for_ack=settings.wait_for_ack,
    )
    logger.info(f"[CLIENT] Started with {settings.transport} transport")
    return _client


async def stop_client() -> None:
    global _multiplexer, _client
    if _client is not None:
        await _client.close()
    if _multiplexer is not None:
        await _multiplexer.close()
    _client = None
    _multiplexer = None


def get_client() -> GenerationClient:
    if _client is None:
        raise RuntimeError("GenerationClient is not started; run inside the app lifespan")
    return _client
