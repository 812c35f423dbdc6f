"""
Subscription Manager

Registers interest in generation event subjects per tenant or per request
and fans parsed events out to listeners (tracker, feed, sinks).

DESIGN RULES:
- One transport subscription per tenant / request, individually cancellable
- A malformed event is logged and skipped; the subscription survives
- A failing listener never blocks the others
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from schemas.events import GenerationEvent
from transport.connection import Message
from transport.multiplexer import SubscriptionHandle, TransportMultiplexer
from transport.subjects import DEFAULT_EVENT_PREFIX, event_subject, tenant_events_pattern


logger = logging.getLogger(__name__)


EventListener = Callable[[GenerationEvent], Any]


def parse_event(data: bytes) -> GenerationEvent:
    """
    Parse a raw event body.

    Accepts a bare GenerationEvent object or one wrapped in an envelope.

    Raises:
        ValueError: Body is not a valid event (ValidationError included)
    """
    decoded = json.loads(data.decode("utf-8"))
    if isinstance(decoded, dict) and "meta" in decoded and "payload" in decoded:
        decoded = decoded["payload"]
    return GenerationEvent.model_validate(decoded)


class SubscriptionManager:
    """
    Observer registry over the multiplexer's event channel.
    """

    def __init__(self, multiplexer: TransportMultiplexer, prefix: str = DEFAULT_EVENT_PREFIX):
        self._multiplexer = multiplexer
        self._prefix = prefix
        self._tenants: Dict[str, SubscriptionHandle] = {}
        self._requests: Dict[str, Tuple[str, SubscriptionHandle]] = {}
        self._listeners: List[EventListener] = []
        self._lock = asyncio.Lock()

    # ============================================================
    # LISTENERS
    # ============================================================

    def add_listener(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _dispatch(self, message: Message) -> None:
        try:
            event = parse_event(message.data)
        except ValueError as e:
            logger.warning(f"[TRACKER] Skipping malformed event on {message.subject}: {e}")
            return

        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"[TRACKER] Event listener failed for {event.request_id}: {e}")

    # ============================================================
    # REGISTRATION
    # ============================================================

    async def subscribe_tenant(self, tenant_id: str) -> bool:
        """
        Receive every event of one tenant.

        Returns:
            False if already subscribed
        """
        async with self._lock:
            if tenant_id in self._tenants:
                return False
            pattern = tenant_events_pattern(tenant_id, prefix=self._prefix)
            self._tenants[tenant_id] = await self._multiplexer.subscribe(pattern, self._dispatch)
            logger.info(f"[TRACKER] Subscribed to {pattern}")
            return True

    async def unsubscribe_tenant(self, tenant_id: str) -> bool:
        async with self._lock:
            handle = self._tenants.pop(tenant_id, None)
        if handle is None:
            return False
        await handle.unsubscribe()
        logger.info(f"[TRACKER] Unsubscribed tenant {tenant_id}")
        return True

    async def subscribe_request(self, tenant_id: str, request_id: str) -> bool:
        """Receive the events of a single request."""
        async with self._lock:
            if request_id in self._requests:
                return False
            subject = event_subject(tenant_id, request_id, prefix=self._prefix)
            handle = await self._multiplexer.subscribe(subject, self._dispatch)
            self._requests[request_id] = (tenant_id, handle)
            logger.debug(f"[TRACKER] Subscribed to {subject}")
            return True

    async def unsubscribe_request(self, request_id: str) -> bool:
        async with self._lock:
            entry = self._requests.pop(request_id, None)
        if entry is None:
            return False
        await entry[1].unsubscribe()
        return True

    def is_subscribed(self, tenant_id: Optional[str] = None) -> bool:
        """True if subscribed to the given tenant, or to anything when None."""
        if tenant_id is None:
            return bool(self._tenants or self._requests)
        return tenant_id in self._tenants

    def subscribed_tenants(self) -> List[str]:
        return sorted(self._tenants)

    def subscribed_requests(self) -> List[str]:
        return sorted(self._requests)

    async def close(self) -> None:
        """Drop every subscription made through this manager."""
        async with self._lock:
            handles = list(self._tenants.values()) + [handle for _, handle in self._requests.values()]
            self._tenants.clear()
            self._requests.clear()
        for handle in handles:
            await handle.unsubscribe()
