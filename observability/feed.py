"""
Event Feed

Bounded in-memory history of received generation events, forwarded to
optional sinks.

DESIGN RULES:
- Oldest events dropped once the buffer is full
- Never throw exceptions from record()
- Read-only views for callers
"""

import logging
from collections import deque
from threading import Lock
from typing import Deque, List, Optional

from observability.sink import EventSink
from schemas.events import GenerationEvent


logger = logging.getLogger(__name__)


class EventFeed:
    """
    Ring buffer of the most recent events.

    Register record() as a SubscriptionManager listener.
    """

    DEFAULT_MAX_EVENTS = 1000

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS, sinks: Optional[List[EventSink]] = None):
        self._events: Deque[GenerationEvent] = deque(maxlen=max_events)
        self._sinks: List[EventSink] = list(sinks or [])
        self._lock = Lock()

    @property
    def max_events(self) -> int:
        return self._events.maxlen

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def record(self, event: GenerationEvent) -> None:
        with self._lock:
            self._events.append(event)

        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning(f"[EVENT] Sink {type(sink).__name__} failed: {e}")

    def recent(
        self,
        limit: Optional[int] = None,
        request_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> List[GenerationEvent]:
        """Newest-last list of buffered events, optionally filtered."""
        with self._lock:
            events = list(self._events)
        if request_id is not None:
            events = [event for event in events if event.request_id == request_id]
        if tenant_id is not None:
            events = [event for event in events if event.tenant_id == tenant_id]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
