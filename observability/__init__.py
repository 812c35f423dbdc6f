# Observability Package
from observability.sink import EventSink, ConsoleEventSink, JsonEventSink
from observability.feed import EventFeed

__all__ = ["EventSink", "ConsoleEventSink", "JsonEventSink", "EventFeed"]
