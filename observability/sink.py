"""
Event Sink Interface

Abstract sink for received generation events.
Storage-agnostic - implementations can write to console, file, cloud, etc.

DESIGN RULES:
- Side-effect only
- Never throw exceptions
- Storage-agnostic interface
"""

import logging
from abc import ABC, abstractmethod

from schemas.events import EventStatus, GenerationEvent


logger = logging.getLogger(__name__)


class EventSink(ABC):
    """
    Abstract base for event output destinations.

    Implementations:
    - ConsoleEventSink (human-readable)
    - JsonEventSink (one JSON line per event)
    """

    @abstractmethod
    def emit(self, event: GenerationEvent) -> None:
        """
        Emit an event to the sink.

        Must not throw - failures should be logged and ignored.
        """
        pass


class ConsoleEventSink(EventSink):
    """
    Prints a one-line summary per event.
    """

    _MARKERS = {
        EventStatus.PENDING: "…",
        EventStatus.IN_PROGRESS: "→",
        EventStatus.COMPLETED: "✓",
        EventStatus.FAILED: "✗",
    }

    def __init__(self, verbose: bool = False):
        """
        Args:
            verbose: If True, also print file path and error details.
        """
        self._verbose = verbose

    def emit(self, event: GenerationEvent) -> None:
        try:
            marker = self._MARKERS.get(event.status, "?")
            progress = f"{event.progress * 100:5.1f}%" if event.progress is not None else "  -  "
            print(
                f"[EVENT] {marker} {event.request_id[:8]}... "
                f"{event.tenant_id:<10} {progress} {event.phase or '-'}"
            )
            if self._verbose:
                if event.error_message:
                    print(f"        Error: {event.error_message}")
                if event.file_path:
                    print(f"        File:  {event.file_path}")
        except Exception as e:
            logger.warning(f"[EVENT] Failed to emit event: {e}")


class JsonEventSink(EventSink):
    """
    Outputs events as JSON lines in wire format.

    Useful for log aggregation systems.
    """

    def emit(self, event: GenerationEvent) -> None:
        try:
            print(event.model_dump_json(by_alias=True))
        except Exception as e:
            logger.warning(f"[EVENT] Failed to emit JSON event: {e}")
