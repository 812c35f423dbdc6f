"""
Transport Errors

Failures surfaced by the codec and the multiplexer.

DESIGN RULES:
- Raised to the immediate caller of the failing operation
- Never retried inside the transport layer
"""

from typing import Optional


class TransportError(Exception):
    """Base class for all transport-level failures."""


class DecodeError(TransportError):
    """
    A byte stream could not be decoded into an Envelope.

    Attributes:
        field: Dotted path of the offending field ("body" when the stream
            is not valid JSON at all).
    """

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Malformed envelope field '{field}': {reason}")


class RequestTimeout(TransportError, TimeoutError):
    """No matching reply arrived within the deadline."""

    def __init__(self, subject: str, timeout: float, request_id: Optional[str] = None):
        self.subject = subject
        self.timeout = timeout
        self.request_id = request_id
        super().__init__(f"Request to {subject} timed out after {timeout}s")


class NoResponders(TransportError):
    """No handler is registered for the requested subject."""

    def __init__(self, subject: str):
        self.subject = subject
        super().__init__(f"No responders available for {subject}")


class ConnectionLost(TransportError):
    """The underlying connection dropped or was closed."""

    def __init__(self, reason: str = "connection closed"):
        self.reason = reason
        super().__init__(f"Connection lost: {reason}")
