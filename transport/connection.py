"""
Connection Interface

Abstract physical pub/sub connection shared by the multiplexer's
RPC and event facades.

DESIGN RULES:
- One connection may be borrowed by many logical users
- Only the owner closes it
- Loss of connection is surfaced to listeners, never hidden
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional


# Header used by the transport to signal "no responders" on a reply inbox
STATUS_HEADER = "Status"
NO_RESPONDERS_STATUS = "503"


@dataclass(frozen=True)
class Message:
    """A single message delivered by the transport."""
    subject: str
    data: bytes = b""
    reply: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def is_no_responders(self) -> bool:
        return self.headers.get(STATUS_HEADER) == NO_RESPONDERS_STATUS and not self.data


MessageHandler = Callable[[Message], Awaitable[None]]
DisconnectListener = Callable[[str], None]


class Subscription(ABC):
    """Handle for one transport-level subscription."""

    @property
    @abstractmethod
    def subject(self) -> str:
        """Subject or pattern this subscription listens on."""
        pass

    @property
    @abstractmethod
    def queue(self) -> Optional[str]:
        """Queue group name, if any."""
        pass

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivery. Idempotent."""
        pass


class Connection(ABC):
    """
    Abstract physical connection.

    Implementations:
    - InMemoryConnection (in-process broker)
    - NatsConnection (nats-py)
    """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def publish(
        self,
        subject: str,
        data: bytes,
        reply: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Publish raw bytes. Never waits for subscribers."""
        pass

    @abstractmethod
    async def subscribe(
        self,
        subject: str,
        handler: MessageHandler,
        queue: Optional[str] = None,
    ) -> Subscription:
        """Register a handler for a subject or pattern."""
        pass

    @abstractmethod
    def new_inbox(self) -> str:
        """Return a unique private inbox subject for replies."""
        pass

    @abstractmethod
    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        """Register a callback invoked with a reason when the connection drops."""
        pass

    @abstractmethod
    def remove_disconnect_listener(self, listener: DisconnectListener) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
