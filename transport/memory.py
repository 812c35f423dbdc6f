"""
In-Memory Transport

In-process broker with NATS-like semantics, for single-process
deployments and tests.

Semantics:
- Plain subscriptions are multicast: every match gets its own copy
- Queue subscriptions sharing (subject, queue) receive each message once,
  round-robin across members
- A message with a reply subject and no matching subscriber triggers a
  status-503 "no responders" message on the reply subject
- Per-subscription delivery is ordered; handlers run on the event loop
"""

import asyncio
import logging
import uuid
from threading import Lock
from typing import Dict, List, Optional, Tuple

from transport.connection import (
    Connection,
    DisconnectListener,
    Message,
    MessageHandler,
    NO_RESPONDERS_STATUS,
    STATUS_HEADER,
    Subscription,
)
from transport.errors import ConnectionLost
from transport.subjects import is_valid_subject, subject_matches


logger = logging.getLogger(__name__)


class _MemorySubscription(Subscription):
    """Subscription backed by an asyncio queue and a pump task."""

    def __init__(
        self,
        broker: "InMemoryBroker",
        subject: str,
        handler: MessageHandler,
        queue: Optional[str],
    ):
        self._broker = broker
        self._subject = subject
        self._queue_group = queue
        self._handler = handler
        self._inbox: "asyncio.Queue[Optional[Message]]" = asyncio.Queue()
        self._active = True
        self._task = asyncio.get_running_loop().create_task(self._pump())

    @property
    def subject(self) -> str:
        return self._subject

    @property
    def queue(self) -> Optional[str]:
        return self._queue_group

    @property
    def active(self) -> bool:
        return self._active

    def enqueue(self, message: Message) -> None:
        if self._active:
            self._inbox.put_nowait(message)

    async def _pump(self) -> None:
        while True:
            message = await self._inbox.get()
            if message is None or not self._active:
                break
            try:
                await self._handler(message)
            except Exception as e:
                logger.exception(f"[TRANSPORT] Handler on {self._subject} failed: {e}")

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._broker.remove(self)
        self._inbox.put_nowait(None)


class InMemoryBroker:
    """
    Shared in-process message router.

    Several InMemoryConnection instances attached to the same broker
    behave like separate clients of one server.
    """

    def __init__(self):
        self._subscriptions: List[_MemorySubscription] = []
        self._round_robin: Dict[Tuple[str, str], int] = {}
        self._lock = Lock()

    def connect(self, name: Optional[str] = None) -> "InMemoryConnection":
        """Open a new client connection on this broker."""
        return InMemoryConnection(self, name=name)

    def add(self, subscription: _MemorySubscription) -> None:
        with self._lock:
            self._subscriptions.append(subscription)

    def remove(self, subscription: _MemorySubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def route(self, message: Message) -> int:
        """
        Deliver a message to matching subscriptions.

        Returns:
            Number of subscriptions the message was handed to
        """
        with self._lock:
            matched = [
                sub for sub in self._subscriptions
                if sub.active and subject_matches(sub.subject, message.subject)
            ]

            targets: List[_MemorySubscription] = []
            groups: Dict[Tuple[str, str], List[_MemorySubscription]] = {}
            for sub in matched:
                if sub.queue is None:
                    targets.append(sub)
                else:
                    groups.setdefault((sub.subject, sub.queue), []).append(sub)

            for key, members in groups.items():
                index = self._round_robin.get(key, 0)
                targets.append(members[index % len(members)])
                self._round_robin[key] = index + 1

        for sub in targets:
            sub.enqueue(message)

        if not targets and message.reply:
            self.route(
                Message(
                    subject=message.reply,
                    headers={STATUS_HEADER: NO_RESPONDERS_STATUS},
                )
            )

        return len(targets)


class InMemoryConnection(Connection):
    """Client connection to an InMemoryBroker."""

    def __init__(self, broker: InMemoryBroker, name: Optional[str] = None):
        self._broker = broker
        self._name = name or f"memory-{uuid.uuid4().hex[:8]}"
        self._connected = True
        self._subscriptions: List[_MemorySubscription] = []
        self._listeners: List[DisconnectListener] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise ConnectionLost(f"{self._name} is not connected")

    async def publish(
        self,
        subject: str,
        data: bytes,
        reply: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._ensure_connected()
        if not is_valid_subject(subject, allow_wildcards=False):
            raise ValueError(f"Invalid publish subject: {subject!r}")
        self._broker.route(
            Message(subject=subject, data=bytes(data), reply=reply, headers=dict(headers or {}))
        )

    async def subscribe(
        self,
        subject: str,
        handler: MessageHandler,
        queue: Optional[str] = None,
    ) -> Subscription:
        self._ensure_connected()
        if not is_valid_subject(subject):
            raise ValueError(f"Invalid subscription subject: {subject!r}")
        subscription = _MemorySubscription(self._broker, subject, handler, queue)
        self._broker.add(subscription)
        self._subscriptions.append(subscription)
        return subscription

    def new_inbox(self) -> str:
        return f"_INBOX.{uuid.uuid4().hex}"

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._listeners.append(listener)

    def remove_disconnect_listener(self, listener: DisconnectListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def drop(self, reason: str = "connection dropped") -> None:
        """Simulate an unexpected loss of the connection."""
        await self._shutdown(reason)

    async def close(self) -> None:
        await self._shutdown("connection closed")

    async def _shutdown(self, reason: str) -> None:
        if not self._connected:
            return
        self._connected = False
        for subscription in list(self._subscriptions):
            await subscription.unsubscribe()
        self._subscriptions.clear()
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.warning(f"[TRANSPORT] Disconnect listener failed: {e}")
        logger.info(f"[TRANSPORT] {self._name} disconnected: {reason}")
