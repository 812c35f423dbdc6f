"""
NATS Connection

Connection implementation over a NATS server using nats-py.

Secured deployments pass a CA bundle (TLS) and an NKey seed file,
matching how the desktop and CLI clients join the same server.
"""

import logging
import ssl
from pathlib import Path
from typing import Dict, List, Optional

import nats
from nats.aio.client import Client as NATS
from nats.aio.msg import Msg
from nats.aio.subscription import Subscription as NatsSubscription
from nats.errors import ConnectionClosedError

from transport.connection import (
    Connection,
    DisconnectListener,
    Message,
    MessageHandler,
    Subscription,
)
from transport.errors import ConnectionLost


logger = logging.getLogger(__name__)


class _NatsSubscriptionHandle(Subscription):

    def __init__(self, subscription: NatsSubscription, subject: str, queue: Optional[str]):
        self._subscription = subscription
        self._subject = subject
        self._queue = queue
        self._active = True

    @property
    def subject(self) -> str:
        return self._subject

    @property
    def queue(self) -> Optional[str]:
        return self._queue

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        try:
            await self._subscription.unsubscribe()
        except ConnectionClosedError:
            # Server-side state is gone with the connection
            pass


def build_tls_context(ca_file: str) -> ssl.SSLContext:
    """
    Client TLS context trusting the given CA bundle (PEM).

    Raises:
        ConnectionLost: CA file missing or unreadable
    """
    try:
        return ssl.create_default_context(cafile=ca_file)
    except (OSError, ssl.SSLError) as e:
        raise ConnectionLost(f"failed to load CA certificate from {ca_file}: {e}") from e


class NatsConnection(Connection):
    """
    Wraps a connected nats-py client.

    Use NatsConnection.open() to dial a server, or wrap an existing
    client directly to share it with other components.
    """

    def __init__(self, client: NATS):
        self._client = client
        self._listeners: List[DisconnectListener] = []

    @classmethod
    async def open(
        cls,
        url: str,
        name: Optional[str] = None,
        connect_timeout: float = 5.0,
        allow_reconnect: bool = True,
        tls_ca_file: Optional[str] = None,
        nkey_file: Optional[str] = None,
    ) -> "NatsConnection":
        """
        Dial a NATS server and return a connection bound to it.

        Args:
            tls_ca_file: PEM CA bundle; enables TLS when set
            nkey_file: NKey seed file used to authenticate
        """
        tls = build_tls_context(tls_ca_file) if tls_ca_file else None
        if nkey_file and not Path(nkey_file).is_file():
            raise ConnectionLost(f"NKey seed file not found: {nkey_file}")

        holder: Dict[str, "NatsConnection"] = {}

        async def _disconnected() -> None:
            if "self" in holder:
                holder["self"]._notify("disconnected from NATS server")

        async def _closed() -> None:
            if "self" in holder:
                holder["self"]._notify("NATS connection closed")

        async def _error(e: Exception) -> None:
            logger.warning(f"[TRANSPORT] NATS error: {e}")

        try:
            client = await nats.connect(
                servers=[url],
                name=name,
                connect_timeout=connect_timeout,
                allow_reconnect=allow_reconnect,
                tls=tls,
                nkeys_seed=nkey_file,
                disconnected_cb=_disconnected,
                closed_cb=_closed,
                error_cb=_error,
            )
        except Exception as e:
            raise ConnectionLost(f"failed to connect to {url}: {e}") from e

        connection = cls(client)
        holder["self"] = connection
        logger.info(
            f"[TRANSPORT] Connected to NATS at {url}"
            f" (tls={'on' if tls else 'off'}, nkey={'on' if nkey_file else 'off'})"
        )
        return connection

    @property
    def client(self) -> NATS:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    async def publish(
        self,
        subject: str,
        data: bytes,
        reply: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if not self.is_connected:
            raise ConnectionLost("NATS client is not connected")
        await self._client.publish(subject, payload=data, reply=reply or "", headers=headers)

    async def subscribe(
        self,
        subject: str,
        handler: MessageHandler,
        queue: Optional[str] = None,
    ) -> Subscription:
        if not self.is_connected:
            raise ConnectionLost("NATS client is not connected")

        async def _deliver(msg: Msg) -> None:
            await handler(
                Message(
                    subject=msg.subject,
                    data=msg.data or b"",
                    reply=msg.reply or None,
                    headers=dict(msg.headers or {}),
                )
            )

        subscription = await self._client.subscribe(subject, queue=queue or "", cb=_deliver)
        return _NatsSubscriptionHandle(subscription, subject, queue)

    def new_inbox(self) -> str:
        return self._client.new_inbox()

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._listeners.append(listener)

    def remove_disconnect_listener(self, listener: DisconnectListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.warning(f"[TRANSPORT] Disconnect listener failed: {e}")

    async def close(self) -> None:
        if self._client.is_closed:
            return
        await self._client.drain()
