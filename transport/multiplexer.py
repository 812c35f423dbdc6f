"""
Transport Multiplexer

Presents one physical connection as two logical channels:
- correlated request/response (envelope RPC)
- uncorrelated event publication/subscription (raw pub/sub)

DESIGN RULES (NON-NEGOTIABLE):
- The multiplexer mints request ids; the codec never does
- Replies are unicast to the single waiting caller by correlation id
- Pub/sub is multicast: every subscription gets its own copy
- Transport failures surface to the caller, never retried here
- A borrowed connection is never closed by the multiplexer
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel

from schemas.envelope import Envelope
from transport.codec import EnvelopeCodec, default_codec
from transport.connection import Connection, Message, MessageHandler, Subscription
from transport.errors import ConnectionLost, DecodeError, NoResponders, RequestTimeout
from transport.nats_connection import NatsConnection


logger = logging.getLogger(__name__)


EnvelopeHandler = Callable[[Envelope], Awaitable[Union[Envelope, Mapping[str, Any], BaseModel, None]]]
Publishable = Union[bytes, bytearray, str, Mapping[str, Any], BaseModel]


DEFAULT_REQUEST_TIMEOUT = 180.0


@dataclass
class _PendingRequest:
    request_id: str
    subject: str
    future: "asyncio.Future[Envelope]"


class SubscriptionHandle:
    """
    Caller-facing subscription handle.

    Disposing the handle (unsubscribe) deregisters the callback.
    """

    def __init__(self, owner: "TransportMultiplexer", subscription: Subscription):
        self._owner = owner
        self._subscription = subscription
        self._active = True

    @property
    def subject(self) -> str:
        return self._subscription.subject

    @property
    def queue(self) -> Optional[str]:
        return self._subscription.queue

    @property
    def active(self) -> bool:
        return self._active

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        await self._subscription.unsubscribe()
        self._owner._forget(self)


class TransportMultiplexer:
    """
    One connection handle serving envelope RPC and raw events.

    The correlation table is the only shared mutable state; it is
    guarded by an internal lock so that concurrent send_request calls,
    reply arrival and connection loss never race.
    """

    def __init__(
        self,
        connection: Connection,
        codec: Optional[EnvelopeCodec] = None,
        owns_connection: bool = False,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        """
        Args:
            connection: Open physical connection
            codec: Envelope codec (defaults to the shared codec)
            owns_connection: If True, close() also closes the connection
            default_timeout: Timeout used when send_request gets none
        """
        self._connection = connection
        self._codec = codec or default_codec
        self._owns_connection = owns_connection
        self._default_timeout = default_timeout

        self._pending: Dict[str, _PendingRequest] = {}
        self._lock = Lock()
        self._handles: List[SubscriptionHandle] = []

        self._inbox_prefix: Optional[str] = None
        self._inbox_subscription: Optional[Subscription] = None
        self._inbox_setup = asyncio.Lock()
        self._closed = False

        self._connection.add_disconnect_listener(self._on_disconnect)

    # ============================================================
    # CONSTRUCTION
    # ============================================================

    @classmethod
    def from_existing(
        cls,
        connection: Connection,
        codec: Optional[EnvelopeCodec] = None,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> "TransportMultiplexer":
        """
        Build a multiplexer over an already-open connection.

        The connection stays owned by the caller, so other components can
        keep using it after this multiplexer is closed.
        """
        return cls(connection, codec=codec, owns_connection=False, default_timeout=default_timeout)

    @classmethod
    async def connect(
        cls,
        url: str,
        name: Optional[str] = None,
        connect_timeout: float = 5.0,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        tls_ca_file: Optional[str] = None,
        nkey_file: Optional[str] = None,
    ) -> "TransportMultiplexer":
        """Dial a NATS server and own the resulting connection."""
        connection = await NatsConnection.open(
            url,
            name=name,
            connect_timeout=connect_timeout,
            tls_ca_file=tls_ca_file,
            nkey_file=nkey_file,
        )
        return cls(connection, owns_connection=True, default_timeout=default_timeout)

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def codec(self) -> EnvelopeCodec:
        return self._codec

    @property
    def is_connected(self) -> bool:
        return not self._closed and self._connection.is_connected

    @staticmethod
    def new_request_id() -> str:
        """Mint a globally unique request identifier."""
        return str(uuid.uuid4())

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ============================================================
    # RPC
    # ============================================================

    async def send_request(
        self,
        subject: str,
        envelope: Envelope,
        timeout: Optional[float] = None,
    ) -> Envelope:
        """
        Send a request envelope and await the single matching reply.

        Raises:
            RequestTimeout: No matching reply within timeout
            NoResponders: No handler registered for subject
            ConnectionLost: Connection dropped while waiting
            DecodeError: The reply could not be decoded
        """
        self._ensure_open()
        timeout = self._default_timeout if timeout is None else timeout
        prefix = await self._ensure_inbox()

        token = uuid.uuid4().hex
        reply_subject = f"{prefix}.{token}"
        future: "asyncio.Future[Envelope]" = asyncio.get_running_loop().create_future()

        with self._lock:
            self._pending[token] = _PendingRequest(
                request_id=envelope.request_id,
                subject=subject,
                future=future,
            )

        logger.debug(f"[TRANSPORT] Request {envelope.request_id} -> {subject} (timeout={timeout}s)")

        try:
            await self._connection.publish(subject, self._codec.to_bytes(envelope), reply=reply_subject)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[TRANSPORT] Request {envelope.request_id} to {subject} timed out after {timeout}s")
            raise RequestTimeout(subject, timeout, envelope.request_id) from None
        finally:
            # Also runs when the caller abandons the await
            with self._lock:
                self._pending.pop(token, None)

    async def request(
        self,
        subject: str,
        payload: Any,
        timeout: Optional[float] = None,
        tenant: Optional[str] = None,
    ) -> Envelope:
        """Encode a payload under a fresh request id and send it."""
        envelope = self._codec.encode(payload, self.new_request_id(), tenant=tenant)
        return await self.send_request(subject, envelope, timeout)

    async def serve(
        self,
        subject: str,
        handler: EnvelopeHandler,
        queue: Optional[str] = None,
    ) -> SubscriptionHandle:
        """
        Register an envelope RPC handler.

        Handlers sharing the same queue group name split the load: each
        request reaches exactly one of them. The reply carries the request's
        request_id unchanged.
        """

        async def _respond(message: Message) -> None:
            try:
                request = self._codec.decode(message.data)
            except DecodeError as e:
                logger.warning(f"[TRANSPORT] Dropping malformed request on {message.subject}: {e}")
                return

            try:
                result = await handler(request)
                payload = result.payload if isinstance(result, Envelope) else (result or {})
            except Exception as e:
                logger.exception(f"[TRANSPORT] Handler for {subject} failed on {request.request_id}")
                payload = {"error": {"type": type(e).__name__, "message": str(e)}}

            if not message.reply:
                return

            reply = self._codec.encode(payload, request.request_id, tenant=request.meta.tenant)
            await self._connection.publish(message.reply, self._codec.to_bytes(reply))

        return await self.subscribe(subject, _respond, queue=queue)

    async def _ensure_inbox(self) -> str:
        async with self._inbox_setup:
            if self._inbox_subscription is None:
                prefix = self._connection.new_inbox()
                self._inbox_subscription = await self._connection.subscribe(f"{prefix}.*", self._on_reply)
                self._inbox_prefix = prefix
            return self._inbox_prefix

    async def _on_reply(self, message: Message) -> None:
        token = message.subject.rsplit(".", 1)[-1]
        with self._lock:
            pending = self._pending.get(token)

        if pending is None or pending.future.done():
            logger.debug(f"[TRANSPORT] Dropping late or unknown reply on {message.subject}")
            return

        if message.is_no_responders:
            pending.future.set_exception(NoResponders(pending.subject))
            return

        try:
            envelope = self._codec.decode(message.data)
        except DecodeError as e:
            pending.future.set_exception(e)
            return

        if envelope.request_id != pending.request_id:
            logger.warning(
                f"[TRANSPORT] Reply request_id {envelope.request_id} does not match "
                f"{pending.request_id}; ignoring"
            )
            return

        pending.future.set_result(envelope)

    # ============================================================
    # PUB/SUB
    # ============================================================

    async def publish(self, subject: str, message: Publishable) -> None:
        """Fire-and-forget publish. Never waits for subscribers."""
        self._ensure_open()
        await self._connection.publish(subject, self._to_bytes(message))

    async def subscribe(
        self,
        subject_or_pattern: str,
        handler: MessageHandler,
        queue: Optional[str] = None,
    ) -> SubscriptionHandle:
        """Register a callback invoked once per matching inbound message."""
        self._ensure_open()
        subscription = await self._connection.subscribe(subject_or_pattern, handler, queue=queue)
        handle = SubscriptionHandle(self, subscription)
        with self._lock:
            self._handles.append(handle)
        return handle

    def _forget(self, handle: SubscriptionHandle) -> None:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)

    def _to_bytes(self, message: Publishable) -> bytes:
        if isinstance(message, Envelope):
            return self._codec.to_bytes(message)
        if isinstance(message, (bytes, bytearray)):
            return bytes(message)
        if isinstance(message, str):
            return message.encode("utf-8")
        if isinstance(message, BaseModel):
            return message.model_dump_json(by_alias=True).encode("utf-8")
        if isinstance(message, Mapping):
            return json.dumps(dict(message)).encode("utf-8")
        raise TypeError(f"Cannot publish message of type {type(message).__name__}")

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectionLost("multiplexer is closed")
        if not self._connection.is_connected:
            raise ConnectionLost("connection is not open")

    def _fail_pending(self, reason: str) -> int:
        with self._lock:
            pending = list(self._pending.values())
        failed = 0
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(ConnectionLost(reason))
                failed += 1
        return failed

    def _on_disconnect(self, reason: str) -> None:
        failed = self._fail_pending(reason)
        logger.warning(f"[TRANSPORT] Connection lost ({reason}); failed {failed} pending request(s)")

    async def close(self) -> None:
        """
        Dispose every subscription made through this multiplexer.

        The connection itself is closed only when owned.
        """
        if self._closed:
            return
        self._closed = True

        with self._lock:
            handles = list(self._handles)
        for handle in handles:
            await handle.unsubscribe()

        if self._inbox_subscription is not None:
            await self._inbox_subscription.unsubscribe()
            self._inbox_subscription = None

        self._fail_pending("multiplexer closed")
        self._connection.remove_disconnect_listener(self._on_disconnect)

        if self._owns_connection:
            await self._connection.close()
