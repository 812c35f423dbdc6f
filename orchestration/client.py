"""
Generation Client

The submission boundary consumed by UI / CLI / HTTP callers.

FLOW:
submit → (backend emits events) → track → reconstruct

This is the glue, not the brain. It wires the multiplexer, subscription
manager, tracker and trail cache together but holds no protocol logic.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from observability.feed import EventFeed
from schemas.envelope import Envelope
from schemas.events import GenerationEvent
from schemas.request import GenerationRequest
from tracking.subscriptions import SubscriptionManager
from tracking.tracker import RequestNotFound, RequestTracker
from tracking.types import TrackedRequest
from trail.cache import TrailCache
from trail.reconstructor import ReconstructionResult, StepInput
from transport.multiplexer import TransportMultiplexer
from transport.subjects import DEFAULT_EVENT_PREFIX


logger = logging.getLogger(__name__)


DEFAULT_SUBMIT_SUBJECT = "mcp.orchestrator.request"


class SubmissionRejected(Exception):
    """The orchestrator acknowledged a submission with an error payload."""

    def __init__(self, request_id: str, error: Any):
        self.request_id = request_id
        self.error = error
        super().__init__(f"Submission {request_id} rejected: {error}")


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    subscribed: bool
    tenant_id: Optional[str] = None
    active_requests: int = 0
    tenants: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "subscribed": self.subscribed,
            "tenant_id": self.tenant_id,
            "active_requests": self.active_requests,
            "tenants": list(self.tenants),
        }


class GenerationClient:
    """
    Collaborator facade over one shared multiplexer.

    Submissions are fire-and-forget by default: the request id is returned
    as soon as the envelope is published. With wait_for_ack=True the client
    instead waits for the orchestrator's reply.
    """

    # Submitted requests remembered for replay
    MAX_REMEMBERED_REQUESTS = 1000

    def __init__(
        self,
        multiplexer: TransportMultiplexer,
        tracker: Optional[RequestTracker] = None,
        feed: Optional[EventFeed] = None,
        cache: Optional[TrailCache] = None,
        submit_subject: str = DEFAULT_SUBMIT_SUBJECT,
        event_prefix: str = DEFAULT_EVENT_PREFIX,
        request_timeout: float = 180.0,
        wait_for_ack: bool = False,
    ):
        """
        Args:
            multiplexer: Shared transport (borrowed, not owned)
            tracker: Request state store
            feed: Optional history of received events
            cache: Reconstruction cache
            submit_subject: RPC subject of the orchestrator
            event_prefix: Subject prefix for progress events
            request_timeout: Timeout when waiting for an acknowledgement
            wait_for_ack: Wait for the orchestrator reply on submit
        """
        self._multiplexer = multiplexer
        self._tracker = tracker or RequestTracker()
        self._feed = feed
        self._cache = cache or TrailCache()
        self._submit_subject = submit_subject
        self._request_timeout = request_timeout
        self._wait_for_ack = wait_for_ack

        self._subscriptions = SubscriptionManager(multiplexer, prefix=event_prefix)
        self._subscriptions.add_listener(self._on_event)
        if feed is not None:
            self._subscriptions.add_listener(feed.record)

        self._submitted: "OrderedDict[str, GenerationRequest]" = OrderedDict()
        self._tenant_id: Optional[str] = None

    @property
    def tracker(self) -> RequestTracker:
        return self._tracker

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    @property
    def feed(self) -> Optional[EventFeed]:
        return self._feed

    # ============================================================
    # SUBMISSION
    # ============================================================

    async def submit(self, parameters: Union[GenerationRequest, Mapping[str, Any]]) -> str:
        """
        Submit a generation job.

        Returns:
            The request id minted for this submission
        """
        request = parameters if isinstance(parameters, GenerationRequest) else GenerationRequest.model_validate(parameters)
        request_id = self._multiplexer.new_request_id()
        return await self._dispatch(request.model_copy(update={"request_id": request_id}))

    async def replay(self, request_id: str) -> str:
        """
        Resubmit an earlier request under a new id.

        Raises:
            RequestNotFound: The request was never submitted by this client
        """
        original = self._submitted.get(request_id)
        if original is None:
            raise RequestNotFound(request_id)
        replayed = original.for_replay(self._multiplexer.new_request_id())
        logger.info(f"[CLIENT] Replaying {request_id} as {replayed.request_id}")
        return await self._dispatch(replayed)

    async def _dispatch(self, request: GenerationRequest) -> str:
        request_id = request.request_id
        tenant_id = request.tenant_id

        self._tracker.track_submission(request_id, tenant_id)
        if not self._subscriptions.is_subscribed(tenant_id):
            await self._subscriptions.subscribe_request(tenant_id, request_id)

        envelope = self._multiplexer.codec.encode(request, request_id, tenant=tenant_id)
        try:
            if self._wait_for_ack:
                reply = await self._multiplexer.send_request(
                    self._submit_subject, envelope, timeout=self._request_timeout
                )
                self._check_acknowledgement(reply)
            else:
                await self._multiplexer.publish(self._submit_subject, envelope)
        except Exception:
            self._tracker.remove(request_id)
            await self._subscriptions.unsubscribe_request(request_id)
            raise

        self._remember(request)
        logger.info(f"[CLIENT] Submitted {request_id} for tenant {tenant_id} on {self._submit_subject}")
        return request_id

    def _check_acknowledgement(self, reply: Envelope) -> None:
        error = reply.payload.get("error")
        if error:
            raise SubmissionRejected(reply.request_id, error)

    def _remember(self, request: GenerationRequest) -> None:
        self._submitted[request.request_id] = request
        while len(self._submitted) > self.MAX_REMEMBERED_REQUESTS:
            self._submitted.popitem(last=False)

    async def _on_event(self, event: GenerationEvent) -> None:
        applied = self._tracker.apply(event)
        if applied and event.status.is_terminal:
            await self._subscriptions.unsubscribe_request(event.request_id)

    # ============================================================
    # TRACKING
    # ============================================================

    def get_active_requests(self, tenant_id: Optional[str] = None) -> List[TrackedRequest]:
        return self._tracker.get_active_requests(tenant_id)

    def get_status(self, request_id: str) -> TrackedRequest:
        return self._tracker.get_status(request_id)

    def recent_events(self, limit: Optional[int] = None, request_id: Optional[str] = None) -> List[GenerationEvent]:
        if self._feed is None:
            return []
        return self._feed.recent(limit=limit, request_id=request_id)

    async def subscribe(self, tenant_id: str) -> None:
        """Start receiving every event of a tenant."""
        await self._subscriptions.subscribe_tenant(tenant_id)
        self._tenant_id = tenant_id

    async def unsubscribe(self, tenant_id: Optional[str] = None) -> None:
        """
        Stop receiving a tenant's events and forget its tracked requests.

        Defaults to the most recently subscribed tenant.
        """
        tenant_id = tenant_id or self._tenant_id
        if tenant_id is None:
            return

        await self._subscriptions.unsubscribe_tenant(tenant_id)
        for entry in self._tracker.get_active_requests(tenant_id):
            self._tracker.remove(entry.request_id)
            await self._subscriptions.unsubscribe_request(entry.request_id)

        if self._tenant_id == tenant_id:
            remaining = self._subscriptions.subscribed_tenants()
            self._tenant_id = remaining[-1] if remaining else None

    def connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(
            connected=self._multiplexer.is_connected,
            subscribed=self._subscriptions.is_subscribed(self._tenant_id) if self._tenant_id else False,
            tenant_id=self._tenant_id,
            active_requests=self._tracker.count(),
            tenants=self._subscriptions.subscribed_tenants(),
        )

    # ============================================================
    # TRAILS
    # ============================================================

    def reconstruct(self, steps: Iterable[StepInput], start_node_id: str) -> ReconstructionResult:
        """Rebuild a trail graph, reusing cached results for identical steps."""
        _, result = self._cache.reconstruct(steps, start_node_id)
        return result

    async def close(self) -> None:
        """Drop subscriptions. The multiplexer stays with its owner."""
        await self._subscriptions.close()
