"""
Request Tracker

In-memory state machine per generation request.

DESIGN RULES:
- Transitions driven only by GenerationEvents (plus submission)
- pending -> in_progress -> {completed, failed}; terminal is final
- Arrival order wins unless timestamp reconciliation is enabled
- Readers get immutable snapshots
- Evicted and never-seen ids are indistinguishable to readers
- Events for an evicted terminal id are rejected, never re-tracked
"""

import logging
from dataclasses import replace
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional

from schemas.events import EventStatus, GenerationEvent
from tracking.types import TrackedRequest


logger = logging.getLogger(__name__)


Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestNotFound(KeyError):
    """Unknown request id, whether never tracked or already evicted."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(request_id)

    def __str__(self) -> str:
        return f"Request not found: {self.request_id}"


class RequestTracker:
    """
    Thread-safe tracker of in-flight generation requests.

    Event ingestion (subscription callbacks) and status queries (API
    callers) may run concurrently; every mutation swaps in a new frozen
    TrackedRequest under the lock.
    """

    # Terminal entries kept this long for status queries
    DEFAULT_RETENTION_SECONDS = 300.0

    # Non-terminal entries with no update for this long are dropped
    DEFAULT_STALE_TIMEOUT_SECONDS = 3600.0

    # Evicted terminal ids remembered so late events cannot revive them
    MAX_FINISHED_IDS = 5000

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        stale_timeout_seconds: float = DEFAULT_STALE_TIMEOUT_SECONDS,
        reconcile_by_timestamp: bool = False,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            retention_seconds: How long terminal entries survive
            stale_timeout_seconds: Idle limit for non-terminal entries
            reconcile_by_timestamp: Ignore non-terminal events older than
                the last applied one instead of applying by arrival order
            clock: Time source (UTC), injectable for tests
        """
        self._requests: Dict[str, TrackedRequest] = {}
        self._terminal_at: Dict[str, datetime] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._retention = timedelta(seconds=retention_seconds)
        self._stale_timeout = timedelta(seconds=stale_timeout_seconds)
        self._reconcile = reconcile_by_timestamp
        self._clock = clock or _utcnow
        self._lock = Lock()

    @property
    def reconcile_by_timestamp(self) -> bool:
        return self._reconcile

    # ============================================================
    # MUTATION
    # ============================================================

    def track_submission(self, request_id: str, tenant_id: str) -> TrackedRequest:
        """
        Register a request acknowledged at submission.

        No-op if the id is already tracked (events may beat the ack).
        """
        with self._lock:
            now = self._clock()
            self._cleanup_expired(now)
            existing = self._requests.get(request_id)
            if existing is not None:
                return existing
            entry = TrackedRequest(
                request_id=request_id,
                tenant_id=tenant_id,
                start_time=now,
                last_update=now,
            )
            self._requests[request_id] = entry
            logger.debug(f"[TRACKER] Tracking submission {request_id} for tenant {tenant_id}")
            return entry

    def apply(self, event: GenerationEvent) -> bool:
        """
        Apply one progress event.

        Returns:
            True if the entry changed, False if the event was rejected
            (entry already terminal or evicted after finishing, or stale
            under reconciliation)
        """
        with self._lock:
            now = self._clock()
            self._cleanup_expired(now)

            if event.request_id in self._finished:
                logger.debug(
                    f"[TRACKER] Rejected {event.status.value} event for finished request {event.request_id}"
                )
                return False

            current = self._requests.get(event.request_id)
            if current is None:
                current = TrackedRequest(
                    request_id=event.request_id,
                    tenant_id=event.tenant_id,
                    start_time=now,
                    last_update=now,
                )
                self._requests[event.request_id] = current

            if current.is_terminal:
                logger.debug(
                    f"[TRACKER] Rejected {event.status.value} event for terminal request "
                    f"{event.request_id} ({current.status.value})"
                )
                return False

            if (
                self._reconcile
                and not event.status.is_terminal
                and current.last_event_at is not None
                and event.timestamp < current.last_event_at
            ):
                logger.debug(f"[TRACKER] Ignored out-of-order event for {event.request_id}")
                return False

            updated = self._transition(current, event, now)
            self._requests[event.request_id] = updated
            if updated.is_terminal:
                self._terminal_at[event.request_id] = now
                logger.info(f"[TRACKER] Request {event.request_id} {updated.status.value}")
            return True

    def _transition(self, current: TrackedRequest, event: GenerationEvent, now: datetime) -> TrackedRequest:
        if event.status == EventStatus.PENDING:
            # A late "pending" never moves an entry backwards
            status = current.status
        else:
            status = event.status

        progress = current.progress if event.progress is None else event.progress
        if status == EventStatus.COMPLETED and event.progress is None:
            progress = 1.0

        last_event_at = event.timestamp
        if current.last_event_at is not None and current.last_event_at > last_event_at:
            last_event_at = current.last_event_at

        return replace(
            current,
            status=status,
            current_phase=event.phase or current.current_phase,
            component=event.phase or current.component,
            progress=progress,
            last_update=now,
            error_message=event.error_message or current.error_message,
            file_path=event.file_path or current.file_path,
            last_event_at=last_event_at,
        )

    def remove(self, request_id: str) -> bool:
        """Stop tracking a request. Returns True if it was tracked."""
        with self._lock:
            self._finished.pop(request_id, None)
            self._terminal_at.pop(request_id, None)
            return self._requests.pop(request_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._requests.clear()
            self._terminal_at.clear()
            self._finished.clear()

    def cleanup(self) -> int:
        """Evict expired entries now. Returns how many were removed."""
        with self._lock:
            return self._cleanup_expired(self._clock())

    def _cleanup_expired(self, now: datetime) -> int:
        """Remove expired entries (internal, lock held)."""
        expired = []
        for request_id, entry in self._requests.items():
            if entry.is_terminal:
                finished = self._terminal_at.get(request_id, entry.last_update)
                if now - finished >= self._retention:
                    expired.append(request_id)
            elif now - entry.last_update >= self._stale_timeout:
                expired.append(request_id)

        for request_id in expired:
            if self._requests.pop(request_id).is_terminal:
                self._finished[request_id] = None
            self._terminal_at.pop(request_id, None)
        while len(self._finished) > self.MAX_FINISHED_IDS:
            self._finished.popitem(last=False)

        if expired:
            logger.debug(f"[TRACKER] Evicted {len(expired)} request(s)")
        return len(expired)

    # ============================================================
    # QUERIES
    # ============================================================

    def get_status(self, request_id: str) -> TrackedRequest:
        """
        Raises:
            RequestNotFound: Unknown or evicted id
        """
        with self._lock:
            self._cleanup_expired(self._clock())
            entry = self._requests.get(request_id)
        if entry is None:
            raise RequestNotFound(request_id)
        return entry

    def get_active_requests(self, tenant_id: Optional[str] = None) -> List[TrackedRequest]:
        """Snapshot of tracked requests, oldest first."""
        with self._lock:
            self._cleanup_expired(self._clock())
            entries = list(self._requests.values())
        if tenant_id is not None:
            entries = [entry for entry in entries if entry.tenant_id == tenant_id]
        return sorted(entries, key=lambda entry: entry.start_time)

    def count(self) -> int:
        with self._lock:
            self._cleanup_expired(self._clock())
            return len(self._requests)
