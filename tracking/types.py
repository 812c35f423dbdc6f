"""
Tracking Types

Data structures for request tracking.

DESIGN RULES:
- Immutable snapshots
- No business logic beyond derived flags
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from schemas.events import EventStatus


@dataclass(frozen=True)
class TrackedRequest:
    """
    One in-flight or finished generation job.

    Replaced wholesale on every applied event; readers always hold a
    consistent snapshot.
    """
    request_id: str
    tenant_id: str
    start_time: datetime
    last_update: datetime
    status: EventStatus = EventStatus.PENDING
    current_phase: Optional[str] = None
    progress: float = 0.0
    component: Optional[str] = None
    error_message: Optional[str] = None
    file_path: Optional[str] = None
    last_event_at: Optional[datetime] = None  # emission time of last applied event

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("start_time", "last_update", "last_event_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data
