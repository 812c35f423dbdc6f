from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventStatus(str, Enum):
    """Lifecycle status of a generation request."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.COMPLETED, EventStatus.FAILED)


class GenerationEvent(BaseModel):
    """
    Immutable progress fact published by the generation backend.

    Accepts the camelCase wire names used on the event subjects as well as
    snake_case. Serialize with by_alias=True to produce wire format.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_type: str = Field(default="progress", alias="eventType", description="Kind of event, e.g. progress")
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    request_id: str = Field(..., alias="requestId", min_length=1)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the backend emitted the event",
    )
    phase: Optional[str] = Field(default=None, alias="servicePhase", description="Name of the emitting phase")
    status: EventStatus = Field(default=EventStatus.IN_PROGRESS)
    progress: Optional[float] = Field(default=None, description="Fraction complete in [0, 1]")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    file_path: Optional[str] = Field(default=None, alias="filePath")

    @field_validator("progress")
    @classmethod
    def clamp_progress(cls, value: Optional[float]) -> Optional[float]:
        if value is None:
            return None
        return min(1.0, max(0.0, value))

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
