from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class EnvelopeMeta(BaseModel):
    """
    Correlation metadata carried by every RPC and reply message.

    request_id is minted by the multiplexer at submission time and
    threaded unchanged through replies and progress events.
    """
    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(..., description="ISO-8601 UTC timestamp set at encode time")
    request_id: str = Field(..., min_length=1, description="Correlation id of the request")
    tenant: Optional[str] = Field(default=None, description="Optional tenant identifier")
    version: Optional[str] = Field(default=None, description="Optional envelope protocol version")

    @field_validator("timestamp")
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        candidate = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            datetime.fromisoformat(candidate)
        except ValueError as e:
            raise ValueError(f"not an ISO-8601 timestamp: {value!r}") from e
        return value


class Envelope(BaseModel):
    """
    Immutable request/response wrapper.

    Wire shape:
        { "meta": { "timestamp": ..., "request_id": ... }, "payload": {...} }
    """
    model_config = ConfigDict(frozen=True)

    meta: EnvelopeMeta
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def request_id(self) -> str:
        return self.meta.request_id
