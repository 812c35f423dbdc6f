"""
Requests API Routes

Thin delegation layer to GenerationClient.
Contains NO protocol or tracking logic.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.dependencies import get_client
from orchestration.client import GenerationClient
from schemas.events import GenerationEvent
from schemas.request import GenerationRequest
from tracking.types import TrackedRequest


router = APIRouter()


class SubmitResponse(BaseModel):
    request_id: str = Field(..., description="Identifier minted for the submission")


class TrackedRequestView(BaseModel):
    """API view of a tracked request."""
    request_id: str
    tenant_id: str
    status: str
    current_phase: Optional[str] = None
    progress: float = Field(..., ge=0.0, le=1.0)
    component: Optional[str] = None
    start_time: datetime
    last_update: datetime
    error_message: Optional[str] = None
    file_path: Optional[str] = None

    @classmethod
    def from_tracked(cls, entry: TrackedRequest) -> "TrackedRequestView":
        return cls(
            request_id=entry.request_id,
            tenant_id=entry.tenant_id,
            status=entry.status.value,
            current_phase=entry.current_phase,
            progress=entry.progress,
            component=entry.component,
            start_time=entry.start_time,
            last_update=entry.last_update,
            error_message=entry.error_message,
            file_path=entry.file_path,
        )


@router.post("/requests", response_model=SubmitResponse, status_code=202)
async def submit_request(
    request: GenerationRequest,
    client: GenerationClient = Depends(get_client),
) -> SubmitResponse:
    """Submit a generation job; progress is tracked asynchronously."""
    request_id = await client.submit(request)
    return SubmitResponse(request_id=request_id)


@router.post("/requests/{request_id}/replay", response_model=SubmitResponse, status_code=202)
async def replay_request(
    request_id: str,
    client: GenerationClient = Depends(get_client),
) -> SubmitResponse:
    new_request_id = await client.replay(request_id)
    return SubmitResponse(request_id=new_request_id)


@router.get("/requests", response_model=List[TrackedRequestView])
def list_requests(
    tenant_id: Optional[str] = None,
    client: GenerationClient = Depends(get_client),
) -> List[TrackedRequestView]:
    return [TrackedRequestView.from_tracked(entry) for entry in client.get_active_requests(tenant_id)]


@router.get("/requests/{request_id}", response_model=TrackedRequestView)
def get_request(
    request_id: str,
    client: GenerationClient = Depends(get_client),
) -> TrackedRequestView:
    return TrackedRequestView.from_tracked(client.get_status(request_id))


@router.get("/events")
def recent_events(
    limit: int = Query(default=100, ge=1, le=1000),
    request_id: Optional[str] = None,
    client: GenerationClient = Depends(get_client),
) -> List[Dict[str, Any]]:
    events: List[GenerationEvent] = client.recent_events(limit=limit, request_id=request_id)
    return [event.model_dump(mode="json", by_alias=True) for event in events]


@router.post("/subscriptions/{tenant_id}", status_code=204)
async def subscribe_tenant(
    tenant_id: str,
    client: GenerationClient = Depends(get_client),
) -> None:
    try:
        await client.subscribe(tenant_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/subscriptions/{tenant_id}", status_code=204)
async def unsubscribe_tenant(
    tenant_id: str,
    client: GenerationClient = Depends(get_client),
) -> None:
    await client.unsubscribe(tenant_id)


@router.get("/connection")
def connection_status(client: GenerationClient = Depends(get_client)) -> Dict[str, Any]:
    return client.connection_status().to_dict()
