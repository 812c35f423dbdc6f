"""
Trails API Routes

Reconstruction of step sequences and access to stored trail files.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.dependencies import get_client, get_trail_cache, get_trail_store
from orchestration.client import GenerationClient
from schemas.trail import TrailListItem, TrailStep
from trail.cache import TrailCache
from trail.compat import reconstruct_with_sequential_fallback
from trail.reconstructor import ReconstructionResult
from trail.store import TrailFileError, TrailStore
from trail.validation import validate_trail


router = APIRouter()


class ReconstructRequest(BaseModel):
    steps: List[TrailStep] = Field(..., description="Ordered generation steps")
    start_node_id: str = Field(..., min_length=1)
    sequential_fallback: bool = Field(
        default=False,
        description="Degraded mode: chain missing choice targets to the next step",
    )


def _result_body(result: ReconstructionResult) -> Dict[str, Any]:
    return {
        "dag": result.dag.model_dump(mode="json", by_alias=True),
        "fingerprint": result.dag.fingerprint(),
        "unresolved_choices": [item.to_dict() for item in result.unresolved_choices],
        "inconsistencies": [item.to_dict() for item in result.inconsistencies],
        "validation": validate_trail(result.dag).to_dict(),
    }


@router.post("/trails/reconstruct")
def reconstruct(
    request: ReconstructRequest,
    client: GenerationClient = Depends(get_client),
) -> Dict[str, Any]:
    """
    Rebuild a trail DAG.

    Problems come back in the body next to the partial DAG, never as errors.
    """
    if request.sequential_fallback:
        fallback = reconstruct_with_sequential_fallback(request.steps, request.start_node_id)
        body = _result_body(fallback.result)
        body["assigned_targets"] = [
            {"node_id": item.node_id, "choice_id": item.choice_id, "assigned_node_id": item.assigned_node_id}
            for item in fallback.assigned
        ]
        return body
    return _result_body(client.reconstruct(request.steps, request.start_node_id))


@router.get("/trails", response_model=List[TrailListItem])
def list_trails(
    tenant_id: Optional[str] = None,
    store: TrailStore = Depends(get_trail_store),
) -> List[TrailListItem]:
    try:
        return store.list_trails(tenant_id)
    except (FileNotFoundError, NotADirectoryError) as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/trails/dag")
def stored_trail_dag(
    path: str,
    store: TrailStore = Depends(get_trail_store),
    cache: TrailCache = Depends(get_trail_cache),
) -> Dict[str, Any]:
    try:
        return _result_body(store.load_dag(path, cache=cache))
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TrailFileError as e:
        raise HTTPException(status_code=422, detail=e.reason)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/trails", status_code=204)
def delete_trail(
    path: str,
    store: TrailStore = Depends(get_trail_store),
) -> None:
    try:
        store.delete(path)
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
