import hashlib
import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# --- Step (generation trace unit) ---

class Choice(BaseModel):
    """A branching option on a node. next_node_id may be missing in raw traces."""
    id: Optional[str] = None
    text: str = ""
    next_node_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("id", "next_node_id")
    @classmethod
    def blank_is_missing(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class NodeContent(BaseModel):
    """Text and ordered choices of one story node."""
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    choices: List[Choice] = Field(default_factory=list)
    node_id: Optional[str] = None
    node_type: str = Field(default="interactive_story_node", alias="type")
    convergence_point: bool = False
    next_nodes: List[str] = Field(default_factory=list)
    educational_content: Optional[Dict[str, Any]] = None


class TrailStep(BaseModel):
    """
    One unit of the generation trace.

    Accepts the flat form {temp_node_id, content, ...} and the persisted
    form {step_order, metadata, content_reference: {temp_node_id, content}}.
    """
    temp_node_id: str = Field(..., min_length=1)
    content: NodeContent = Field(default_factory=NodeContent)
    step_order: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    is_required: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def unwrap_content_reference(cls, data: Any) -> Any:
        if isinstance(data, dict) and "content_reference" in data:
            data = dict(data)
            reference = data.pop("content_reference") or {}
            data.setdefault("temp_node_id", reference.get("temp_node_id"))
            data.setdefault("content", reference.get("content", {}))
        return data


# --- Trail DAG (derived data) ---

class ContentNode(BaseModel):
    id: str
    content: NodeContent
    incoming_edges: int = 0
    outgoing_edges: int = 0
    generation_metadata: Optional[Dict[str, Any]] = None


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_node_id: str
    to_node_id: str
    choice_id: str
    weight: Optional[float] = None


class TrailDAG(BaseModel):
    """
    Directed graph rebuilt from a step sequence.

    Never the source of truth: the step sequence is authoritative.
    """
    nodes: Dict[str, ContentNode] = Field(default_factory=dict)
    edges: List[Edge] = Field(default_factory=list)
    start_node_id: str
    convergence_points: List[str] = Field(default_factory=list)

    def fingerprint(self) -> str:
        """Stable SHA-256 of the canonical JSON form."""
        canonical = json.dumps(
            self.model_dump(mode="json", by_alias=True),
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def in_degree(self, node_id: str) -> int:
        return sum(1 for edge in self.edges if edge.to_node_id == node_id)

    def out_degree(self, node_id: str) -> int:
        return sum(1 for edge in self.edges if edge.from_node_id == node_id)


# --- Persisted artifact ---

class TrailStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class Trail(BaseModel):
    title: str
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, description="generation_params, start_node_id, ...")
    tags: List[str] = Field(default_factory=list)
    status: TrailStatus = TrailStatus.DRAFT
    category: Optional[str] = None
    is_public: bool = False
    price_coins: Optional[int] = None

    @field_validator("tags", mode="before")
    @classmethod
    def null_tags(cls, value: Any) -> Any:
        return value or []

    @property
    def generation_params(self) -> Dict[str, Any]:
        return self.metadata.get("generation_params") or {}

    @property
    def start_node_id(self) -> Optional[str]:
        return self.metadata.get("start_node_id")


class TrailArtifact(BaseModel):
    """
    A finished generation result as persisted or exchanged.
    """
    request_id: Optional[str] = None
    status: str = "completed"
    progress_percentage: int = 100
    trail: Optional[Trail] = None
    trail_steps: List[TrailStep] = Field(default_factory=list)
    execution_trace: Optional[Dict[str, Any]] = None
    generation_metadata: Optional[Dict[str, Any]] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("trail_steps", "errors", mode="before")
    @classmethod
    def null_lists(cls, value: Any) -> Any:
        return value or []

    @property
    def start_node_id(self) -> Optional[str]:
        """Declared start node, falling back to the first step."""
        if self.trail is not None and self.trail.start_node_id:
            return self.trail.start_node_id
        if self.trail_steps:
            return self.trail_steps[0].temp_node_id
        return None


class TrailListItem(BaseModel):
    """Read projection for listing trails. Never authoritative."""
    id: str
    file_path: str
    title: str
    description: str = ""
    theme: str = ""
    age_group: str = ""
    language: str = ""
    tags: List[str] = Field(default_factory=list)
    status: str = ""
    generated_at: str = ""
    node_count: int = 0
    tenant_id: Optional[str] = None
