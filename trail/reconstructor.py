"""
Graph Reconstructor

Turns the ordered step sequence of a finished generation into a TrailDAG.

DESIGN RULES (NON-NEGOTIABLE):
- Pure function of its input: same steps, same DAG, byte for byte
- Choices without a target are reported, never fabricated
- Data-quality problems come back as structured results, never raised
- Best-effort partial DAG is always returned
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from schemas.trail import ContentNode, Edge, TrailDAG, TrailStep


logger = logging.getLogger(__name__)


StepInput = Union[TrailStep, Mapping[str, Any]]


class InconsistencyKind(str, Enum):
    EMPTY_TRAIL = "empty_trail"
    MISSING_START_NODE = "missing_start_node"
    START_HAS_INCOMING = "start_has_incoming"
    DANGLING_EDGE = "dangling_edge"
    DUPLICATE_NODE = "duplicate_node"
    MISSING_CHOICE_ID = "missing_choice_id"


@dataclass(frozen=True)
class StructuralInconsistency:
    """A structural defect found while rebuilding the graph."""
    kind: InconsistencyKind
    node_id: Optional[str]
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "node_id": self.node_id, "detail": self.detail}


@dataclass(frozen=True)
class UnresolvedChoice:
    """A choice that names no target node."""
    node_id: str
    choice_id: str
    choice_text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"node_id": self.node_id, "choice_id": self.choice_id, "choice_text": self.choice_text}


@dataclass(frozen=True)
class ReconstructionResult:
    dag: TrailDAG
    unresolved_choices: List[UnresolvedChoice] = field(default_factory=list)
    inconsistencies: List[StructuralInconsistency] = field(default_factory=list)

    @property
    def is_well_formed(self) -> bool:
        return not self.unresolved_choices and not self.inconsistencies

    def kinds(self) -> List[InconsistencyKind]:
        return [item.kind for item in self.inconsistencies]


def coerce_steps(steps: Iterable[StepInput]) -> List[TrailStep]:
    """Accept parsed TrailSteps or raw mappings in either persisted form."""
    return [step if isinstance(step, TrailStep) else TrailStep.model_validate(step) for step in steps]


def _generation_metadata(step: TrailStep) -> Optional[Dict[str, Any]]:
    educational = step.content.educational_content
    if not educational:
        return None
    metadata = dict(educational)
    for key in ("timestamp", "llm_model"):
        if key in step.metadata:
            metadata[key] = step.metadata[key]
    return metadata


def reconstruct_trail(steps: Iterable[StepInput], start_node_id: str) -> ReconstructionResult:
    """
    Rebuild the trail graph from an ordered step sequence.

    Args:
        steps: Ordered generation steps
        start_node_id: Declared start node

    Returns:
        ReconstructionResult with the best-effort DAG and every problem found

    Raises:
        ValueError: start_node_id is empty
    """
    if not start_node_id:
        raise ValueError("start_node_id is required")

    ordered = coerce_steps(steps)
    inconsistencies: List[StructuralInconsistency] = []
    unresolved: List[UnresolvedChoice] = []

    if not ordered:
        inconsistencies.append(
            StructuralInconsistency(InconsistencyKind.EMPTY_TRAIL, None, "step sequence is empty")
        )

    # Single pass: nodes and candidate edges
    by_id: Dict[str, TrailStep] = {}
    candidates: List[Edge] = []
    for step in ordered:
        node_id = step.temp_node_id
        if node_id in by_id:
            inconsistencies.append(
                StructuralInconsistency(
                    InconsistencyKind.DUPLICATE_NODE,
                    node_id,
                    f"node '{node_id}' appears more than once; first occurrence kept",
                )
            )
            continue
        by_id[node_id] = step

        for position, choice in enumerate(step.content.choices):
            if choice.id is None:
                inconsistencies.append(
                    StructuralInconsistency(
                        InconsistencyKind.MISSING_CHOICE_ID,
                        node_id,
                        f"choice #{position} of node '{node_id}' has no id",
                    )
                )
                continue
            if choice.next_node_id is None:
                unresolved.append(UnresolvedChoice(node_id, choice.id, choice.text))
                continue
            candidates.append(
                Edge(from_node_id=node_id, to_node_id=choice.next_node_id, choice_id=choice.id)
            )

    edges: List[Edge] = []
    for edge in candidates:
        if edge.to_node_id not in by_id:
            inconsistencies.append(
                StructuralInconsistency(
                    InconsistencyKind.DANGLING_EDGE,
                    edge.from_node_id,
                    f"choice '{edge.choice_id}' targets unknown node '{edge.to_node_id}'",
                )
            )
            continue
        edges.append(edge)

    # Degrees only after every edge is known
    incoming = Counter(edge.to_node_id for edge in edges)
    outgoing = Counter(edge.from_node_id for edge in edges)

    nodes = {
        node_id: ContentNode(
            id=node_id,
            content=step.content,
            incoming_edges=incoming[node_id],
            outgoing_edges=outgoing[node_id],
            generation_metadata=_generation_metadata(step),
        )
        for node_id, step in by_id.items()
    }
    convergence_points = [node_id for node_id in nodes if incoming[node_id] >= 2]

    if ordered and start_node_id not in nodes:
        inconsistencies.append(
            StructuralInconsistency(
                InconsistencyKind.MISSING_START_NODE,
                start_node_id,
                f"start node '{start_node_id}' is not among the reconstructed nodes",
            )
        )
    elif incoming[start_node_id] > 0:
        inconsistencies.append(
            StructuralInconsistency(
                InconsistencyKind.START_HAS_INCOMING,
                start_node_id,
                f"start node '{start_node_id}' has in-degree {incoming[start_node_id]}",
            )
        )

    dag = TrailDAG(
        nodes=nodes,
        edges=edges,
        start_node_id=start_node_id,
        convergence_points=convergence_points,
    )

    if unresolved or inconsistencies:
        logger.warning(
            f"[TRAIL] Reconstructed {len(nodes)} nodes / {len(edges)} edges with "
            f"{len(unresolved)} unresolved choice(s) and {len(inconsistencies)} inconsistency(ies)"
        )
    else:
        logger.debug(f"[TRAIL] Reconstructed {len(nodes)} nodes / {len(edges)} edges")

    return ReconstructionResult(dag=dag, unresolved_choices=unresolved, inconsistencies=inconsistencies)
