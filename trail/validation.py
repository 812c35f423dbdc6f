"""
Sanity checks on a reconstructed trail before navigation or rendering.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from schemas.trail import TrailDAG


@dataclass(frozen=True)
class TrailStats:
    node_count: int
    edge_count: int
    convergence_point_count: int
    orphan_nodes: int
    dead_end_nodes: int


@dataclass(frozen=True)
class TrailValidation:
    valid: bool
    stats: TrailStats
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "warnings": list(self.warnings),
            "stats": {
                "node_count": self.stats.node_count,
                "edge_count": self.stats.edge_count,
                "convergence_point_count": self.stats.convergence_point_count,
                "orphan_nodes": self.stats.orphan_nodes,
                "dead_end_nodes": self.stats.dead_end_nodes,
            },
        }


def validate_trail(dag: TrailDAG) -> TrailValidation:
    """
    Check start node, orphans and broken edges.

    Dead ends are counted but are not a warning: leaf nodes end a story.
    """
    warnings: List[str] = []
    node_ids = list(dag.nodes)

    if dag.start_node_id not in dag.nodes:
        warnings.append(f"Start node '{dag.start_node_id}' not found in DAG nodes")

    with_incoming = {edge.to_node_id for edge in dag.edges}
    orphans = [node_id for node_id in node_ids if node_id != dag.start_node_id and node_id not in with_incoming]
    if orphans:
        warnings.append(f"Found {len(orphans)} orphan node(s) with no incoming edges")

    with_outgoing = {edge.from_node_id for edge in dag.edges}
    dead_ends = [node_id for node_id in node_ids if node_id not in with_outgoing]

    broken = [
        edge for edge in dag.edges
        if edge.from_node_id not in dag.nodes or edge.to_node_id not in dag.nodes
    ]
    if broken:
        warnings.append(f"Found {len(broken)} edge(s) with invalid node references")

    return TrailValidation(
        valid=not warnings,
        warnings=warnings,
        stats=TrailStats(
            node_count=len(node_ids),
            edge_count=len(dag.edges),
            convergence_point_count=len(dag.convergence_points),
            orphan_nodes=len(orphans),
            dead_end_nodes=len(dead_ends),
        ),
    )
