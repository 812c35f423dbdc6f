"""
Degraded-compatibility reconstruction for stale trace data.

Older traces often left next_node_id empty and relied on tooling that
chained each step to the one after it. That guess is NOT graph inference:
it lives here, under its own name, and every target it invents is reported.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from trail.reconstructor import ReconstructionResult, StepInput, coerce_steps, reconstruct_trail


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignedTarget:
    """A target fabricated by the sequential fallback."""
    node_id: str
    choice_id: str
    assigned_node_id: str


@dataclass(frozen=True)
class FallbackReconstruction:
    result: ReconstructionResult
    assigned: List[AssignedTarget] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return bool(self.assigned)


def reconstruct_with_sequential_fallback(
    steps: Iterable[StepInput],
    start_node_id: str,
) -> FallbackReconstruction:
    """
    Fill every missing choice target with the next step in sequence, then
    reconstruct normally.

    Choices on the last step have no successor and stay unresolved.
    """
    ordered = coerce_steps(steps)
    patched = []
    assigned: List[AssignedTarget] = []

    for index, step in enumerate(ordered):
        successor = ordered[index + 1].temp_node_id if index + 1 < len(ordered) else None
        choices = []
        for choice in step.content.choices:
            if choice.next_node_id is None and choice.id is not None and successor is not None:
                choice = choice.model_copy(update={"next_node_id": successor})
                assigned.append(AssignedTarget(step.temp_node_id, choice.id, successor))
            choices.append(choice)
        content = step.content.model_copy(update={"choices": choices})
        patched.append(step.model_copy(update={"content": content}))

    if assigned:
        logger.warning(f"[TRAIL] Sequential fallback assigned {len(assigned)} missing choice target(s)")

    return FallbackReconstruction(result=reconstruct_trail(patched, start_node_id), assigned=assigned)
