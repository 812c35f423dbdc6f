"""
Trail Cache

Bounded LRU of reconstruction results keyed by a fingerprint of the
step sequence. Valid only because reconstruction is deterministic.
Callers always receive their own copy, so mutating a returned result
never changes what later callers see.
"""

import hashlib
import json
from collections import OrderedDict
from threading import Lock
from typing import Iterable, Optional, Tuple

from trail.reconstructor import ReconstructionResult, StepInput, coerce_steps, reconstruct_trail


def steps_fingerprint(steps: Iterable[StepInput], start_node_id: str) -> str:
    """SHA-256 over the canonical JSON of the steps and the start id."""
    canonical = json.dumps(
        {
            "start_node_id": start_node_id,
            "steps": [step.model_dump(mode="json", by_alias=True) for step in coerce_steps(steps)],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _detached(result: ReconstructionResult) -> ReconstructionResult:
    return ReconstructionResult(
        dag=result.dag.model_copy(deep=True),
        unresolved_choices=list(result.unresolved_choices),
        inconsistencies=list(result.inconsistencies),
    )


class TrailCache:
    """Thread-safe LRU cache of reconstructed trails."""

    DEFAULT_MAX_ENTRIES = 128

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self._entries: "OrderedDict[str, ReconstructionResult]" = OrderedDict()
        self._max_entries = max_entries
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[ReconstructionResult]:
        with self._lock:
            result = self._lookup(key)
        return _detached(result) if result is not None else None

    def put(self, key: str, result: ReconstructionResult) -> None:
        with self._lock:
            self._store(key, _detached(result))

    def reconstruct(self, steps: Iterable[StepInput], start_node_id: str) -> Tuple[str, ReconstructionResult]:
        """Return (fingerprint, result), reconstructing only on a miss."""
        ordered = coerce_steps(steps)
        key = steps_fingerprint(ordered, start_node_id)
        with self._lock:
            cached = self._lookup(key)
            if cached is not None:
                self.hits += 1
            else:
                self.misses += 1
        if cached is not None:
            return key, _detached(cached)

        result = reconstruct_trail(ordered, start_node_id)
        with self._lock:
            self._store(key, _detached(result))
        return key, result

    def _lookup(self, key: str) -> Optional[ReconstructionResult]:
        result = self._entries.get(key)
        if result is not None:
            self._entries.move_to_end(key)
        return result

    def _store(self, key: str, result: ReconstructionResult) -> None:
        # Caller holds _lock
        self._entries[key] = result
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
