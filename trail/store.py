"""
File-based Trail Store

Reads and writes finished generation results as envelope JSON files.

File layout (one file per request):
    response_<request_id>.json
    {"meta": {...}, "payload": {"tool_response": {"content": [{"type": "text",
     "text": "<GenerationResponse JSON>"}], "is_error": false}}}

The inner text holds the artifact either directly or wrapped as
{"generation_response": {...}}. Files named work_result_*.json use the
same layout.

DESIGN RULES:
- Listing never fails on one bad file (logged and skipped)
- The list view is a projection, never authoritative
- Reads, writes and deletes stay inside the store directory
- A missing file is FileNotFoundError; an unreadable one is TrailFileError
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError

from schemas.envelope import Envelope
from schemas.trail import TrailArtifact, TrailListItem
from trail.cache import TrailCache
from trail.reconstructor import ReconstructionResult, reconstruct_trail
from transport.codec import EnvelopeCodec, default_codec
from transport.errors import DecodeError


logger = logging.getLogger(__name__)


TRAIL_FILE_PREFIXES = ("response_", "work_result_")


class TrailFileError(ValueError):
    """A trail file exists but does not hold a readable artifact."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class TrailStore:
    """
    Directory of persisted trail artifacts.
    """

    def __init__(self, directory: str, codec: Optional[EnvelopeCodec] = None):
        self._directory = Path(directory)
        self._codec = codec or default_codec

    @property
    def directory(self) -> Path:
        return self._directory

    # ============================================================
    # READ
    # ============================================================

    def list_trails(self, tenant_id: Optional[str] = None) -> List[TrailListItem]:
        """
        Summaries of every trail file under the directory, newest first.

        Raises:
            FileNotFoundError: Directory does not exist
            NotADirectoryError: Path is not a directory
        """
        if not self._directory.exists():
            raise FileNotFoundError(f"Directory does not exist: {self._directory}")
        if not self._directory.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {self._directory}")

        items: List[TrailListItem] = []
        for path in sorted(self._directory.rglob("*.json")):
            if not path.is_file() or not path.name.startswith(TRAIL_FILE_PREFIXES):
                continue
            try:
                item = self._list_item(path)
            except TrailFileError as e:
                logger.warning(f"[TRAIL] Skipping {path}: {e.reason}")
                continue
            if tenant_id is not None and item.tenant_id != tenant_id:
                continue
            items.append(item)

        items.sort(key=lambda item: item.generated_at, reverse=True)
        return items

    def load(self, path: str) -> TrailArtifact:
        """Full artifact stored at path."""
        _, artifact = self._read(self._existing(path))
        return artifact

    def load_dag(self, path: str, cache: Optional[TrailCache] = None) -> ReconstructionResult:
        """
        Rebuild the graph of a stored trail.

        Raises:
            FileNotFoundError: No such trail file
            TrailFileError: No steps or no start node to rebuild from
        """
        resolved = self._existing(path)
        _, artifact = self._read(resolved)
        start_node_id = artifact.start_node_id
        if not start_node_id:
            raise TrailFileError(resolved, "no start node and no steps")
        if cache is not None:
            _, result = cache.reconstruct(artifact.trail_steps, start_node_id)
            return result
        return reconstruct_trail(artifact.trail_steps, start_node_id)

    def _list_item(self, path: Path) -> TrailListItem:
        envelope, artifact = self._read(path)
        if artifact.trail is None:
            raise TrailFileError(path, "missing trail in generation response")

        params = artifact.trail.generation_params
        if not params:
            raise TrailFileError(path, "missing generation_params in trail metadata")

        node_count = len(artifact.trail_steps) or int(params.get("node_count") or 0)

        return TrailListItem(
            id=envelope.request_id,
            file_path=str(path),
            title=artifact.trail.title,
            description=artifact.trail.description or "",
            theme=str(params.get("theme") or "Unknown"),
            age_group=str(params.get("age_group") or "Unknown"),
            language=str(params.get("language") or "en"),
            tags=artifact.trail.tags,
            status=artifact.status,
            generated_at=envelope.meta.timestamp,
            node_count=node_count,
            tenant_id=envelope.meta.tenant or None,
        )

    def _read(self, path: Path) -> Tuple[Envelope, TrailArtifact]:
        try:
            envelope = self._codec.decode(path.read_bytes())
        except OSError as e:
            raise TrailFileError(path, f"cannot read file: {e}") from e
        except DecodeError as e:
            raise TrailFileError(path, str(e)) from e

        tool_response = envelope.payload.get("tool_response")
        content = tool_response.get("content") if isinstance(tool_response, dict) else None
        if not content or not isinstance(content, list) or not isinstance(content[0], dict) or "text" not in content[0]:
            raise TrailFileError(path, "no content in tool_response")

        try:
            inner = json.loads(content[0]["text"])
        except (TypeError, ValueError) as e:
            raise TrailFileError(path, f"tool_response text is not JSON: {e}") from e

        if isinstance(inner, dict) and "generation_response" in inner:
            inner = inner["generation_response"]

        try:
            artifact = TrailArtifact.model_validate(inner)
        except ValidationError as e:
            raise TrailFileError(path, f"invalid generation response: {e.error_count()} error(s)") from e

        if artifact.request_id is None:
            artifact = artifact.model_copy(update={"request_id": envelope.request_id})
        return envelope, artifact

    # ============================================================
    # WRITE
    # ============================================================

    def save(self, artifact: TrailArtifact, tenant_id: Optional[str] = None) -> Path:
        """
        Persist an artifact as response_<request_id>.json.

        Raises:
            ValueError: Missing request_id, or one that would leave the directory
        """
        if not artifact.request_id:
            raise ValueError("artifact.request_id is required to save a trail")

        payload = {
            "tool_response": {
                "content": [{"type": "text", "text": artifact.model_dump_json(by_alias=True)}],
                "is_error": False,
            }
        }
        envelope = self._codec.encode(payload, artifact.request_id, tenant=tenant_id)

        path = self._resolve(f"response_{artifact.request_id}.json")
        if path.parent != self._directory.resolve():
            raise ValueError(f"request_id does not name a file in the trail directory: {artifact.request_id}")

        self._directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self._codec.to_bytes(envelope))
        logger.info(f"[TRAIL] Saved trail {artifact.request_id} to {path}")
        return path

    def delete(self, path: str) -> None:
        """
        Remove a trail file.

        Raises:
            FileNotFoundError: No such trail file
            ValueError: Path lies outside the store directory
        """
        resolved = self._existing(path)
        resolved.unlink()
        logger.info(f"[TRAIL] Deleted {resolved}")

    def _existing(self, path: str) -> Path:
        resolved = self._resolve(path)
        if not resolved.is_file():
            raise FileNotFoundError(f"Trail file not found: {resolved}")
        return resolved

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self._directory / candidate
        resolved = candidate.resolve()
        root = self._directory.resolve()
        if resolved != root and root not in resolved.parents:
            raise ValueError(f"Path is outside the trail directory: {path}")
        return resolved
