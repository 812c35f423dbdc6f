"""
Envelope Codec

Pure transformation between payloads, Envelopes and wire bytes.

DESIGN RULES:
- request_id is always supplied by the caller (identity belongs to the multiplexer)
- meta.timestamp is stamped at encode time in a fixed, sortable format
- Malformed input is rejected entirely, never partially decoded
- No side effects
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ValidationError

from schemas.envelope import Envelope, EnvelopeMeta
from transport.errors import DecodeError


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
ENVELOPE_VERSION = "1.0"


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as fixed-width ISO-8601 UTC (lexicographically sortable)."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnvelopeCodec:
    """
    Serializes and deserializes request/response envelopes.

    Payloads must be records of named fields: a mapping or a pydantic model.
    They are normalized through JSON at encode time so that what is held in
    memory is exactly what travels on the wire.
    """

    def __init__(
        self,
        version: Optional[str] = ENVELOPE_VERSION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._version = version
        self._clock = clock

    def encode(
        self,
        payload: Any,
        request_id: str,
        tenant: Optional[str] = None,
    ) -> Envelope:
        """
        Wrap a payload in an Envelope.

        Args:
            payload: Mapping or pydantic model
            request_id: Correlation id minted by the caller
            tenant: Optional tenant identifier

        Returns:
            Immutable Envelope stamped with the current time
        """
        if not request_id:
            raise ValueError("request_id is required to encode an envelope")

        if isinstance(payload, BaseModel):
            record = payload.model_dump(mode="json")
        elif isinstance(payload, Mapping):
            record = dict(payload)
        else:
            raise TypeError(
                f"payload must be a record of named fields, got {type(payload).__name__}"
            )

        # Normalize to wire types (tuples -> lists, etc.)
        record = json.loads(json.dumps(record))

        meta = EnvelopeMeta(
            timestamp=format_timestamp(self._clock()),
            request_id=request_id,
            tenant=tenant,
            version=self._version,
        )
        return Envelope(meta=meta, payload=record)

    def to_bytes(self, envelope: Envelope) -> bytes:
        """Serialize an Envelope to canonical JSON bytes (sorted keys)."""
        data = envelope.model_dump(mode="json")
        data["meta"] = {k: v for k, v in data["meta"].items() if v is not None}
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def decode(self, data: bytes) -> Envelope:
        """
        Parse wire bytes into an Envelope.

        Raises:
            DecodeError: naming the offending field
        """
        try:
            text = bytes(data).decode("utf-8")
        except (UnicodeDecodeError, TypeError) as e:
            raise DecodeError("body", f"not UTF-8 text: {e}") from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise DecodeError("body", f"invalid or truncated JSON: {e.msg}") from e

        if not isinstance(raw, dict):
            raise DecodeError("body", "expected a JSON object")

        for required in ("meta", "payload"):
            if required not in raw:
                raise DecodeError(required, "field required")

        try:
            return Envelope.model_validate(raw)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or "body"
            raise DecodeError(field, first["msg"]) from e


# Default codec shared by the transport layer
default_codec = EnvelopeCodec()
