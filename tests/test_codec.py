import json
from datetime import datetime, timezone

import pytest
from pydantic import BaseModel, ValidationError

from schemas.envelope import Envelope
from transport.codec import EnvelopeCodec, format_timestamp
from transport.errors import DecodeError


FIXED = datetime(2025, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)


@pytest.fixture
def codec():
    return EnvelopeCodec(clock=lambda: FIXED)


class Ping(BaseModel):
    message: str
    count: int = 1


def test_round_trip(codec):
    envelope = codec.encode({"theme": "Space", "nodes": [1, 2, 3], "nested": {"a": None}}, "req-1")
    assert codec.decode(codec.to_bytes(envelope)) == envelope


def test_round_trip_ignores_field_order(codec):
    envelope = codec.encode({"b": 2, "a": 1}, "req-1", tenant="t1")
    wire = json.loads(codec.to_bytes(envelope))
    reordered = json.dumps({
        "payload": dict(reversed(list(wire["payload"].items()))),
        "meta": dict(reversed(list(wire["meta"].items()))),
    }).encode()
    assert codec.decode(reordered) == envelope


def test_encode_stamps_fixed_format_timestamp(codec):
    envelope = codec.encode({}, "req-1")
    assert envelope.meta.timestamp == "2025-03-04T05:06:07.890000Z"
    assert envelope.meta.request_id == "req-1"


def test_timestamps_sort_lexicographically():
    earlier = format_timestamp(datetime(2025, 1, 1, 9, 0, 0, 5, tzinfo=timezone.utc))
    later = format_timestamp(datetime(2025, 1, 1, 10, 0, 0, 0, tzinfo=timezone.utc))
    assert earlier < later


def test_encode_accepts_pydantic_model(codec):
    envelope = codec.encode(Ping(message="hi"), "req-2")
    assert envelope.payload == {"message": "hi", "count": 1}


def test_encode_requires_request_id(codec):
    with pytest.raises(ValueError):
        codec.encode({"a": 1}, "")


def test_encode_rejects_non_record_payload(codec):
    with pytest.raises(TypeError):
        codec.encode([1, 2, 3], "req-1")


def test_envelope_is_immutable(codec):
    envelope = codec.encode({"a": 1}, "req-1")
    with pytest.raises(ValidationError):
        envelope.meta = None


def test_to_bytes_omits_unset_meta():
    bare = EnvelopeCodec(version=None, clock=lambda: FIXED)
    wire = json.loads(bare.to_bytes(bare.encode({}, "r")))
    assert wire["meta"] == {"timestamp": "2025-03-04T05:06:07.890000Z", "request_id": "r"}


@pytest.mark.parametrize(
    "data, field",
    [
        (b"not json at all", "body"),
        (b'{"meta": {"timestamp": "2025-01-01T00:00:00Z", "request_id": "r"}, "payl', "body"),
        (b"[1, 2]", "body"),
        (b"\xff\xfe", "body"),
        (b'{"payload": {}}', "meta"),
        (b'{"meta": {"timestamp": "2025-01-01T00:00:00Z", "request_id": "r"}}', "payload"),
        (b'{"meta": {"timestamp": "2025-01-01T00:00:00Z"}, "payload": {}}', "meta.request_id"),
        (b'{"meta": {"timestamp": "yesterday", "request_id": "r"}, "payload": {}}', "meta.timestamp"),
        (b'{"meta": {"timestamp": "2025-01-01T00:00:00Z", "request_id": "r"}, "payload": 5}', "payload"),
    ],
)
def test_decode_errors_name_the_field(codec, data, field):
    with pytest.raises(DecodeError) as info:
        codec.decode(data)
    assert info.value.field == field


def test_decode_accepts_optional_meta(codec):
    raw = b'{"meta": {"timestamp": "2025-01-01T00:00:00Z", "request_id": "r", "tenant": "t9"}, "payload": {}}'
    envelope = codec.decode(raw)
    assert isinstance(envelope, Envelope)
    assert envelope.meta.tenant == "t9"
    assert envelope.request_id == "r"
