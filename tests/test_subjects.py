import pytest

from schemas.request import GenerationRequest
from transport.subjects import (
    event_subject,
    is_valid_subject,
    is_valid_token,
    subject_matches,
    tenant_events_pattern,
)


@pytest.mark.parametrize(
    "pattern, subject, expected",
    [
        ("a.b.c", "a.b.c", True),
        ("a.*.c", "a.b.c", True),
        ("a.*", "a.b.c", False),
        ("a.>", "a.b.c", True),
        ("a.>", "a", False),
        ("a.b", "a.b.c", False),
    ],
)
def test_subject_matching(pattern, subject, expected):
    assert subject_matches(pattern, subject) is expected


def test_subject_validity():
    assert is_valid_subject("a.*.>")
    assert not is_valid_subject("a..b")
    assert not is_valid_subject("a.>.b")
    assert not is_valid_subject("a.*", allow_wildcards=False)


def test_event_subject_layout():
    assert event_subject("tenant-a", "req-1", prefix="p") == "p.tenant-a.req-1"
    assert tenant_events_pattern("tenant-a", prefix="p") == "p.tenant-a.*"
    assert tenant_events_pattern(prefix="p") == "p.*.*"


@pytest.mark.parametrize("value", ["*", ">", "a.b", "a*", "a>b", "a b", "a\tb", ""])
def test_subject_tokens_are_literal(value):
    assert not is_valid_token(value)
    with pytest.raises(ValueError):
        event_subject(value, "req-1")
    with pytest.raises(ValueError):
        event_subject("tenant-a", value)
    with pytest.raises(ValueError):
        tenant_events_pattern(value)


@pytest.mark.parametrize("tenant_id", ["*", "tenant.a", "tenant a"])
def test_generation_request_rejects_unsafe_tenant(tenant_id):
    with pytest.raises(ValueError):
        GenerationRequest(tenant_id=tenant_id, theme="Dragons")


def test_generation_request_rejects_unsafe_request_id():
    with pytest.raises(ValueError):
        GenerationRequest(tenant_id="tenant-a", theme="Dragons", request_id="req.1")
    assert GenerationRequest(tenant_id="tenant-a", theme="Dragons", request_id="req-1").request_id == "req-1"
