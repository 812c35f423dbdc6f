"""
Subject naming and matching.

Subjects are dot-separated tokens. Patterns may use:
- "*" to match exactly one token
- ">" as the last token to match one or more remaining tokens
"""

from typing import List, Optional


DEFAULT_EVENT_PREFIX = "taletrail.generation.events"


def _tokens(subject: str) -> List[str]:
    return subject.split(".")


def is_valid_subject(subject: str, allow_wildcards: bool = True) -> bool:
    """Check that a subject has no empty tokens and wildcards are well placed."""
    if not subject or subject.strip() != subject:
        return False
    tokens = _tokens(subject)
    for index, token in enumerate(tokens):
        if not token:
            return False
        if token in ("*", ">") and not allow_wildcards:
            return False
        if token == ">" and index != len(tokens) - 1:
            return False
    return True


def subject_matches(pattern: str, subject: str) -> bool:
    """
    Return True when a concrete subject matches a (possibly wildcard) pattern.

    >>> subject_matches("a.*.c", "a.b.c")
    True
    >>> subject_matches("a.>", "a.b.c")
    True
    >>> subject_matches("a.>", "a")
    False
    """
    pattern_tokens = _tokens(pattern)
    subject_tokens = _tokens(subject)

    for index, token in enumerate(pattern_tokens):
        if token == ">":
            return len(subject_tokens) > index
        if index >= len(subject_tokens):
            return False
        if token != "*" and token != subject_tokens[index]:
            return False

    return len(pattern_tokens) == len(subject_tokens)


def is_valid_token(value: str) -> bool:
    """True when value can be used as one literal subject token."""
    if not value:
        return False
    return not any(ch == "." or ch.isspace() or ch in "*>" for ch in value)


def check_token(value: str, label: str = "token") -> str:
    """
    Raises:
        ValueError: value would change the shape of a subject
    """
    if not is_valid_token(value):
        raise ValueError(f"Invalid {label} {value!r}: must be non-empty without '.', '*', '>' or whitespace")
    return value


def event_subject(tenant_id: str, request_id: str, prefix: str = DEFAULT_EVENT_PREFIX) -> str:
    """Concrete subject on which a request's progress events are published."""
    check_token(tenant_id, "tenant_id")
    check_token(request_id, "request_id")
    return f"{prefix}.{tenant_id}.{request_id}"


def tenant_events_pattern(tenant_id: Optional[str] = None, prefix: str = DEFAULT_EVENT_PREFIX) -> str:
    """Pattern covering every request of one tenant (or of all tenants)."""
    if tenant_id is not None:
        check_token(tenant_id, "tenant_id")
    return f"{prefix}.{tenant_id or '*'}.*"
