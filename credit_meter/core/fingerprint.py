"""
Deterministic request fingerprints.

A fingerprint is derived only from the fields that influence generated
output, so it is stable across restarts and across instances.
"""

import hashlib
from typing import Any, Mapping, Sequence, Union

FINGERPRINT_LENGTH = 32
FIELD_SEPARATOR = "|"

Payload = Union[Mapping[str, Any], Sequence[Any], str]


def _canonical(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Mapping):
        return FIELD_SEPARATOR.join(
            f"{key}={_canonical(value[key])}" for key in sorted(value)
        )
    if isinstance(value, (list, tuple)):
        return ",".join(_canonical(item) for item in value)
    return str(value)


def digest(text: str) -> str:
    """SHA-256 of ``text`` truncated to ``FINGERPRINT_LENGTH`` hex chars."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def fingerprint(operation_kind: str, payload: Payload) -> str:
    """Derive a cache key for an operation from its relevant fields.

    Args:
        operation_kind: Operation tag, always part of the hashed text
        payload: Mapping (keys sorted), sequence (kept in order) or string

    Returns:
        32-character lowercase hex identifier
    """
    if not operation_kind:
        raise ValueError("operation_kind is required and cannot be empty")
    if isinstance(payload, str):
        body = payload
    elif isinstance(payload, Mapping):
        body = _canonical(payload)
    else:
        body = FIELD_SEPARATOR.join(_canonical(item) for item in payload)
    return digest(f"{operation_kind}{FIELD_SEPARATOR}{body}")


def asset_fingerprint(prompt: str, size: str) -> str:
    """Cache key for a rendered image prompt at a given size."""
    return digest(f"{prompt}{FIELD_SEPARATOR}{size}")


def distillation_fingerprint(raw_text: str, input_kind: str) -> str:
    """Cache key (and source fingerprint) for a distillation input."""
    return digest(f"{input_kind}{FIELD_SEPARATOR}{raw_text}")
