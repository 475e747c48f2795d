"""
covenant/canonical.py - Shared Canonicalization Logic
"""
import json
from typing import Any


def canonicalize_source(source: str) -> str:
    """
    Canonicalize condition source for caching and hashing.

    Rules:
        - Collapse whitespace runs to single ASCII space.
        - Strip leading/trailing whitespace.

    Tokenization is whitespace-insensitive, so semantically identical
    conditions map to the same program and the same source hash. Token
    text itself is left as written: `string` literals compare byte-exact.
    """
    if source is None:
        return ""

    return " ".join(source.split())


def _check_no_floats(obj: Any):
    if isinstance(obj, float):
        raise ValueError("Floats are disallowed in canonical hash-bearing fields. Use integers.")
    elif isinstance(obj, dict):
        for v in obj.values():
            _check_no_floats(v)
    elif isinstance(obj, (list, tuple)):
        for v in obj:
            _check_no_floats(v)


def canonical_json(obj: Any, *, reject_floats: bool = False) -> str:
    """
    Canonical JSON serialization:
        - sorted keys
        - no whitespace separation
        - ensure_ascii=True
        - reject NaN/Infinity (allow_nan=False)
        - optionally reject floats (for hash-bearing fields)
    """
    if reject_floats:
        _check_no_floats(obj)
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, allow_nan=False)


def canonical_bytes(obj: Any) -> bytes:
    """UTF-8 bytes of the canonical JSON string with the float ban enforced."""
    return canonical_json(obj, reject_floats=True).encode("utf-8")
