"""
provenance.py

Covenant Provenance
-------------------

Stable SHA-256 hashes that bind a gate decision to exactly what produced it:

    program_hash  = H("covenant.program.v1"  || program bytes)
    decision_hash = H("covenant.decision.v1" || canonical{source, program,
                                                         context, verdict})

The same condition compiled against the same context snapshot always yields
the same decision hash, so a permitted transaction can be audited after the
fact.
"""

from __future__ import annotations

import hashlib
from typing import Any, Dict, Optional

from .canonical import canonical_bytes, canonicalize_source

PROGRAM_DOMAIN = "covenant.program.v1"
DECISION_DOMAIN = "covenant.decision.v1"
SOURCE_DOMAIN = "covenant.source.v1"


def _sha256_hex(*parts: bytes) -> str:
    h = hashlib.sha256()
    for part in parts:
        h.update(part)
    return h.hexdigest()


def compute_source_hash(source: str) -> str:
    canon = canonicalize_source(source)
    return _sha256_hex(SOURCE_DOMAIN.encode("utf-8"), canon.encode("utf-8"))


def compute_program_hash(code: bytes) -> str:
    return _sha256_hex(PROGRAM_DOMAIN.encode("utf-8"), bytes(code))


def compute_decision_hash(
    *,
    source: str,
    program_hash: str,
    context_hash: str,
    verdict: Optional[Dict[str, Any]],
) -> str:
    """
    Hash one gate decision.

    Args:
        source: Condition text (canonicalized here).
        program_hash: Hash of the compiled program.
        context_hash: Hash of the context snapshot the program ran against.
        verdict: JSON view of the verdict value, or None for an empty stack.
    """
    payload = {
        "source": canonicalize_source(source),
        "program_hash": program_hash,
        "context_hash": context_hash,
        "verdict": verdict,
    }
    return _sha256_hex(DECISION_DOMAIN.encode("utf-8"), canonical_bytes(payload))
