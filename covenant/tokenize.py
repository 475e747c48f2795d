"""
covenant/tokenize.py

Tokenizer for Covenant condition source.
Parentheses are always standalone tokens; every other token is a maximal
run of non-whitespace characters. There is no quoting, escaping or
comment syntax.
"""

import re
from typing import List

from .operator_lexicon import OPEN_PAREN, CLOSE_PAREN, is_operator

# Private separator wrapped around parentheses before splitting.
# NUL never occurs in canonical DSL source.
_SEP = "\x00"
_SPLIT_RE = re.compile(r"[\x00\s]+")


def tokenize(source: str) -> List[str]:
    """
    Split DSL source into a flat token list.

    Args:
        source: Raw condition text.

    Returns:
        Tokens in order of appearance. Empty or whitespace-only
        source yields an empty list.
    """
    if not source:
        return []

    islanded = (
        source
        .replace(OPEN_PAREN, f"{_SEP}{OPEN_PAREN}{_SEP}")
        .replace(CLOSE_PAREN, f"{_SEP}{CLOSE_PAREN}{_SEP}")
    )
    return [chunk for chunk in _SPLIT_RE.split(islanded) if chunk]


def extract_ops(tokens: List[str]) -> List[str]:
    """Operators found in a token list, in order of appearance."""
    return [t for t in tokens if is_operator(t)]
