"""
converter.py

Infix to postfix conversion (shunting-yard) for Covenant conditions.

The converter is purely syntactic: it reorders tokens by operator rank and
parentheses, and leaves operand arity and operator compatibility to the VM.
"""

from typing import List, Sequence

from .errors import UnbalancedParentheses
from .operator_lexicon import OPEN_PAREN, CLOSE_PAREN, is_operator, rank
from .tokenize import tokenize


def convert(tokens: Sequence[str]) -> List[str]:
    """
    Reorder an infix token sequence into postfix order.

    Equal-rank operators are left-associative: the earlier operator is
    emitted first. Parentheses never appear in the output.

    Raises:
        UnbalancedParentheses: a ')' without a matching '(' or a '('
            that is never closed.
    """
    op_stack: List[str] = []
    output: List[str] = []

    for token in tokens:
        if is_operator(token):
            while op_stack and rank(token) >= rank(op_stack[-1]):
                output.append(op_stack.pop())
            op_stack.append(token)
        elif token == OPEN_PAREN:
            op_stack.append(token)
        elif token == CLOSE_PAREN:
            while True:
                if not op_stack:
                    raise UnbalancedParentheses("')' has no matching '('")
                top = op_stack.pop()
                if top == OPEN_PAREN:
                    break
                output.append(top)
        else:
            output.append(token)

    while op_stack:
        top = op_stack.pop()
        if top == OPEN_PAREN:
            raise UnbalancedParentheses("'(' is never closed")
        output.append(top)

    return output


def to_postfix(source: str) -> List[str]:
    """tokenize + convert."""
    return convert(tokenize(source))
