"""Tokenizer and operator lexicon tests."""

from covenant.tokenize import tokenize, extract_ops
from covenant.operator_lexicon import PAREN_RANK, is_operator, rank


def test_parentheses_are_standalone_tokens():
    assert tokenize("( a == b ) and ( c <= d )") == [
        "(", "a", "==", "b", ")", "and", "(", "c", "<=", "d", ")",
    ]
    assert tokenize("(a == b)") == ["(", "a", "==", "b", ")"]
    assert tokenize("((x))") == ["(", "(", "x", ")", ")"]


def test_whitespace_and_newlines_separate():
    assert tokenize("uint256 1\nuint256 2\t==") == ["uint256", "1", "uint256", "2", "=="]


def test_operators_need_whitespace():
    # Only parentheses split without whitespace.
    assert tokenize("(a==b)") == ["(", "a==b", ")"]


def test_empty_input():
    assert tokenize("") == []
    assert tokenize("   \n\t ") == []


def test_extract_ops():
    tokens = tokenize("( a == b ) and ! c")
    assert extract_ops(tokens) == ["==", "and", "!"]


def test_ranks():
    assert rank("!") == 1
    for op in ("==", "!=", "<", ">", "<=", ">="):
        assert rank(op) == 2
    assert rank("swap") == rank("and") == 3
    assert rank("xor") == rank("or") == 4
    assert rank("!") < rank("*") == rank("/") < rank("+") == rank("-") < rank("==")
    assert rank("(") == PAREN_RANK
    assert rank(")") == PAREN_RANK


def test_parens_are_not_operators():
    assert not is_operator("(")
    assert not is_operator(")")
    assert is_operator("swap")
    assert not is_operator("uint256")
