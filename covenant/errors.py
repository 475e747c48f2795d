"""
errors.py

Error taxonomy for the Covenant runtime.

Every failure carries a machine-readable ``code`` so the AgreementGate can
surface the error kind to its caller without exposing internal state.
None of these are retried: a malformed condition is a caller error.
"""

from typing import Any


class CovenantError(Exception):
    """Base class for all Covenant errors."""

    code = "ERR_COVENANT"

    def __str__(self) -> str:
        msg = super().__str__()
        return msg or self.code


# -------------------------------------------------------------------------
# Front end (tokenize / convert / encode)
# -------------------------------------------------------------------------


class CompileError(CovenantError):
    """Raised when DSL source cannot be turned into a program."""

    code = "ERR_COMPILE"


class UnbalancedParentheses(CompileError):
    """Raised when a ')' has no matching '(' or a '(' is never closed."""

    code = "ERR_UNBALANCED_PARENTHESES"


class UnknownCommand(CompileError):
    """Raised when the encoder meets a word it has no opcode for."""

    code = "ERR_UNKNOWN_COMMAND"


class UndefinedLabel(CompileError):
    """Raised when a branch names a block that never appears in the program."""

    code = "ERR_UNDEFINED_LABEL"


# -------------------------------------------------------------------------
# Execution
# -------------------------------------------------------------------------


class ExecutionError(CovenantError):
    """Raised when a compiled program fails on the stack machine."""

    code = "ERR_EXECUTION"


class StackUnderflow(ExecutionError):
    """Raised on pop/peek of an empty stack."""

    code = "ERR_STACK_UNDERFLOW"


class TypeMismatch(ExecutionError):
    """
    Raised when a tagged value is read through the wrong accessor,
    or when an operation receives operands of incompatible tags.
    """

    code = "ERR_TYPE_MISMATCH"

    def __init__(self, expected: Any, actual: Any, message: str = ""):
        self.expected = expected
        self.actual = actual
        if not message:
            message = f"expected {_tag_name(expected)}, got {_tag_name(actual)}"
        super().__init__(message)


class UnknownOpcode(ExecutionError):
    """Raised for opcode bytes with no handler, or a truncated operand."""

    code = "ERR_UNKNOWN_OPCODE"


class ProgramBudgetExceeded(ExecutionError):
    """Raised when a program executes more instructions than its budget."""

    code = "ERR_BUDGET_EXCEEDED"


class UintOverflow(ExecutionError):
    """Raised when an unsigned result does not fit in 256 bits."""

    code = "ERR_UINT_OVERFLOW"


class UintUnderflow(ExecutionError):
    """Raised when an unsigned subtraction would go below zero."""

    code = "ERR_UINT_UNDERFLOW"


class DivisionByZero(ExecutionError):
    """Raised by `/` with a zero divisor."""

    code = "ERR_DIVISION_BY_ZERO"


# -------------------------------------------------------------------------
# Array storage
# -------------------------------------------------------------------------


class StorageError(CovenantError):
    """Base class for array storage errors."""

    code = "ERR_STORAGE"


class ArrayNotDeclared(StorageError):
    """Raised when an element operation targets a name with no array head."""

    code = "ERR_ARRAY_NOT_DECLARED"


class ArrayIndexOutOfRange(StorageError):
    """Raised when an element index is past the end of the array."""

    code = "ERR_ARRAY_INDEX"


def _tag_name(tag: Any) -> str:
    return getattr(tag, "name", str(tag))
