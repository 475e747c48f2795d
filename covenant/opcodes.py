"""
opcodes.py

Opcode handlers for the Covenant VM, grouped into four families:

    comparison : == != < > <= >=
    logical    : ! and or xor, and the checked arithmetic + - * /
    branching  : if ifelse end
    other      : literals, variables, environment, swap, arrays

Every handler has the signature handler(ctx) and works only through the
ProgramContext: operands come from ctx.reader, values from ctx.stack.
The executor has already consumed the opcode byte.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, NamedTuple, Optional

from .errors import DivisionByZero, TypeMismatch, UintOverflow, UintUnderflow
from .operator_lexicon import (
    MNEMONICS,
    operand_length,
    OP_ADD,
    OP_ADDRESS,
    OP_AND,
    OP_BLOCK_CHAIN_ID,
    OP_BLOCK_NUMBER,
    OP_BLOCK_TIMESTAMP,
    OP_BOOL,
    OP_DECLARE_ARR,
    OP_DIV,
    OP_END,
    OP_EQ,
    OP_GE,
    OP_GET,
    OP_GT,
    OP_IF,
    OP_IFELSE,
    OP_LE,
    OP_LENGTH_OF,
    OP_LOAD_LOCAL,
    OP_LT,
    OP_MSG_SENDER,
    OP_MUL,
    OP_NE,
    OP_NOT,
    OP_OR,
    OP_PUSH,
    OP_SET_ADDRESS,
    OP_SET_STRING,
    OP_SET_UINT256,
    OP_STRING,
    OP_SUB,
    OP_SUM_OF,
    OP_SWAP,
    OP_UINT256,
    OP_VAR,
    OP_XOR,
)
from .stack import StackType, StackValue, UINT256_MAX

Handler = Callable[[Any], None]

TRUE = 1
FALSE = 0


class Opcode(NamedTuple):
    id: int
    mnemonic: str
    family: str
    operand_len: Optional[int]   # None: variable length
    handler: Handler


def _push_bool(ctx, flag: bool) -> None:
    ctx.stack.push(StackValue.uint(TRUE if flag else FALSE))


# =========================================================================
# Comparison family
# =========================================================================

_ORDERING = {
    OP_LT: lambda a, b: a < b,
    OP_GT: lambda a, b: a > b,
    OP_LE: lambda a, b: a <= b,
    OP_GE: lambda a, b: a >= b,
}


def _compare(opcode: int) -> Handler:
    def handler(ctx) -> None:
        b = ctx.stack.pop()
        a = ctx.stack.pop()
        if a.get_type() != b.get_type():
            raise TypeMismatch(a.get_type(), b.get_type())
        if opcode == OP_EQ:
            _push_bool(ctx, a == b)
        elif opcode == OP_NE:
            _push_bool(ctx, a != b)
        else:
            # Ordering is only defined on numbers.
            _push_bool(ctx, _ORDERING[opcode](a.get_uint(), b.get_uint()))
    handler.__name__ = f"op_{MNEMONICS[opcode]}"
    return handler


# =========================================================================
# Logical family
# =========================================================================


def op_not(ctx) -> None:
    a = ctx.stack.pop().get_uint()
    _push_bool(ctx, a == 0)


def op_and(ctx) -> None:
    b = ctx.stack.pop().get_uint()
    a = ctx.stack.pop().get_uint()
    _push_bool(ctx, a != 0 and b != 0)


def op_or(ctx) -> None:
    b = ctx.stack.pop().get_uint()
    a = ctx.stack.pop().get_uint()
    _push_bool(ctx, a != 0 or b != 0)


def op_xor(ctx) -> None:
    b = ctx.stack.pop().get_uint()
    a = ctx.stack.pop().get_uint()
    _push_bool(ctx, (a != 0) != (b != 0))


# --- checked uint256 arithmetic ---


def _binary_uint(ctx):
    b = ctx.stack.pop().get_uint()
    a = ctx.stack.pop().get_uint()
    return a, b


def _push_checked(ctx, value: int, what: str) -> None:
    if value > UINT256_MAX:
        raise UintOverflow(f"{what} overflows uint256")
    ctx.stack.push(StackValue.uint(value))


def op_add(ctx) -> None:
    a, b = _binary_uint(ctx)
    _push_checked(ctx, a + b, f"{a} + {b}")


def op_sub(ctx) -> None:
    a, b = _binary_uint(ctx)
    if b > a:
        raise UintUnderflow(f"{a} - {b} is negative")
    ctx.stack.push(StackValue.uint(a - b))


def op_mul(ctx) -> None:
    a, b = _binary_uint(ctx)
    _push_checked(ctx, a * b, f"{a} * {b}")


def op_div(ctx) -> None:
    a, b = _binary_uint(ctx)
    if b == 0:
        raise DivisionByZero(f"{a} / 0")
    ctx.stack.push(StackValue.uint(a // b))


# =========================================================================
# Branching family
# =========================================================================


def _call(ctx, target: int) -> None:
    ctx.returns.append(ctx.pc)
    ctx.pc = target


def op_if(ctx) -> None:
    target = ctx.reader.read_uint16()
    if ctx.stack.pop().get_uint() != 0:
        _call(ctx, target)


def op_ifelse(ctx) -> None:
    when_true = ctx.reader.read_uint16()
    when_false = ctx.reader.read_uint16()
    condition = ctx.stack.pop().get_uint()
    _call(ctx, when_true if condition != 0 else when_false)


def op_end(ctx) -> None:
    if ctx.returns:
        ctx.pc = ctx.returns.pop()
    else:
        ctx.halt()


# =========================================================================
# Other family
# =========================================================================

# --- literals ---


def op_uint256(ctx) -> None:
    ctx.stack.push(StackValue.uint(ctx.reader.read_uint256()))


def op_bool(ctx) -> None:
    _push_bool(ctx, ctx.reader.read_bool())


def op_address(ctx) -> None:
    ctx.stack.push(StackValue.address(ctx.reader.read_address()))


def op_string(ctx) -> None:
    ctx.stack.push(StackValue.string(ctx.reader.read_string()))


# --- variables ---


def op_var(ctx) -> None:
    ctx.stack.push(ctx.load_variable(ctx.reader.read_name()))


def op_load_local(ctx) -> None:
    expected = ctx.reader.read_type()
    value = ctx.load_variable(ctx.reader.read_name())
    if value.get_type() != expected:
        raise TypeMismatch(expected, value.get_type())
    ctx.stack.push(value)


def _setter(tag: StackType) -> Handler:
    def handler(ctx) -> None:
        key = ctx.reader.read_name()
        value = ctx.stack.pop()
        if value.get_type() != tag:
            raise TypeMismatch(tag, value.get_type())
        ctx.store_variable(key, value)
    return handler


op_set_uint256 = _setter(StackType.UINT256)
op_set_address = _setter(StackType.ADDRESS)
op_set_string = _setter(StackType.STRING)


# --- environment ---


def _environment(key: str) -> Handler:
    def handler(ctx) -> None:
        ctx.stack.push(ctx.environment_value(key))
    return handler


# --- stack ---


def op_swap(ctx) -> None:
    b = ctx.stack.pop()
    a = ctx.stack.pop()
    ctx.stack.push(b)
    ctx.stack.push(a)


# --- arrays ---


def op_declare_arr(ctx) -> None:
    element_type = ctx.reader.read_type()
    name = ctx.name_for(ctx.reader.read_name())
    ctx.storage.declare(name, element_type)


def op_push(ctx) -> None:
    value = ctx.reader.read_value()
    name = ctx.name_for(ctx.reader.read_name())
    ctx.storage.push(name, value)


def op_get(ctx) -> None:
    index = ctx.reader.read_uint256()
    name = ctx.name_for(ctx.reader.read_name())
    ctx.stack.push(ctx.storage.get(name, index))


def op_length_of(ctx) -> None:
    name = ctx.name_for(ctx.reader.read_name())
    ctx.stack.push(StackValue.uint(ctx.storage.length(name)))


def op_sum_of(ctx) -> None:
    name = ctx.name_for(ctx.reader.read_name())
    total = ctx.storage.sum_of(name)
    ctx.stack.push(StackValue.uint(total))


# =========================================================================
# Dispatch table
# =========================================================================


def _entry(opcode: int, family: str, handler: Handler) -> Opcode:
    return Opcode(opcode, MNEMONICS[opcode], family, operand_length(opcode), handler)


OPCODES: Dict[int, Opcode] = {
    entry.id: entry
    for entry in (
        # comparison
        _entry(OP_EQ, "comparison", _compare(OP_EQ)),
        _entry(OP_NE, "comparison", _compare(OP_NE)),
        _entry(OP_LT, "comparison", _compare(OP_LT)),
        _entry(OP_GT, "comparison", _compare(OP_GT)),
        _entry(OP_LE, "comparison", _compare(OP_LE)),
        _entry(OP_GE, "comparison", _compare(OP_GE)),
        # logical
        _entry(OP_NOT, "logical", op_not),
        _entry(OP_AND, "logical", op_and),
        _entry(OP_OR, "logical", op_or),
        _entry(OP_XOR, "logical", op_xor),
        _entry(OP_ADD, "logical", op_add),
        _entry(OP_SUB, "logical", op_sub),
        _entry(OP_MUL, "logical", op_mul),
        _entry(OP_DIV, "logical", op_div),
        # branching
        _entry(OP_IF, "branching", op_if),
        _entry(OP_IFELSE, "branching", op_ifelse),
        _entry(OP_END, "branching", op_end),
        # other
        _entry(OP_UINT256, "other", op_uint256),
        _entry(OP_BOOL, "other", op_bool),
        _entry(OP_ADDRESS, "other", op_address),
        _entry(OP_STRING, "other", op_string),
        _entry(OP_VAR, "other", op_var),
        _entry(OP_LOAD_LOCAL, "other", op_load_local),
        _entry(OP_SET_UINT256, "other", op_set_uint256),
        _entry(OP_SET_ADDRESS, "other", op_set_address),
        _entry(OP_SET_STRING, "other", op_set_string),
        _entry(OP_MSG_SENDER, "other", _environment("msg_sender")),
        _entry(OP_BLOCK_NUMBER, "other", _environment("block_number")),
        _entry(OP_BLOCK_TIMESTAMP, "other", _environment("block_timestamp")),
        _entry(OP_BLOCK_CHAIN_ID, "other", _environment("block_chain_id")),
        _entry(OP_SWAP, "other", op_swap),
        _entry(OP_DECLARE_ARR, "other", op_declare_arr),
        _entry(OP_PUSH, "other", op_push),
        _entry(OP_GET, "other", op_get),
        _entry(OP_LENGTH_OF, "other", op_length_of),
        _entry(OP_SUM_OF, "other", op_sum_of),
    )
}

FAMILIES = ("comparison", "logical", "branching", "other")


def family_of(opcode: int) -> str:
    return OPCODES[opcode].family
