"""
Covenant Operator Lexicon (Single Source of Truth)

This module defines the operator sets, precedence ranks, type codes and
opcode ids of the Covenant DSL. The converter, the encoder and the VM
all import from here so that a word always means the same thing at every
stage of the pipeline.
"""

import math

from .stack import StackType

OPEN_PAREN = "("
CLOSE_PAREN = ")"
PARENS = {OPEN_PAREN, CLOSE_PAREN}

# Comparison family: pop two, push 1/0
COMPARISON_OPS = {"==", "!=", "<", ">", "<=", ">="}

# Logical family: '!' is unary, the rest binary
LOGICAL_OPS = {"!", "and", "or", "xor"}
UNARY_OPS = {"!"}

# Arithmetic: pop two UINT256, push the checked result
ARITHMETIC_OPS = {"+", "-", "*", "/"}

# Stack utility operators (the "other" family)
STACK_OPS = {"swap"}

ALL_OPS = COMPARISON_OPS | LOGICAL_OPS | ARITHMETIC_OPS | STACK_OPS

# Lower rank binds tighter (is emitted first at the same nesting level).
OPERATOR_RANKS = {
    "!": 1,
    # Arithmetic sits between unary "!" and the comparisons.
    "*": 1.25, "/": 1.25,
    "+": 1.5, "-": 1.5,
    "<": 2, ">": 2, "<=": 2, ">=": 2, "==": 2, "!=": 2,
    "swap": 3, "and": 3,
    "xor": 4, "or": 4,
}

# Parentheses are precedence barriers: never popped by rank comparison,
# only by explicit close-paren handling.
PAREN_RANK = math.inf


def is_operator(token: str) -> bool:
    return token in OPERATOR_RANKS


def rank(token: str) -> float:
    """Precedence rank of an operator or parenthesis token."""
    if token in PARENS:
        return PAREN_RANK
    return OPERATOR_RANKS[token]


# Type words accepted by loadLocal / declareArr. 'bool' is stored as uint.
TYPE_CODES = {
    "uint256": StackType.UINT256,
    "bool": StackType.UINT256,
    "string": StackType.STRING,
    "address": StackType.ADDRESS,
    "array": StackType.ARRAY,
}

# ==========================================
# OPCODE IDS
# ==========================================
# One id per operator / operand class. Ids already used by deployed
# agreements must never be renumbered.

OP_EQ = 0x01
OP_NOT = 0x02
OP_LT = 0x03
OP_GT = 0x04
OP_SWAP = 0x05
OP_LE = 0x06
OP_GE = 0x07
OP_XOR = 0x11
OP_AND = 0x12
OP_OR = 0x13
OP_NE = 0x14
OP_BLOCK_NUMBER = 0x15
OP_BLOCK_TIMESTAMP = 0x16
OP_BLOCK_CHAIN_ID = 0x17
OP_BOOL = 0x18
OP_UINT256 = 0x1A
OP_VAR = 0x1B
OP_MSG_SENDER = 0x1D
OP_LOAD_LOCAL = 0x1E
OP_ADDRESS = 0x1F
OP_STRING = 0x20
OP_IFELSE = 0x23
OP_END = 0x24
OP_IF = 0x25
OP_ADD = 0x26
OP_SUB = 0x27
OP_MUL = 0x28
OP_DIV = 0x29
OP_SET_UINT256 = 0x2E
OP_SET_ADDRESS = 0x2F
OP_SET_STRING = 0x30
OP_DECLARE_ARR = 0x31
OP_PUSH = 0x33
OP_LENGTH_OF = 0x34
OP_GET = 0x35
OP_SUM_OF = 0x40

OPERATOR_OPCODES = {
    "==": OP_EQ,
    "!=": OP_NE,
    "<": OP_LT,
    ">": OP_GT,
    "<=": OP_LE,
    ">=": OP_GE,
    "!": OP_NOT,
    "and": OP_AND,
    "or": OP_OR,
    "xor": OP_XOR,
    "+": OP_ADD,
    "-": OP_SUB,
    "*": OP_MUL,
    "/": OP_DIV,
    "swap": OP_SWAP,
}

ENVIRONMENT_OPCODES = {
    "msgSender": OP_MSG_SENDER,
    "blockNumber": OP_BLOCK_NUMBER,
    "blockTimestamp": OP_BLOCK_TIMESTAMP,
    "time": OP_BLOCK_TIMESTAMP,
    "blockChainId": OP_BLOCK_CHAIN_ID,
}

SETTER_OPCODES = {
    "setUint256": OP_SET_UINT256,
    "setAddress": OP_SET_ADDRESS,
    "setString": OP_SET_STRING,
}

# Command words reserved by the encoder grammar; they can never be
# variable names or block labels.
KEYWORDS = (
    {"uint256", "bool", "string", "address", "var", "loadLocal",
     "declareArr", "push", "get", "lengthOf", "sumOf",
     "if", "ifelse", "end", "true", "false", "and", "or", "xor", "swap"}
    | set(ENVIRONMENT_OPCODES)
    | set(SETTER_OPCODES)
)

# ==========================================
# OPERAND LAYOUTS
# ==========================================
# Inline operands that follow each opcode byte, in order.
#
#   uint256 : 32 bytes big-endian
#   bool    : 1 byte (0x00 / 0x01)
#   address : 20 bytes
#   string  : 2-byte big-endian length + UTF-8 bytes
#   name    : 4-byte name key
#   type    : 1-byte StackType code
#   offset  : 2-byte absolute program offset
#   value   : 1-byte StackType code + payload laid out as that type

OPERAND_SIZES = {
    "uint256": 32,
    "bool": 1,
    "address": 20,
    "name": 4,
    "type": 1,
    "offset": 2,
}

OPERAND_LAYOUTS = {
    OP_UINT256: ("uint256",),
    OP_BOOL: ("bool",),
    OP_ADDRESS: ("address",),
    OP_STRING: ("string",),
    OP_VAR: ("name",),
    OP_LOAD_LOCAL: ("type", "name"),
    OP_SET_UINT256: ("name",),
    OP_SET_ADDRESS: ("name",),
    OP_SET_STRING: ("name",),
    OP_IF: ("offset",),
    OP_IFELSE: ("offset", "offset"),
    OP_DECLARE_ARR: ("type", "name"),
    OP_PUSH: ("value", "name"),
    OP_GET: ("uint256", "name"),
    OP_LENGTH_OF: ("name",),
    OP_SUM_OF: ("name",),
}


def operand_length(opcode: int):
    """Total inline operand size for `opcode`, or None when it varies."""
    total = 0
    for kind in OPERAND_LAYOUTS.get(opcode, ()):
        size = OPERAND_SIZES.get(kind)
        if size is None:
            return None
        total += size
    return total


MNEMONICS = {
    **{op_id: word for word, op_id in OPERATOR_OPCODES.items()},
    **{op_id: word for word, op_id in SETTER_OPCODES.items()},
    OP_MSG_SENDER: "msgSender",
    OP_BLOCK_NUMBER: "blockNumber",
    OP_BLOCK_TIMESTAMP: "blockTimestamp",
    OP_BLOCK_CHAIN_ID: "blockChainId",
    OP_UINT256: "uint256",
    OP_BOOL: "bool",
    OP_ADDRESS: "address",
    OP_STRING: "string",
    OP_VAR: "var",
    OP_LOAD_LOCAL: "loadLocal",
    OP_IF: "if",
    OP_IFELSE: "ifelse",
    OP_END: "end",
    OP_DECLARE_ARR: "declareArr",
    OP_PUSH: "push",
    OP_GET: "get",
    OP_LENGTH_OF: "lengthOf",
    OP_SUM_OF: "sumOf",
}
