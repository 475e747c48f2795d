"""
encoder.py

Covenant Opcode Encoder
-----------------------

Turns a postfix token sequence into a linear Program:

    postfix tokens  ->  PEG parse (arpeggio)  ->  Instructions  ->  bytes

The grammar runs over the postfix command stream (tokens joined by a single
space). Every command is an opcode word followed by its inline operands;
see OPERAND_LAYOUTS in operator_lexicon for the byte layout.

Branch targets:
    `if L` / `ifelse L1 L2` refer to blocks written as `L ... end`. A bare
    word that some branch names is a label definition and emits no bytes;
    any other bare word is a variable load. Targets are resolved to 2-byte
    absolute offsets in a second assembly pass.
"""

from __future__ import annotations

import hashlib
import os
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from arpeggio import ParserPython, PTNodeVisitor, visit_parse_tree, ZeroOrMore, Optional as Opt, EOF, NoMatch
from arpeggio import RegExMatch as _

from .errors import UnknownCommand, UnknownOpcode, UndefinedLabel
from .operator_lexicon import (
    KEYWORDS,
    MNEMONICS,
    OPERAND_LAYOUTS,
    OPERAND_SIZES,
    OPERATOR_OPCODES,
    ENVIRONMENT_OPCODES,
    SETTER_OPCODES,
    TYPE_CODES,
    OP_ADDRESS,
    OP_BOOL,
    OP_DECLARE_ARR,
    OP_END,
    OP_GET,
    OP_IF,
    OP_IFELSE,
    OP_LENGTH_OF,
    OP_LOAD_LOCAL,
    OP_PUSH,
    OP_STRING,
    OP_SUM_OF,
    OP_UINT256,
    OP_VAR,
)
from .stack import StackType, StackValue, UINT256_MAX

_DEBUG_ENABLED = os.getenv("COVENANT_DEBUG", "0") == "1"

NAME_KEY_SIZE = 4
MAX_STRING_BYTES = 0xFFFF
MAX_PROGRAM_SIZE = 0xFFFF  # branch offsets are 2 bytes


def _debug_print(*args, **kwargs):
    if _DEBUG_ENABLED:
        print(*args, file=sys.stderr, **kwargs)


def name_key(name: str) -> bytes:
    """4-byte key of a variable or array name: first bytes of SHA-256(name)."""
    return hashlib.sha256(name.encode("utf-8")).digest()[:NAME_KEY_SIZE]


# ==========================================
# PROGRAM
# ==========================================


@dataclass(frozen=True)
class Program:
    """
    Immutable compiled program.

    code:    opcode bytes
    postfix: the postfix tokens the bytes were encoded from
    names:   name key -> name, for every name the program mentions
    labels:  block label -> absolute offset
    """
    code: bytes
    postfix: Tuple[str, ...] = ()
    names: Dict[bytes, str] = field(default_factory=dict)
    labels: Dict[str, int] = field(default_factory=dict)

    def hex(self) -> str:
        return self.code.hex()


class Instruction(NamedTuple):
    opcode: Optional[int]   # None for a bare word (variable load or label)
    args: tuple = ()


# ==========================================
# GRAMMAR
# ==========================================

_KEYWORD_ALT = "|".join(sorted(KEYWORDS, key=len, reverse=True))


def number():          return _(r'\d+\b')
def bool_word():       return _(r'(true|false)\b')
def address_literal(): return _(r'0x[0-9a-fA-F]{40}\b')
def string_word():     return _(r'\S+')
def type_word():       return _(r'(uint256|bool|string|address|array)\b')
def name():            return _(r'(?!(%s)\b)[A-Za-z_][A-Za-z0-9_]*\b' % _KEYWORD_ALT)

def operator():        return _(r'(==|!=|<=|>=|<|>|!|\+|-|\*|/|and|or|xor|swap)(?=\s|$)')
def environment():     return _(r'(msgSender|blockNumber|blockTimestamp|blockChainId|time)\b')

def uint_push():       return Opt(_(r'uint256\b')), number
def bool_push():       return Opt(_(r'bool\b')), bool_word
def address_push():    return _(r'address\b'), address_literal
def string_push():     return _(r'string\b'), string_word
def load_local():      return _(r'loadLocal\b'), type_word, name
def setter():          return _(r'(setUint256|setAddress|setString)\b'), name
def declare_arr():     return _(r'declareArr\b'), type_word, name
def push_value():      return [address_literal, number, bool_word, string_word]
def array_push():      return _(r'push\b'), push_value, name
def array_get():       return _(r'get\b'), number, name
def array_query():     return _(r'(lengthOf|sumOf)\b'), name
def if_branch():       return _(r'if\b'), name
def ifelse_branch():   return _(r'ifelse\b'), name, name
def end():             return _(r'end\b')
def var_load():        return Opt(_(r'var\b')), name

def command():
    return [operator, environment, uint_push, bool_push, address_push,
            string_push, load_local, setter, declare_arr, array_push,
            array_get, array_query, ifelse_branch, if_branch, end, var_load]

def program():         return ZeroOrMore(command), EOF


_PARSER_LOCK = threading.Lock()
_GLOBAL_PARSER = None


def _get_or_create_parser():
    """Get global parser instance, creating it if needed."""
    global _GLOBAL_PARSER
    with _PARSER_LOCK:
        if _GLOBAL_PARSER is None:
            _GLOBAL_PARSER = ParserPython(program, ignore_case=False)
    return _GLOBAL_PARSER


# ==========================================
# VISITOR
# ==========================================


class CommandVisitor(PTNodeVisitor):
    """Builds one Instruction per command; operands stay as Python values."""

    def visit_number(self, node, children):
        return int(node.value)

    def visit_bool_word(self, node, children):
        return node.value == "true"

    def visit_type_word(self, node, children):
        return int(TYPE_CODES[node.value])

    def visit_name(self, node, children):
        return node.value

    def visit_address_literal(self, node, children):
        return node.value.lower()

    def visit_string_word(self, node, children):
        return node.value

    def visit_operator(self, node, children):
        return Instruction(OPERATOR_OPCODES[node.value])

    def visit_environment(self, node, children):
        return Instruction(ENVIRONMENT_OPCODES[node.value])

    def visit_uint_push(self, node, children):
        return Instruction(OP_UINT256, (children[-1],))

    def visit_bool_push(self, node, children):
        return Instruction(OP_BOOL, (children[-1],))

    def visit_address_push(self, node, children):
        return Instruction(OP_ADDRESS, (children[-1],))

    def visit_string_push(self, node, children):
        return Instruction(OP_STRING, (children[-1],))

    def visit_load_local(self, node, children):
        return Instruction(OP_LOAD_LOCAL, (children[-2], children[-1]))

    def visit_setter(self, node, children):
        return Instruction(SETTER_OPCODES[node[0].value], (children[-1],))

    def visit_declare_arr(self, node, children):
        return Instruction(OP_DECLARE_ARR, (children[-2], children[-1]))

    def visit_push_value(self, node, children):
        kind = node[0].rule_name
        value = children[0]
        if kind == "address_literal":
            return StackValue.address(value)
        if kind == "string_word":
            return StackValue.string(value)
        if kind == "number" and value > UINT256_MAX:
            raise UnknownCommand(f"uint256 literal out of range: {value}")
        return StackValue.uint(int(value))

    def visit_array_push(self, node, children):
        return Instruction(OP_PUSH, (children[-2], children[-1]))

    def visit_array_get(self, node, children):
        return Instruction(OP_GET, (children[-2], children[-1]))

    def visit_array_query(self, node, children):
        opcode = OP_LENGTH_OF if node[0].value == "lengthOf" else OP_SUM_OF
        return Instruction(opcode, (children[-1],))

    def visit_if_branch(self, node, children):
        return Instruction(OP_IF, (children[-1],))

    def visit_ifelse_branch(self, node, children):
        return Instruction(OP_IFELSE, (children[-2], children[-1]))

    def visit_end(self, node, children):
        return Instruction(OP_END)

    def visit_var_load(self, node, children):
        if len(node) == 1:
            return Instruction(None, (children[-1],))
        return Instruction(OP_VAR, (children[-1],))

    def visit_program(self, node, children):
        return [c for c in children if isinstance(c, Instruction)]


def parse_commands(postfix: Sequence[str]) -> List[Instruction]:
    """
    Parse a postfix token sequence into Instructions.

    Raises:
        UnknownCommand: a word (or word/operand combination) with no opcode.
    """
    if not postfix:
        return []
    text = " ".join(postfix)
    parser = _get_or_create_parser()
    with _PARSER_LOCK:
        try:
            tree = parser.parse(text)
        except NoMatch as e:
            rest = text[e.position:].split()
            word = rest[0] if rest else "<end of program>"
            raise UnknownCommand(f"Unknown command {word!r} at offset {e.position}") from None
    return visit_parse_tree(tree, CommandVisitor())


# ==========================================
# OPERAND CODEC
# ==========================================


def _encode_value(value: StackValue) -> bytes:
    tag = value.get_type()
    if tag == StackType.UINT256:
        return bytes([tag]) + value.get_uint().to_bytes(32, "big")
    if tag == StackType.ADDRESS:
        return bytes([tag]) + bytes.fromhex(value.get_address()[2:])
    return bytes([tag]) + _encode_string(value.get_string())


def _encode_string(text: str) -> bytes:
    raw = text.encode("utf-8")
    if len(raw) > MAX_STRING_BYTES:
        raise UnknownCommand(f"string literal too long ({len(raw)} bytes)")
    return len(raw).to_bytes(2, "big") + raw


def _encode_operand(kind: str, arg: Any, labels: Dict[str, int]) -> bytes:
    if kind == "uint256":
        if arg > UINT256_MAX:
            raise UnknownCommand(f"uint256 literal out of range: {arg}")
        return arg.to_bytes(32, "big")
    if kind == "bool":
        return b"\x01" if arg else b"\x00"
    if kind == "address":
        return bytes.fromhex(arg[2:])
    if kind == "string":
        return _encode_string(arg)
    if kind == "name":
        return name_key(arg)
    if kind == "type":
        return bytes([arg])
    if kind == "offset":
        if arg not in labels:
            raise UndefinedLabel(f"Branch target {arg!r} is never defined")
        return labels[arg].to_bytes(2, "big")
    if kind == "value":
        return _encode_value(arg)
    raise ValueError(f"Unknown operand kind: {kind}")


def _instruction_size(instr: Instruction) -> int:
    if instr.opcode is None:
        return 0
    size = 1
    for kind, arg in zip(OPERAND_LAYOUTS.get(instr.opcode, ()), instr.args):
        if kind in OPERAND_SIZES:
            size += OPERAND_SIZES[kind]
        elif kind == "string":
            size += 2 + len(arg.encode("utf-8"))
        else:
            size += len(_encode_value(arg))
    return size


def _names_of(instr: Instruction) -> List[str]:
    return [arg for kind, arg in zip(OPERAND_LAYOUTS.get(instr.opcode, ()), instr.args)
            if kind == "name"]


def assemble(instructions: Sequence[Instruction]) -> Tuple[bytes, Dict[str, int], Dict[bytes, str]]:
    """
    Two-pass assembly: lay out offsets, then emit bytes.

    Returns:
        (code, labels, names)
    """
    targets = set()
    for instr in instructions:
        if instr.opcode in (OP_IF, OP_IFELSE):
            targets.update(instr.args)

    resolved: List[Instruction] = []
    labels: Dict[str, int] = {}
    names: Dict[bytes, str] = {}
    offset = 0
    for instr in instructions:
        if instr.opcode is None:
            word = instr.args[0]
            if word in targets:
                labels[word] = offset
                continue
            instr = Instruction(OP_VAR, instr.args)
        for n in _names_of(instr):
            names[name_key(n)] = n
        resolved.append(instr)
        offset += _instruction_size(instr)

    if offset > MAX_PROGRAM_SIZE:
        raise UnknownCommand(f"Program too large ({offset} bytes)")

    out = bytearray()
    for instr in resolved:
        out.append(instr.opcode)
        for kind, arg in zip(OPERAND_LAYOUTS.get(instr.opcode, ()), instr.args):
            out += _encode_operand(kind, arg, labels)
    return bytes(out), labels, names


def encode(postfix: Sequence[str]) -> Program:
    """Encode postfix tokens into a Program."""
    tokens = tuple(postfix)
    code, labels, names = assemble(parse_commands(tokens))
    _debug_print(f"[encoder] {len(tokens)} tokens -> {len(code)} bytes")
    return Program(code=code, postfix=tokens, names=names, labels=labels)


# ==========================================
# DECODING
# ==========================================


class ProgramReader:
    """Cursor over program bytes. Reading past the end is a corrupt program."""

    def __init__(self, code: bytes, pos: int = 0):
        self.code = bytes(code)
        self.pos = pos

    def at_end(self) -> bool:
        return self.pos >= len(self.code)

    def read(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.code):
            raise UnknownOpcode(
                f"Truncated operand at offset {self.pos}: need {n} bytes, "
                f"{len(self.code) - self.pos} left"
            )
        chunk = self.code[self.pos:end]
        self.pos = end
        return chunk

    def read_byte(self) -> int:
        return self.read(1)[0]

    def read_uint16(self) -> int:
        return int.from_bytes(self.read(2), "big")

    read_offset = read_uint16

    def read_uint256(self) -> int:
        return int.from_bytes(self.read(32), "big")

    def read_bool(self) -> bool:
        return self.read_byte() != 0

    def read_address(self) -> str:
        return "0x" + self.read(20).hex()

    def read_string(self) -> str:
        size = self.read_uint16()
        try:
            return self.read(size).decode("utf-8")
        except UnicodeDecodeError as e:
            raise UnknownOpcode(f"Malformed string operand: {e}") from None

    def read_name(self) -> bytes:
        return self.read(NAME_KEY_SIZE)

    def read_type(self) -> StackType:
        code = self.read_byte()
        try:
            return StackType(code)
        except ValueError:
            raise UnknownOpcode(f"Unknown type code 0x{code:02x}") from None

    def read_value(self) -> StackValue:
        tag = self.read_type()
        if tag == StackType.UINT256:
            return StackValue.uint(self.read_uint256())
        if tag == StackType.ADDRESS:
            return StackValue.address(self.read_address())
        if tag == StackType.STRING:
            return StackValue.string(self.read_string())
        raise UnknownOpcode(f"Type {tag.name} cannot be an inline value")

    def read_operand(self, kind: str) -> Any:
        return getattr(self, f"read_{kind}")()


def _format_operand(kind: str, value: Any, names: Dict[bytes, str]) -> str:
    if kind == "name":
        label = names.get(value)
        return f"{value.hex()}({label})" if label else value.hex()
    if kind == "type":
        return value.name.lower()
    if kind == "offset":
        return f"@{value:04x}"
    if kind == "bool":
        return "true" if value else "false"
    if kind == "value":
        return repr(value.payload) if value.get_type() == StackType.STRING else str(value.payload)
    if kind == "string":
        return repr(value)
    return str(value)


def disassemble(program: Program) -> List[str]:
    """
    Render a program as one line per instruction:

        0000 uint256 10
        0021 uint256 20
        0042 <=
    """
    reader = ProgramReader(program.code)
    lines = []
    while not reader.at_end():
        offset = reader.pos
        opcode = reader.read_byte()
        mnemonic = MNEMONICS.get(opcode)
        if mnemonic is None:
            raise UnknownOpcode(f"Unknown opcode 0x{opcode:02x} at offset {offset}")
        parts = [f"{offset:04x}", mnemonic]
        for kind in OPERAND_LAYOUTS.get(opcode, ()):
            parts.append(_format_operand(kind, reader.read_operand(kind), program.names))
        lines.append(" ".join(parts))
    return lines
