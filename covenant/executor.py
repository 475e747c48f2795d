"""
executor.py

Fetch/dispatch loop of the Covenant VM.

    while not halted and pc < len(program):
        opcode = program[pc]; pc += 1
        OPCODES[opcode].handler(ctx)

Each executed instruction costs one unit of the instruction budget. The
loop stops at the end of the program or when `end` returns from the
outermost frame. Partial stack mutations are never rolled back.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Optional

from .context_manager import ProgramContext
from .encoder import Program
from .errors import ProgramBudgetExceeded, UnknownOpcode
from .opcodes import OPCODES
from .stack import StackType, StackValue

DEFAULT_INSTRUCTION_BUDGET = 10_000

_DEBUG_ENABLED = os.getenv("COVENANT_DEBUG", "0") == "1"


def _debug_print(*args, **kwargs):
    if _DEBUG_ENABLED:
        print(*args, file=sys.stderr, **kwargs)


def default_budget() -> int:
    """Instruction budget from COVENANT_INSTRUCTION_BUDGET, else the default."""
    raw = os.getenv("COVENANT_INSTRUCTION_BUDGET")
    if not raw:
        return DEFAULT_INSTRUCTION_BUDGET
    try:
        budget = int(raw)
    except ValueError:
        raise ValueError(f"COVENANT_INSTRUCTION_BUDGET must be an integer, got {raw!r}") from None
    if budget <= 0:
        raise ValueError(f"COVENANT_INSTRUCTION_BUDGET must be positive, got {budget}")
    return budget


@dataclass(frozen=True)
class Verdict:
    """
    Outcome of one run.

    value:        top of stack, or None when the stack is empty
    satisfied:    True only for a UINT256 top that is nonzero
    stack_length: stack depth when the program stopped
    steps:        instructions executed
    """
    value: Optional[StackValue]
    satisfied: bool
    stack_length: int
    steps: int = 0

    @property
    def is_empty(self) -> bool:
        return self.value is None

    def to_json(self) -> Optional[dict]:
        return self.value.to_json() if self.value is not None else None


def verdict_of(ctx: ProgramContext) -> Verdict:
    """Read the verdict off the context's stack without popping it."""
    length = ctx.stack.length()
    if length == 0:
        return Verdict(None, False, 0, ctx.steps)
    top = ctx.stack.peek().copy()
    satisfied = top.get_type() == StackType.UINT256 and top.get_uint() != 0
    return Verdict(top, satisfied, length, ctx.steps)


def step(ctx: ProgramContext) -> None:
    """Execute exactly one instruction at ctx.pc."""
    offset = ctx.pc
    opcode = ctx.reader.read_byte()
    entry = OPCODES.get(opcode)
    if entry is None:
        raise UnknownOpcode(f"Unknown opcode 0x{opcode:02x} at offset {offset}")
    entry.handler(ctx)
    if _DEBUG_ENABLED:
        _debug_print(f"[vm] {offset:04x} {entry.mnemonic:<14} depth={ctx.stack.length()}")


def execute(program: Program, context: Optional[ProgramContext] = None, *, budget: Optional[int] = None) -> Verdict:
    """
    Run `program` to completion against `context`.

    Args:
        program: Compiled program.
        context: Per-run context; a fresh empty one when omitted.
        budget: Maximum instructions to execute (default from
            COVENANT_INSTRUCTION_BUDGET or DEFAULT_INSTRUCTION_BUDGET).

    Raises:
        ProgramBudgetExceeded, UnknownOpcode, StackUnderflow, TypeMismatch,
        and array storage errors, straight from the failing instruction.
    """
    ctx = context if context is not None else ProgramContext()
    limit = budget if budget is not None else default_budget()
    ctx.load(program)

    while not ctx.halted and not ctx.reader.at_end():
        if ctx.steps >= limit:
            raise ProgramBudgetExceeded(
                f"Instruction budget of {limit} exhausted at offset {ctx.pc}"
            )
        ctx.steps += 1
        step(ctx)

    return verdict_of(ctx)
