"""
Covenant Runtime - condition DSL and stack VM for gating agreement transactions.

v1.0 Public API:
- AgreementGate: Canonical entrypoint (compile, evaluate, execute_guarded)
- ContextManager: Agreement variables and environment with context hashing
- ArrayStorage: Named, typed array storage shared by a gate's programs
- to_postfix / encode / execute / disassemble: Pipeline stages
"""

from .gate import AgreementGate, GateResult
from .context_manager import ContextManager, ContextSnapshot, ProgramContext
from .array_storage import ArrayStorage, StagedArrays
from .converter import convert, to_postfix
from .tokenize import tokenize
from .encoder import Program, encode, disassemble
from .executor import DEFAULT_INSTRUCTION_BUDGET, Verdict, execute
from .stack import Stack, StackType, StackValue
from .errors import CovenantError

# Derive version from package metadata
try:
    from importlib.metadata import version
    __version__ = version("covenant-runtime")
except Exception:
    __version__ = "1.0.0"

__all__ = [
    "AgreementGate",
    "GateResult",
    "ContextManager",
    "ContextSnapshot",
    "ProgramContext",
    "ArrayStorage",
    "StagedArrays",
    "tokenize",
    "convert",
    "to_postfix",
    "Program",
    "encode",
    "disassemble",
    "execute",
    "Verdict",
    "DEFAULT_INSTRUCTION_BUDGET",
    "Stack",
    "StackType",
    "StackValue",
    "CovenantError",
]
