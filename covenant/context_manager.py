"""
context_manager.py

Context for Covenant programs
-----------------------------

Two layers:

    ContextManager  : the calling application's state (agreement variables
                      and block/transaction environment), held deep-frozen.
                      snapshot() returns an immutable, hashed view.

    ProgramContext  : one execution. Owns the stack, program counter and
                      return-address stack, reads variables from a snapshot
                      and writes them to its own overlay. Array storage is a
                      handle passed in by the caller.

Hashes:
    context_hash = SHA-256(canonical_json({"variables": ..., "environment": ...}))

Variables written by a program (setUint256 ...) never flow back into the
manager; they are exported on the result so the caller can decide.
"""

from __future__ import annotations

import copy
import hashlib
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional, Union

from .array_storage import ArrayStorage, StagedArrays
from .canonical import canonical_json
from .encoder import Program, ProgramReader, name_key
from .errors import CovenantError
from .stack import Stack, StackValue, ZERO_ADDRESS


# -------------------------------------------------------------------------
# Exceptions
# -------------------------------------------------------------------------


class ContextError(CovenantError):
    """Base class for context-related errors."""

    code = "ERR_CONTEXT"


class BadContextError(ContextError):
    """Raised when variables or environment are malformed."""

    code = "ERR_BAD_CONTEXT"


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------

ENVIRONMENT_DEFAULTS = {
    "msg_sender": ZERO_ADDRESS,
    "block_number": 0,
    "block_timestamp": 0,
    "block_chain_id": 0,
}


def _deep_freeze(obj: Any) -> Any:
    """
    Recursively freeze an object: dict -> MappingProxyType, list -> tuple.
    Primitives are returned unchanged.
    """
    if isinstance(obj, dict):
        return MappingProxyType({k: _deep_freeze(v) for k, v in obj.items()})
    elif isinstance(obj, (list, tuple)):
        return tuple(_deep_freeze(x) for x in obj)
    return obj


def _deep_unfreeze(obj: Any) -> Any:
    if isinstance(obj, MappingProxyType):
        return {k: _deep_unfreeze(v) for k, v in obj.items()}
    elif isinstance(obj, tuple):
        return [_deep_unfreeze(x) for x in obj]
    return obj


def _hash_json(obj: Any) -> str:
    return hashlib.sha256(canonical_json(obj, reject_floats=True).encode("utf-8")).hexdigest()


def _typed_value(name: str, value: Any) -> StackValue:
    """
    Accept a plain value or an explicit {"type": ..., "value": ...} record.

    Explicit records are needed for strings that look like addresses.
    """
    try:
        if isinstance(value, dict):
            if set(value) != {"type", "value"}:
                raise BadContextError(f"Variable {name!r}: expected keys 'type' and 'value'")
            kind = value["type"]
            if kind in ("uint256", "bool"):
                return StackValue.uint(int(value["value"]))
            if kind == "address":
                return StackValue.address(value["value"])
            if kind == "string":
                return StackValue.string(value["value"])
            raise BadContextError(f"Variable {name!r}: unknown type {kind!r}")
        return StackValue.from_python(value)
    except (TypeError, ValueError) as e:
        raise BadContextError(f"Variable {name!r}: {e}") from None


def _normalize_variables(variables: Optional[Dict[str, Any]]) -> Dict[str, dict]:
    if variables is None:
        return {}
    if not isinstance(variables, dict):
        raise BadContextError("variables must be a dict")
    out = {}
    for name, value in variables.items():
        if not isinstance(name, str) or not name:
            raise BadContextError(f"Variable names must be non-empty strings, got {name!r}")
        out[name] = _typed_value(name, value).to_json()
    return out


def _normalize_environment(environment: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    env = dict(ENVIRONMENT_DEFAULTS)
    if environment is None:
        return env
    if not isinstance(environment, dict):
        raise BadContextError("environment must be a dict")
    unknown = set(environment) - set(ENVIRONMENT_DEFAULTS)
    if unknown:
        raise BadContextError(f"Unknown environment keys: {sorted(unknown)}")
    for key, value in environment.items():
        try:
            if key == "msg_sender":
                env[key] = StackValue.address(value).get_address()
            else:
                env[key] = StackValue.uint(value).get_uint()
        except ValueError as e:
            raise BadContextError(f"Environment {key!r}: {e}") from None
    return env


def _value_from_json(record: Dict[str, Any]) -> StackValue:
    kind = record["type"]
    if kind == "uint256":
        return StackValue.uint(record["value"])
    if kind == "address":
        return StackValue.address(record["value"])
    return StackValue.string(record["value"])


# -------------------------------------------------------------------------
# Snapshot
# -------------------------------------------------------------------------


@dataclass(frozen=True)
class ContextSnapshot:
    """
    Immutable view of the application state one program runs against.

    variables:   name -> {"type": ..., "value": ...}
    environment: msg_sender, block_number, block_timestamp, block_chain_id
    """
    variables: Dict[str, Dict[str, Any]]
    environment: Dict[str, Any]
    context_hash: str
    timestamp_ms: int


# -------------------------------------------------------------------------
# Context Manager
# -------------------------------------------------------------------------


class ContextManager:
    """
    Holds agreement variables and environment for an AgreementGate.

        cm = ContextManager(variables={"amount": 100},
                            environment={"block_number": 12})
        snap = cm.snapshot()
        cm.set_variable("amount", 150)
        cm.update_environment({"block_number": 13})

    State is frozen internally; snapshots hand out fresh plain dicts.
    """

    def __init__(
        self,
        variables: Optional[Dict[str, Any]] = None,
        environment: Optional[Dict[str, Any]] = None,
        *,
        time_fn: Callable[[], float] = time.time,
    ):
        self._lock = threading.RLock()
        self._time_fn = time_fn
        self._variables = _deep_freeze(_normalize_variables(variables))
        self._environment = _deep_freeze(_normalize_environment(environment))

    def _now_ms(self) -> int:
        return int(self._time_fn() * 1000)

    @property
    def variables(self) -> Dict[str, Any]:
        return _deep_unfreeze(self._variables)

    @property
    def environment(self) -> Dict[str, Any]:
        return _deep_unfreeze(self._environment)

    def snapshot(self) -> ContextSnapshot:
        with self._lock:
            variables = _deep_unfreeze(self._variables)
            environment = _deep_unfreeze(self._environment)
        context_hash = _hash_json({"variables": variables, "environment": environment})
        return ContextSnapshot(
            variables=variables,
            environment=environment,
            context_hash=context_hash,
            timestamp_ms=self._now_ms(),
        )

    def set_variable(self, name: str, value: Any) -> None:
        """Create or replace one variable."""
        record = _normalize_variables({name: value})
        with self._lock:
            merged = _deep_unfreeze(self._variables)
            merged.update(record)
            self._variables = _deep_freeze(merged)

    def replace_variables(self, variables: Dict[str, Any]) -> None:
        normalized = _normalize_variables(variables)
        with self._lock:
            self._variables = _deep_freeze(normalized)

    def update_environment(self, delta: Dict[str, Any]) -> None:
        if not isinstance(delta, dict):
            raise BadContextError("update_environment expects a dict delta")
        with self._lock:
            current = _deep_unfreeze(self._environment)
            current.update(delta)
            self._environment = _deep_freeze(_normalize_environment(current))


# -------------------------------------------------------------------------
# Program Context
# -------------------------------------------------------------------------


class ProgramContext:
    """
    State of a single program execution.

    Not shared between threads: create one per run. The ArrayStorage handle
    may be shared; it does its own locking. The gate passes a StagedArrays
    view instead, so a failed run writes nothing.
    """

    def __init__(
        self,
        *,
        variables: Optional[Dict[str, Dict[str, Any]]] = None,
        environment: Optional[Dict[str, Any]] = None,
        storage: Union[ArrayStorage, StagedArrays, None] = None,
        context_hash: str = "",
    ):
        self.stack = Stack()
        self.storage = storage if storage is not None else ArrayStorage()
        self.environment = _normalize_environment(environment)
        self.context_hash = context_hash
        self.program: Optional[Program] = None
        self.reader = ProgramReader(b"")
        self.returns: List[int] = []
        self.halted = False
        self.steps = 0

        self._names: Dict[bytes, str] = {}
        self._variables: Dict[bytes, StackValue] = {}
        for var_name, record in (variables or {}).items():
            key = name_key(var_name)
            self._names[key] = var_name
            self._variables[key] = _value_from_json(record)
        self._written: Dict[bytes, StackValue] = {}

    @classmethod
    def from_snapshot(
        cls, snapshot: ContextSnapshot, storage: Union[ArrayStorage, StagedArrays, None] = None
    ) -> "ProgramContext":
        return cls(
            variables=copy.deepcopy(snapshot.variables),
            environment=snapshot.environment,
            storage=storage,
            context_hash=snapshot.context_hash,
        )

    def load(self, program: Program) -> None:
        """Point the context at `program` and reset control state (not the stack)."""
        self.program = program
        self.reader = ProgramReader(program.code)
        self.returns = []
        self.halted = False
        self.steps = 0
        self._names.update(program.names)

    # --- control state ---

    @property
    def pc(self) -> int:
        return self.reader.pos

    @pc.setter
    def pc(self, value: int) -> None:
        self.reader.pos = value

    def halt(self) -> None:
        self.halted = True

    # --- names and variables ---

    def name_for(self, key: bytes) -> str:
        """Readable name for a 4-byte key; hex when the name is unknown."""
        return self._names.get(key, "0x" + key.hex())

    def load_variable(self, key: bytes) -> StackValue:
        """Variable value; unset variables read as uint 0 like empty storage."""
        if key in self._written:
            return self._written[key].copy()
        if key in self._variables:
            return self._variables[key].copy()
        return StackValue.uint(0)

    def store_variable(self, key: bytes, value: StackValue) -> None:
        self._written[key] = value.copy()

    def exported_variables(self) -> Dict[str, Dict[str, Any]]:
        """Variables written during this run, as JSON records."""
        return {self.name_for(k): v.to_json() for k, v in self._written.items()}

    # --- environment ---

    def environment_value(self, key: str) -> StackValue:
        value = self.environment[key]
        if key == "msg_sender":
            return StackValue.address(value)
        return StackValue.uint(value)

    def __repr__(self) -> str:
        return (
            f"ProgramContext(pc={self.pc}, steps={self.steps}, "
            f"stack={self.stack.length()}, halted={self.halted})"
        )


__all__ = [
    "ContextError",
    "BadContextError",
    "ContextSnapshot",
    "ContextManager",
    "ProgramContext",
    "ENVIRONMENT_DEFAULTS",
]
