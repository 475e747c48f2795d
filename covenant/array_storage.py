"""
array_storage.py

Named, typed array storage for Covenant programs.

Each name owns one head record (ArraySlot) describing the array's shape
and pointing at its first element. Elements are linked nodes addressed by
opaque 4-byte pointers; every element operation consults the head record
first.

Thread safety:
    Writes are serialized per name. Locks are created lazily under a
    registry lock, and only for names that hold (or are about to hold) a
    head record, so two executions touching different arrays never contend
    with each other.

Staging:
    StagedArrays is the per-run view handed to a ProgramContext by the gate.
    It records declareArr/push locally and applies them to the shared
    ArrayStorage in one step (ArrayStorage.apply) only after the program
    finished without an error. A failed run leaves the storage untouched.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from .errors import (
    ArrayIndexOutOfRange,
    ArrayNotDeclared,
    TypeMismatch,
    UintOverflow,
)
from .stack import StackType, StackValue, UINT256_MAX

POINTER_SIZE = 4
NULL_POINTER = b"\x00" * POINTER_SIZE


class ArraySlot(NamedTuple):
    """Head record of one named array."""
    is_array: bool
    element_type: int
    head: bytes


ZERO_SLOT = ArraySlot(False, 0, NULL_POINTER)

# ("declare", name, element_type) | ("push", name, StackValue)
ArrayOp = Tuple[str, str, object]


@dataclass(frozen=True)
class _Node:
    value: StackValue
    next: bytes


def _check_pointer(ptr: bytes) -> bytes:
    if not isinstance(ptr, (bytes, bytearray)) or len(ptr) != POINTER_SIZE:
        raise ValueError(f"Array pointer must be {POINTER_SIZE} bytes, got {ptr!r}")
    return bytes(ptr)


def _check_element(element_type: int, value: StackValue) -> None:
    actual = value.get_type()
    if element_type == StackType.ARRAY:
        # Arrays of arrays hold the names of the nested arrays.
        if actual != StackType.STRING:
            raise TypeMismatch(StackType.STRING, actual)
    elif actual != element_type:
        raise TypeMismatch(element_type, actual)


def _index(name: str, items: Sequence[StackValue], index: int) -> StackValue:
    if index < 0 or index >= len(items):
        raise ArrayIndexOutOfRange(
            f"Index {index} out of range for {name!r} (length {len(items)})"
        )
    return items[index].copy()


def _sum(name: str, slot: ArraySlot, items: Sequence[StackValue]) -> int:
    if slot.element_type != StackType.UINT256:
        raise TypeMismatch(StackType.UINT256, slot.element_type)
    total = sum(v.get_uint() for v in items)
    if total > UINT256_MAX:
        raise UintOverflow(f"sumOf {name!r} overflows uint256")
    return total


class ArrayStorage:
    """
    Keyed store of array head records and their element nodes.

    A single instance is shared by every ProgramContext bound to the same
    agreement; it is passed in explicitly, never reached through module
    state.
    """

    def __init__(self):
        self._slots: Dict[str, ArraySlot] = {}
        self._nodes: Dict[bytes, _Node] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._next_pointer = 1

    def _lock_for(self, name: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    def _allocate(self) -> bytes:
        with self._registry_lock:
            ptr = self._next_pointer.to_bytes(POINTER_SIZE, "big")
            self._next_pointer += 1
        return ptr

    # ------------------------------------------------------------------
    # Head records
    # ------------------------------------------------------------------

    def _replace_head(self, name: str, slot: ArraySlot) -> None:
        """Install `slot` and free the nodes only the old head reached. Caller holds the name lock."""
        old = self._slots.get(name)
        self._slots[name] = slot
        if old is None or old.head == slot.head:
            return
        keep = set(self._walk(slot.head))
        for ptr in self._walk(old.head):
            if ptr not in keep:
                self._nodes.pop(ptr, None)

    def set_head(self, name: str, is_array: bool, element_type: int, head: bytes) -> None:
        """Create or fully replace the head record for `name`."""
        slot = ArraySlot(bool(is_array), int(element_type), _check_pointer(head))
        with self._lock_for(name):
            self._replace_head(name, slot)

    def get_head(self, name: str) -> ArraySlot:
        """Head record for `name`; the zero slot if it was never written."""
        return self._slots.get(name, ZERO_SLOT)

    # ------------------------------------------------------------------
    # Element operations
    # ------------------------------------------------------------------

    def declare(self, name: str, element_type: int) -> None:
        """Declare an empty array of `element_type` (replaces any previous one)."""
        self.set_head(name, True, element_type, NULL_POINTER)

    def _require_array(self, name: str) -> ArraySlot:
        slot = self.get_head(name)
        if not slot.is_array:
            raise ArrayNotDeclared(f"Array {name!r} is not declared")
        return slot

    def _walk(self, head: bytes) -> List[bytes]:
        pointers = []
        ptr = head
        while ptr != NULL_POINTER:
            node = self._nodes.get(ptr)
            if node is None:
                # Dangling head written through set_head: treat as end.
                break
            pointers.append(ptr)
            ptr = node.next
        return pointers

    def _append(self, name: str, slot: ArraySlot, value: StackValue) -> int:
        """Link `value` after the last node. Caller holds the name lock and has type-checked."""
        ptr = self._allocate()
        self._nodes[ptr] = _Node(value.copy(), NULL_POINTER)

        chain = self._walk(slot.head)
        if not chain:
            self._slots[name] = slot._replace(head=ptr)
        else:
            tail = chain[-1]
            self._nodes[tail] = _Node(self._nodes[tail].value, ptr)
        return len(chain) + 1

    def push(self, name: str, value: StackValue) -> int:
        """
        Append `value` to the array and return the new length.

        Raises:
            ArrayNotDeclared: no array head for `name`.
            TypeMismatch: value tag differs from the declared element type.
        """
        self._require_array(name)
        with self._lock_for(name):
            slot = self._require_array(name)
            _check_element(slot.element_type, value)
            return self._append(name, slot, value)

    def apply(self, ops: Sequence[ArrayOp]) -> None:
        """
        Apply a batch of declare/push operations all-or-nothing.

        Every name the batch touches is locked (in sorted order) for the
        whole batch, and the batch is type-checked against the current
        head records before anything is written.
        """
        if not ops:
            return
        self._check_batch(ops)
        locks = [self._lock_for(n) for n in sorted({op[1] for op in ops})]
        for lock in locks:
            lock.acquire()
        try:
            self._check_batch(ops)
            for kind, name, arg in ops:
                if kind == "declare":
                    self._replace_head(name, ArraySlot(True, int(arg), NULL_POINTER))
                else:
                    self._append(name, self._slots[name], arg)
        finally:
            for lock in reversed(locks):
                lock.release()

    def _check_batch(self, ops: Sequence[ArrayOp]) -> None:
        element_types: Dict[str, int] = {}
        for kind, name, arg in ops:
            if kind == "declare":
                element_types[name] = int(arg)
            elif kind == "push":
                if name not in element_types:
                    element_types[name] = self._require_array(name).element_type
                _check_element(element_types[name], arg)
            else:
                raise ValueError(f"Unknown array operation: {kind!r}")

    def items(self, name: str) -> List[StackValue]:
        slot = self._require_array(name)
        return [self._nodes[p].value.copy() for p in self._walk(slot.head)]

    def length(self, name: str) -> int:
        slot = self._require_array(name)
        return len(self._walk(slot.head))

    def get(self, name: str, index: int) -> StackValue:
        return _index(name, self.items(name), index)

    def sum_of(self, name: str) -> int:
        slot = self._require_array(name)
        return _sum(name, slot, self.items(name))

    def names(self) -> List[str]:
        return sorted(self._slots)

    def node_count(self) -> int:
        """Element nodes currently held (all arrays)."""
        return len(self._nodes)

    def export(self, name: Optional[str] = None) -> Dict[str, dict]:
        """JSON-friendly view of one or all arrays (for diagnostics)."""
        selected = [name] if name is not None else self.names()
        out = {}
        for n in selected:
            slot = self.get_head(n)
            entry = {
                "is_array": slot.is_array,
                "element_type": slot.element_type,
                "head": slot.head.hex(),
            }
            if slot.is_array:
                entry["items"] = [v.to_json() for v in self.items(n)]
            out[n] = entry
        return out


class StagedArrays:
    """
    Copy-on-write view of an ArrayStorage for one program run.

    Reads see the shared storage plus this run's own writes. Writes are
    recorded and reach the shared storage only through commit().
    """

    def __init__(self, base: ArrayStorage):
        self.base = base
        self._local: Dict[str, Tuple[ArraySlot, List[StackValue]]] = {}
        self._ops: List[ArrayOp] = []

    def _view(self, name: str) -> Tuple[ArraySlot, List[StackValue]]:
        if name not in self._local:
            slot = self.base.get_head(name)
            items = self.base.items(name) if slot.is_array else []
            self._local[name] = (slot, items)
        return self._local[name]

    def _require_array(self, name: str) -> Tuple[ArraySlot, List[StackValue]]:
        slot, items = self._view(name)
        if not slot.is_array:
            raise ArrayNotDeclared(f"Array {name!r} is not declared")
        return slot, items

    def get_head(self, name: str) -> ArraySlot:
        return self._view(name)[0]

    def declare(self, name: str, element_type: int) -> None:
        self._local[name] = (ArraySlot(True, int(element_type), NULL_POINTER), [])
        self._ops.append(("declare", name, int(element_type)))

    def push(self, name: str, value: StackValue) -> int:
        slot, items = self._require_array(name)
        _check_element(slot.element_type, value)
        items.append(value.copy())
        self._ops.append(("push", name, value.copy()))
        return len(items)

    def items(self, name: str) -> List[StackValue]:
        return [v.copy() for v in self._require_array(name)[1]]

    def length(self, name: str) -> int:
        return len(self._require_array(name)[1])

    def get(self, name: str, index: int) -> StackValue:
        return _index(name, self._require_array(name)[1], index)

    def sum_of(self, name: str) -> int:
        slot, items = self._require_array(name)
        return _sum(name, slot, items)

    @property
    def pending(self) -> List[ArrayOp]:
        return list(self._ops)

    def commit(self) -> None:
        """Apply this run's writes to the shared storage, all-or-nothing."""
        ops, self._ops = self._ops, []
        self.base.apply(ops)

    def discard(self) -> None:
        self._ops = []
        self._local.clear()
