"""
stack.py

Typed stack values and the LIFO stack used by the Covenant VM.

A StackValue is a tagged union: exactly one payload is live at a time and
reading through the wrong accessor raises TypeMismatch. There is no
implicit conversion between tags, ever.
"""

from __future__ import annotations

import re
from enum import IntEnum
from typing import Any, List, Optional

from .errors import StackUnderflow, TypeMismatch

UINT256_MAX = 2 ** 256 - 1

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
ZERO_ADDRESS = "0x" + "0" * 40


class StackType(IntEnum):
    NONE = 0
    UINT256 = 1
    STRING = 2
    ADDRESS = 3
    # Array element type only: an array whose elements name other arrays.
    ARRAY = 4


def normalize_address(value: str) -> str:
    """Validate a 0x-prefixed 20-byte hex address and lowercase it."""
    if not isinstance(value, str) or not _ADDRESS_RE.match(value):
        raise ValueError(f"Malformed address: {value!r}")
    return value.lower()


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


class StackValue:
    """Tagged value holding one of UINT256, STRING or ADDRESS."""

    __slots__ = ("_tag", "_payload")

    def __init__(self):
        self._tag = StackType.NONE
        self._payload: Any = None

    # --- constructors ---

    @classmethod
    def uint(cls, value: int) -> "StackValue":
        sv = cls()
        sv.set_uint(value)
        return sv

    @classmethod
    def string(cls, value: str) -> "StackValue":
        sv = cls()
        sv.set_string(value)
        return sv

    @classmethod
    def address(cls, value: str) -> "StackValue":
        sv = cls()
        sv.set_address(value)
        return sv

    @classmethod
    def from_python(cls, value: Any) -> "StackValue":
        """
        Build a StackValue from a plain Python value.

        bool/int -> UINT256, address-shaped str -> ADDRESS, other str -> STRING.
        """
        if isinstance(value, StackValue):
            return value.copy()
        if isinstance(value, bool):
            return cls.uint(int(value))
        if isinstance(value, int):
            return cls.uint(value)
        if isinstance(value, str):
            if is_address(value):
                return cls.address(value)
            return cls.string(value)
        raise TypeError(f"Cannot convert {type(value).__name__} to StackValue")

    # --- setters (each one replaces the live payload) ---

    def set_uint(self, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"UINT256 payload must be int, got {type(value).__name__}")
        if value < 0 or value > UINT256_MAX:
            raise ValueError(f"UINT256 payload out of range: {value}")
        self._tag = StackType.UINT256
        self._payload = value

    def set_string(self, value: str) -> None:
        if not isinstance(value, str):
            raise ValueError(f"STRING payload must be str, got {type(value).__name__}")
        self._tag = StackType.STRING
        self._payload = value

    def set_address(self, value: str) -> None:
        self._payload = normalize_address(value)
        self._tag = StackType.ADDRESS

    # --- getters ---

    def _expect(self, tag: StackType) -> Any:
        if self._tag != tag:
            raise TypeMismatch(tag, self._tag)
        return self._payload

    def get_uint(self) -> int:
        return self._expect(StackType.UINT256)

    def get_string(self) -> str:
        return self._expect(StackType.STRING)

    def get_address(self) -> str:
        return self._expect(StackType.ADDRESS)

    def get_type(self) -> StackType:
        return self._tag

    get_tag = get_type

    # --- helpers ---

    @property
    def payload(self) -> Any:
        return self._payload

    def copy(self) -> "StackValue":
        sv = StackValue()
        sv._tag = self._tag
        sv._payload = self._payload
        return sv

    def to_json(self) -> dict:
        return {"type": self._tag.name.lower(), "value": self._payload}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StackValue):
            return NotImplemented
        return self._tag == other._tag and self._payload == other._payload

    def __hash__(self) -> int:
        return hash((self._tag, self._payload))

    def __repr__(self) -> str:
        return f"StackValue({self._tag.name}, {self._payload!r})"


class Stack:
    """Strict LIFO sequence of StackValue."""

    def __init__(self, values: Optional[List[StackValue]] = None):
        self._items: List[StackValue] = list(values or [])

    def push(self, value: StackValue) -> None:
        if not isinstance(value, StackValue):
            raise TypeError(f"Stack accepts StackValue, got {type(value).__name__}")
        self._items.append(value)

    def pop(self) -> StackValue:
        if not self._items:
            raise StackUnderflow("pop from empty stack")
        return self._items.pop()

    def peek(self) -> StackValue:
        if not self._items:
            raise StackUnderflow("peek at empty stack")
        return self._items[-1]

    def length(self) -> int:
        return len(self._items)

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> List[StackValue]:
        """Copy of the stack contents, bottom first."""
        return [v.copy() for v in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Stack({self._items!r})"
