import unittest

import pytest

from covenant.errors import StackUnderflow, TypeMismatch
from covenant.stack import (
    Stack,
    StackType,
    StackValue,
    UINT256_MAX,
    ZERO_ADDRESS,
    normalize_address,
)

ALICE = "0xE7f8A90EDE3d84c7C0166bD84A4635E4675AcCfc"


class TestStackValue(unittest.TestCase):

    def test_uint_roundtrip(self):
        sv = StackValue()
        self.assertEqual(sv.get_type(), StackType.NONE)
        sv.set_uint(100)
        self.assertEqual(sv.get_uint(), 100)
        self.assertEqual(sv.get_type(), StackType.UINT256)
        self.assertEqual(sv.get_tag(), StackType.UINT256)

    def test_wrong_getter_raises(self):
        sv = StackValue.uint(1)
        with self.assertRaises(TypeMismatch) as cm:
            sv.get_string()
        self.assertEqual(cm.exception.expected, StackType.STRING)
        self.assertEqual(cm.exception.actual, StackType.UINT256)
        with self.assertRaises(TypeMismatch):
            sv.get_address()
        with self.assertRaises(TypeMismatch):
            StackValue.string("1").get_uint()
        with self.assertRaises(TypeMismatch):
            StackValue().get_uint()

    def test_setter_replaces_payload(self):
        sv = StackValue.uint(7)
        sv.set_string("seven")
        self.assertEqual(sv.get_type(), StackType.STRING)
        with self.assertRaises(TypeMismatch):
            sv.get_uint()

    def test_uint_bounds(self):
        self.assertEqual(StackValue.uint(UINT256_MAX).get_uint(), UINT256_MAX)
        with self.assertRaises(ValueError):
            StackValue.uint(UINT256_MAX + 1)
        with self.assertRaises(ValueError):
            StackValue.uint(-1)
        with self.assertRaises(ValueError):
            StackValue.uint(True)

    def test_address_normalized(self):
        sv = StackValue.address(ALICE)
        self.assertEqual(sv.get_address(), ALICE.lower())
        self.assertEqual(sv, StackValue.address(ALICE.lower()))
        with self.assertRaises(ValueError):
            StackValue.address("0x1234")
        with self.assertRaises(ValueError):
            normalize_address("e7f8a90ede3d84c7c0166bd84a4635e4675accfc")

    def test_from_python(self):
        self.assertEqual(StackValue.from_python(True), StackValue.uint(1))
        self.assertEqual(StackValue.from_python(5), StackValue.uint(5))
        self.assertEqual(StackValue.from_python(ALICE).get_type(), StackType.ADDRESS)
        self.assertEqual(StackValue.from_python("hello").get_type(), StackType.STRING)
        with self.assertRaises(TypeError):
            StackValue.from_python(1.5)

    def test_equality_needs_same_tag(self):
        self.assertNotEqual(StackValue.uint(0), StackValue.string("0"))
        self.assertEqual(StackValue.string("a"), StackValue.string("a"))

    def test_to_json(self):
        self.assertEqual(StackValue.uint(3).to_json(), {"type": "uint256", "value": 3})
        self.assertEqual(
            StackValue.address(ZERO_ADDRESS).to_json(),
            {"type": "address", "value": ZERO_ADDRESS},
        )


class TestStack(unittest.TestCase):

    def test_lifo(self):
        stack = Stack()
        stack.push(StackValue.uint(1))
        stack.push(StackValue.uint(2))
        self.assertEqual(stack.length(), 2)
        self.assertEqual(stack.peek().get_uint(), 2)
        self.assertEqual(stack.pop().get_uint(), 2)
        self.assertEqual(stack.pop().get_uint(), 1)
        self.assertEqual(len(stack), 0)

    def test_empty_stack_errors(self):
        stack = Stack()
        with self.assertRaises(StackUnderflow):
            stack.pop()
        with self.assertRaises(StackUnderflow):
            stack.peek()

    def test_zero_value_is_not_empty(self):
        stack = Stack()
        stack.push(StackValue.uint(0))
        self.assertEqual(stack.length(), 1)

    def test_clear(self):
        stack = Stack([StackValue.uint(1), StackValue.uint(2)])
        stack.clear()
        self.assertEqual(stack.length(), 0)

    def test_snapshot_is_a_copy(self):
        stack = Stack([StackValue.uint(1)])
        snap = stack.snapshot()
        snap[0].set_uint(9)
        self.assertEqual(stack.peek().get_uint(), 1)


def test_push_rejects_plain_values():
    with pytest.raises(TypeError):
        Stack().push(5)


if __name__ == "__main__":
    unittest.main()
