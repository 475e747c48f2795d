import unittest
import sys
import os

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from covenant import AgreementGate, ArrayStorage, ContextManager
from covenant.encoder import Program
from covenant.stack import StackType

ALICE = "0xe7f8a90ede3d84c7c0166bd84a4635e4675accfc"
BOB = "0xf7f8a90ede3d84c7c0166bd84a4635e4675accfc"


class TestEvaluate(unittest.TestCase):

    def setUp(self):
        self.gate = AgreementGate()

    def test_truthy(self):
        result = self.gate.evaluate("(10 <= 20) and (5 == 5)")
        self.assertEqual(result.domain, "truth")
        self.assertIs(result.value, True)
        self.assertTrue(result.permitted)
        self.assertEqual(result.stack_length, 1)
        self.assertIsNone(result.error)

    def test_falsy(self):
        result = self.gate.evaluate("(10 <= 5) or (1 == 2)")
        self.assertEqual(result.domain, "truth")
        self.assertIs(result.value, False)
        self.assertFalse(result.permitted)

    def test_empty_stack_is_undefined(self):
        result = self.gate.evaluate("uint256 5 setUint256 X")
        self.assertEqual(result.domain, "undefined")
        self.assertIsNone(result.value)
        self.assertFalse(result.permitted)
        self.assertEqual(result.variables, {"X": {"type": "uint256", "value": 5}})

    def test_empty_source_is_undefined(self):
        self.assertEqual(self.gate.evaluate("   ").domain, "undefined")

    def test_error_codes(self):
        cases = {
            "a )": "ERR_UNBALANCED_PARENTHESES",
            "( a": "ERR_UNBALANCED_PARENTHESES",
            "==": "ERR_STACK_UNDERFLOW",
            "foo@bar": "ERR_UNKNOWN_COMMAND",
            "bool true if nowhere": "ERR_UNDEFINED_LABEL",
            "string a < string b": "ERR_TYPE_MISMATCH",
            "lengthOf NOPE": "ERR_ARRAY_NOT_DECLARED",
            "declareArr uint256 E get 0 E": "ERR_ARRAY_INDEX",
            "5 / 0": "ERR_DIVISION_BY_ZERO",
            "5 - 6": "ERR_UINT_UNDERFLOW",
            f"{2 ** 256 - 1} + 1": "ERR_UINT_OVERFLOW",
        }
        for source, code in cases.items():
            result = self.gate.evaluate(source)
            self.assertEqual(result.domain, "error", source)
            self.assertTrue(result.error.startswith(code + ":"), (source, result.error))
            self.assertFalse(result.permitted)

    def test_arithmetic(self):
        cm = ContextManager(variables={"amount": 150})
        gate = AgreementGate(context_manager=cm)
        self.assertTrue(gate.evaluate("(amount * 2) >= 300").permitted)
        self.assertTrue(gate.evaluate("amount - 50 == 100").permitted)
        self.assertFalse(gate.evaluate("amount / 4 > 37").permitted)
        self.assertTrue(gate.evaluate("1 + 2 * 3 == 7").permitted)

    def test_non_string_source_is_an_error_result(self):
        result = self.gate.evaluate(123)
        self.assertEqual(result.domain, "error")
        self.assertTrue(result.error.startswith("ERR_RUNTIME_INTERNAL"))
        self.assertIsNone(result.canonical_source)

    def test_string_literals_are_not_unicode_folded(self):
        self.assertFalse(self.gate.evaluate("string \ufb01 == string fi").permitted)
        self.assertTrue(self.gate.evaluate("string \ufb01 == string \ufb01").permitted)

    def test_budget_error(self):
        result = self.gate.evaluate("LOOP bool true if LOOP", budget=50)
        self.assertEqual(result.domain, "error")
        self.assertTrue(result.error.startswith("ERR_BUDGET_EXCEEDED"))

    def test_gate_budget(self):
        gate = AgreementGate(instruction_budget=2)
        self.assertEqual(gate.evaluate("1 == 1").domain, "error")
        self.assertEqual(gate.evaluate("1 == 1", budget=3).domain, "truth")

    def test_invalid_budget(self):
        with self.assertRaises(ValueError):
            AgreementGate(instruction_budget=0)


class TestContext(unittest.TestCase):

    def test_variables(self):
        cm = ContextManager(variables={"amount": 100})
        gate = AgreementGate(context_manager=cm)
        self.assertTrue(gate.evaluate("amount >= 100").permitted)
        cm.set_variable("amount", 50)
        self.assertFalse(gate.evaluate("amount >= 100").permitted)

    def test_environment(self):
        cm = ContextManager(environment={"msg_sender": ALICE, "block_number": 12})
        gate = AgreementGate(context_manager=cm)
        self.assertTrue(gate.evaluate(f"msgSender == address {ALICE}").permitted)
        self.assertFalse(gate.evaluate(f"msgSender == address {BOB}").permitted)
        self.assertTrue(gate.evaluate("(blockNumber > 10) and (blockNumber < 20)").permitted)

    def test_explicit_context(self):
        gate = AgreementGate()
        other = ContextManager(variables={"limit": 3})
        self.assertTrue(gate.evaluate("limit == 3", context=other).permitted)
        self.assertTrue(gate.evaluate("limit == 3", context=other.snapshot()).permitted)
        self.assertFalse(gate.evaluate("limit == 3").permitted)

    def test_bad_context_type(self):
        result = AgreementGate().evaluate("1", context={"limit": 3})
        self.assertEqual(result.domain, "error")
        self.assertTrue(result.error.startswith("ERR_RUNTIME_INTERNAL"))

    def test_writes_do_not_reach_manager(self):
        cm = ContextManager(variables={"x": 1})
        gate = AgreementGate(context_manager=cm)
        result = gate.evaluate("uint256 2 setUint256 x (x == 2)")
        self.assertTrue(result.permitted)
        self.assertEqual(cm.variables["x"]["value"], 1)


class TestProvenance(unittest.TestCase):

    def test_hashes_present_and_stable(self):
        cm = ContextManager(variables={"x": 1})
        gate = AgreementGate(context_manager=cm)
        a = gate.evaluate("x == 1")
        b = gate.evaluate("x  ==  1")
        self.assertEqual(len(a.program_hash), 64)
        self.assertEqual(a.context_hash, cm.snapshot().context_hash)
        self.assertEqual(a.decision_hash, b.decision_hash)
        self.assertEqual(a.canonical_source, "x == 1")

    def test_decision_hash_binds_context(self):
        cm = ContextManager(variables={"x": 1})
        gate = AgreementGate(context_manager=cm)
        first = gate.evaluate("x >= 1")
        cm.set_variable("x", 2)
        second = gate.evaluate("x >= 1")
        self.assertEqual(first.value, second.value)
        self.assertEqual(first.program_hash, second.program_hash)
        self.assertNotEqual(first.decision_hash, second.decision_hash)

    def test_errors_carry_no_decision(self):
        result = AgreementGate().evaluate("a )")
        self.assertIsNone(result.decision_hash)
        self.assertIsNone(result.program_hash)


class TestCompileCache(unittest.TestCase):

    def test_cache_hit_on_canonical_source(self):
        gate = AgreementGate()
        p1 = gate.compile("a == b")
        p2 = gate.compile("  a   ==\n b ")
        self.assertIs(p1, p2)
        self.assertIsInstance(p1, Program)
        self.assertEqual(gate.cache_info()["size"], 1)

    def test_lru_eviction(self):
        gate = AgreementGate(cache_size=2)
        first = gate.compile("1")
        gate.compile("2")
        gate.compile("3")
        self.assertEqual(gate.cache_info(), {"size": 2, "max_size": 2})
        self.assertIsNot(gate.compile("1"), first)

    def test_cache_disabled(self):
        gate = AgreementGate(cache_size=0)
        gate.compile("1")
        self.assertEqual(gate.cache_info()["size"], 0)

    def test_compile_raises(self):
        from covenant.errors import UnbalancedParentheses
        with self.assertRaises(UnbalancedParentheses):
            AgreementGate().compile("a )")

    def test_clear_cache(self):
        gate = AgreementGate()
        gate.compile("1")
        gate.clear_cache()
        self.assertEqual(gate.cache_info()["size"], 0)


class TestGuardedExecution(unittest.TestCase):

    def setUp(self):
        self.calls = []
        self.gate = AgreementGate(
            context_manager=ContextManager(variables={"approved": True}),
        )

    def effect(self):
        self.calls.append(1)
        return "released"

    def test_runs_once(self):
        first = self.gate.execute_guarded("tx-1", "approved == 1", self.effect)
        self.assertTrue(first.executed)
        self.assertEqual(first.effect_result, "released")
        self.assertEqual(first.tx_id, "tx-1")

        second = self.gate.execute_guarded("tx-1", "approved == 1", self.effect)
        self.assertEqual(second.domain, "already_executed")
        self.assertFalse(second.executed)
        self.assertEqual(second.decision_hash, first.decision_hash)
        self.assertEqual(len(self.calls), 1)
        self.assertTrue(self.gate.has_executed("tx-1"))
        self.assertEqual(self.gate.executed_ids(), ["tx-1"])

    def test_distinct_ids_run_separately(self):
        self.gate.execute_guarded("tx-1", "approved == 1", self.effect)
        self.gate.execute_guarded("tx-2", "approved == 1", self.effect)
        self.assertEqual(len(self.calls), 2)

    def test_denied_leaves_id_free(self):
        denied = self.gate.execute_guarded("tx-1", "approved == 0", self.effect)
        self.assertFalse(denied.executed)
        self.assertEqual(denied.domain, "truth")
        self.assertFalse(self.gate.has_executed("tx-1"))

        allowed = self.gate.execute_guarded("tx-1", "approved == 1", self.effect)
        self.assertTrue(allowed.executed)
        self.assertEqual(len(self.calls), 1)

    def test_error_and_undefined_never_execute(self):
        self.assertFalse(self.gate.execute_guarded("a", "a )", self.effect).executed)
        self.assertFalse(self.gate.execute_guarded("b", "uint256 1 setUint256 X", self.effect).executed)
        self.assertEqual(self.calls, [])

    def test_failing_effect_releases_id(self):
        def boom():
            raise RuntimeError("transfer failed")

        with self.assertRaises(RuntimeError):
            self.gate.execute_guarded("tx-1", "approved == 1", boom)
        self.assertFalse(self.gate.has_executed("tx-1"))
        self.assertTrue(self.gate.execute_guarded("tx-1", "approved == 1", self.effect).executed)

    def test_effect_handler(self):
        seen = []
        gate = AgreementGate(effect_handler=seen.append)
        result = gate.execute_guarded("tx-9", "1 == 1")
        self.assertTrue(result.executed)
        self.assertEqual(seen, ["tx-9"])

    def test_missing_effect(self):
        with self.assertRaises(ValueError):
            AgreementGate().execute_guarded("tx-1", "1 == 1")


class TestArraysAcrossEvaluations(unittest.TestCase):

    def test_storage_is_shared_by_the_gate(self):
        storage = ArrayStorage()
        gate = AgreementGate(storage=storage)
        self.assertEqual(gate.evaluate("declareArr uint256 NUMBERS").domain, "undefined")
        gate.evaluate("push 3 NUMBERS")
        gate.evaluate("push 5 NUMBERS")
        self.assertTrue(gate.evaluate("sumOf NUMBERS == 8").permitted)
        self.assertEqual(storage.length("NUMBERS"), 2)

    def test_failed_run_leaves_storage_unchanged(self):
        storage = ArrayStorage()
        storage.declare("FUNDS", StackType.UINT256)
        gate = AgreementGate(storage=storage)

        result = gate.evaluate("push 7 FUNDS string a < string b")
        self.assertEqual(result.domain, "error")
        self.assertTrue(result.error.startswith("ERR_TYPE_MISMATCH:"))
        self.assertEqual(storage.length("FUNDS"), 0)
        self.assertEqual(storage.node_count(), 0)

        self.assertEqual(gate.evaluate("push 7 FUNDS").domain, "undefined")
        result = gate.evaluate("declareArr uint256 FUNDS declareArr bool FRESH 5 / 0")
        self.assertTrue(result.error.startswith("ERR_DIVISION_BY_ZERO:"))
        self.assertEqual([v.get_uint() for v in storage.items("FUNDS")], [7])
        self.assertFalse(storage.get_head("FRESH").is_array)

    def test_run_reads_its_own_staged_writes(self):
        storage = ArrayStorage()
        gate = AgreementGate(storage=storage)
        result = gate.evaluate("declareArr uint256 N push 2 N push 3 N (sumOf N == 5) and (lengthOf N == 2)")
        self.assertTrue(result.permitted)
        self.assertEqual(storage.length("N"), 2)


def test_debug_output(capsys):
    gate = AgreementGate(debug=True)
    result = gate.evaluate("1 == 1")
    assert result.disassembly == ["0000 uint256 1", "0021 uint256 1", "0042 =="]
    assert result.program_context is gate.last_context
    err = capsys.readouterr().err
    assert "[AgreementGate]" in err


def test_non_debug_result_is_lean():
    result = AgreementGate().evaluate("1 == 1")
    assert result.disassembly is None
    assert result.program_context is None


if __name__ == "__main__":
    unittest.main()
