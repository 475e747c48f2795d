import unittest
import threading
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from covenant import AgreementGate, ContextManager


def run_threads(target, count=20):
    threads = [threading.Thread(target=target) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


class TestGateConcurrency(unittest.TestCase):
    """
    Verify thread safety of the AgreementGate: the compile cache, the
    shared parser and the execution ledger.
    """

    def setUp(self):
        self.gate = AgreementGate(
            context_manager=ContextManager(
                variables={"amount": 150, "limit": 100},
                environment={"block_number": 12},
            )
        )

    def test_concurrent_evaluation(self):
        source = "(amount > limit) and (blockNumber >= 10)"
        exceptions = []
        results = []

        def runner():
            try:
                results.append(self.gate.evaluate(source))
            except Exception as e:
                exceptions.append(e)

        run_threads(runner)

        self.assertEqual(len(exceptions), 0, f"Exceptions occurred: {exceptions}")
        self.assertEqual(len(results), 20)
        first_hash = results[0].decision_hash
        self.assertIsNotNone(first_hash)
        for r in results:
            self.assertTrue(r.permitted, r.error)
            self.assertEqual(r.decision_hash, first_hash,
                             "Concurrent evaluation produced different decision hashes!")

    def test_concurrent_distinct_sources(self):
        errors = []
        counter = iter(range(1000))
        lock = threading.Lock()

        def runner():
            with lock:
                n = next(counter)
            result = self.gate.evaluate(f"uint256 {n} == uint256 {n}")
            if not result.permitted:
                errors.append(result)

        run_threads(runner, count=30)
        self.assertEqual(errors, [])
        self.assertEqual(self.gate.cache_info()["size"], 30)

    def test_effect_runs_once_per_tx(self):
        calls = []
        calls_lock = threading.Lock()
        results = []

        def effect():
            with calls_lock:
                calls.append(1)
            return "released"

        def runner():
            results.append(self.gate.execute_guarded("escrow-7", "amount > limit", effect))

        run_threads(runner)

        self.assertEqual(len(calls), 1)
        executed = [r for r in results if r.executed]
        self.assertEqual(len(executed), 1)
        self.assertEqual(
            sum(1 for r in results if r.domain == "already_executed"), 19
        )

    def test_concurrent_context_updates(self):
        cm = ContextManager(variables={"amount": 0})
        gate = AgreementGate(context_manager=cm)
        results = []

        def writer():
            for i in range(50):
                cm.set_variable("amount", i)

        def reader():
            for _ in range(50):
                results.append(gate.evaluate("amount < 50"))

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(results), 200)
        self.assertTrue(all(r.permitted for r in results))


if __name__ == "__main__":
    unittest.main()
