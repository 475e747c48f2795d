#!/usr/bin/env python3
"""
Covenant Latency Benchmark

Measures gate evaluation time ONLY.

INCLUDED:
  - Source canonicalization and compile cache lookup
  - Context snapshot and context hash
  - VM execution
  - Decision hash computation

EXCLUDED:
  - I/O (file, network)
  - Guarded effects
  - First compile of each condition (warmed up before timing)
"""

import time
import statistics
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from covenant import AgreementGate, ContextManager

BUYER = "0x" + "b1" * 20
SELLER = "0x" + "5e" * 20


def benchmark(gate: AgreementGate, source: str, iterations: int = 1000) -> dict:
    """Benchmark a single condition against the gate's context."""
    gate.evaluate(source)
    times_us = []

    for _ in range(iterations):
        start = time.perf_counter_ns()
        result = gate.evaluate(source)
        end = time.perf_counter_ns()
        times_us.append((end - start) / 1000)  # ns → µs

    return {
        "iterations": iterations,
        "domain": result.domain,
        "steps": result.steps,
        "mean_us": statistics.mean(times_us),
        "median_us": statistics.median(times_us),
        "stdev_us": statistics.stdev(times_us) if len(times_us) > 1 else 0,
        "min_us": min(times_us),
        "max_us": max(times_us),
        "p95_us": sorted(times_us)[int(iterations * 0.95)],
        "p99_us": sorted(times_us)[int(iterations * 0.99)],
    }


def compile_benchmark(source: str, iterations: int = 200) -> float:
    """Mean cold compile time in µs (cache disabled)."""
    gate = AgreementGate(cache_size=0)
    start = time.perf_counter_ns()
    for _ in range(iterations):
        gate.compile(source)
    return (time.perf_counter_ns() - start) / 1000 / iterations


def main():
    print("=" * 70)
    print("COVENANT LATENCY BENCHMARK")
    print("=" * 70)
    print()
    print("INCLUDED: Snapshot, context hash, execution, decision hash")
    print("EXCLUDED: I/O, guarded effects, cold compile")
    print()

    cm = ContextManager(
        variables={"amount": 1500, "limit": 1000, "buyer": BUYER, "seller": SELLER},
        environment={"msg_sender": BUYER, "block_number": 19_000_000, "block_timestamp": 1_700_000_000},
    )
    gate = AgreementGate(context_manager=cm)
    gate.evaluate("declareArr uint256 DEPOSITS")
    for amount in (100, 250, 400):
        gate.evaluate(f"push {amount} DEPOSITS")

    cases = [
        ("Single comparison", "amount > limit"),
        ("Conjunction", "(amount > limit) and (blockNumber >= 18000000)"),
        ("Sender check", f"(msgSender == address {BUYER}) or (msgSender == address {SELLER})"),
        ("Array aggregate", "(sumOf DEPOSITS == 750) and (lengthOf DEPOSITS == 3)"),
        ("Branching", "bool true ifelse OK NO end OK uint256 1 end NO uint256 0 end"),
    ]

    iterations = 1000
    print(f"Iterations per case: {iterations}")
    print()

    for name, source in cases:
        print(f"Condition: {source[:50]}{'...' if len(source) > 50 else ''}")
        stats = benchmark(gate, source, iterations)
        print(f"  {name} ({stats['domain']}, {stats['steps']} steps)")
        print(f"  Mean:   {stats['mean_us']:>7.1f} µs")
        print(f"  Median: {stats['median_us']:>7.1f} µs")
        print(f"  P95:    {stats['p95_us']:>7.1f} µs")
        print(f"  P99:    {stats['p99_us']:>7.1f} µs")
        print(f"  Max:    {stats['max_us']:>7.1f} µs")
        print(f"  Cold compile: {compile_benchmark(source):>7.1f} µs")
        print()

    print("=" * 70)
    print("SUMMARY")
    print("=" * 70)
    print()
    print("Note: First call of a condition pays the parse; later calls hit the")
    print("      compile cache. Production gates should warm up on startup.")


if __name__ == "__main__":
    main()
