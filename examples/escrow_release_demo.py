"""
escrow_release_demo.py - Escrow Release Simulation

Demonstrates Covenant's gated, exactly-once transaction release in a
simulated escrow settlement loop.

Validates:
- Typed comparisons: amounts, addresses and block heights
- Undefined verdicts: a condition that leaves no value never releases funds
- Exactly-once effects: a replayed transaction id is refused
- Provenance: SHA-256 decision hashes for audit trails

Each tick updates the environment (block height, sender), then asks the gate
to release the escrow for a transaction id. Decisions are appended to a JSONL
audit log and checked against a golden verdict vector.
"""

import os
import json
import shutil
import sys
from datetime import datetime, timezone

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from covenant import AgreementGate, ContextManager

# ==========================================
# CONFIGURATION
# ==========================================
LOG_DIR = "escrow_logs"
LOG_FILE = os.path.join(LOG_DIR, "decision_log.jsonl")

BUYER = "0x" + "b1" * 20
SELLER = "0x" + "5e" * 20
ARBITER = "0x" + "a7" * 20

RELEASE_CONDITION = (
    "(blockNumber >= unlock_block) and "
    "((msgSender == buyer) or (msgSender == address " + ARBITER + "))"
)

# ==========================================
# SCENARIOS
# ==========================================
SCENARIOS = [
    {
        "tick": 1,
        "name": "TOO_EARLY",
        "desc": "Buyer asks for release before the unlock block.",
        "env": {"block_number": 90, "msg_sender": BUYER},
        "tx_id": "release-1",
        "condition": RELEASE_CONDITION,
    },
    {
        "tick": 2,
        "name": "WRONG_SENDER",
        "desc": "Seller asks for release after unlock; only buyer or arbiter may.",
        "env": {"block_number": 120, "msg_sender": SELLER},
        "tx_id": "release-1",
        "condition": RELEASE_CONDITION,
    },
    {
        "tick": 3,
        "name": "BUYER_RELEASE",
        "desc": "Buyer releases after unlock. Funds move.",
        "env": {"block_number": 121, "msg_sender": BUYER},
        "tx_id": "release-1",
        "condition": RELEASE_CONDITION,
    },
    {
        "tick": 4,
        "name": "REPLAY",
        "desc": "Arbiter replays the same transaction id.",
        "env": {"block_number": 122, "msg_sender": ARBITER},
        "tx_id": "release-1",
        "condition": RELEASE_CONDITION,
    },
    {
        "tick": 5,
        "name": "NO_VERDICT",
        "desc": "A condition that only stores a value leaves the stack empty.",
        "env": {"block_number": 123, "msg_sender": ARBITER},
        "tx_id": "release-2",
        "condition": "uint256 1 setUint256 approved",
    },
    {
        "tick": 6,
        "name": "MALFORMED",
        "desc": "Unbalanced condition text is rejected before execution.",
        "env": {"block_number": 124, "msg_sender": ARBITER},
        "tx_id": "release-2",
        "condition": "(blockNumber >= unlock_block",
    },
    {
        "tick": 7,
        "name": "ARBITER_RELEASE",
        "desc": "Arbiter releases the second tranche.",
        "env": {"block_number": 125, "msg_sender": ARBITER},
        "tx_id": "release-2",
        "condition": RELEASE_CONDITION,
    },
]


def setup_logs():
    if os.path.exists(LOG_DIR):
        shutil.rmtree(LOG_DIR)
    os.makedirs(LOG_DIR)
    print(f"[*] Initialized log directory: {LOG_DIR}")


def write_audit_record(record):
    with open(LOG_FILE, "a", encoding="utf-8") as f:
        f.write(json.dumps(record) + "\n")


def run_escrow_loop():
    cm = ContextManager(
        variables={"unlock_block": 100, "buyer": BUYER, "seller": SELLER},
    )
    gate = AgreementGate(context_manager=cm)
    released = []

    def release(tx_id):
        released.append(tx_id)
        return {"transfer_to": SELLER, "tx_id": tx_id}

    print("[*] Starting Escrow Release Simulation")
    print(f"    Condition: {RELEASE_CONDITION}")

    actual_verdicts = {}
    for scenario in SCENARIOS:
        tick = scenario["tick"]
        print(f"\n--- TICK {tick}: {scenario['name']} ---")
        print(f"    Desc: {scenario['desc']}")

        cm.update_environment(scenario["env"])
        result = gate.execute_guarded(
            scenario["tx_id"],
            scenario["condition"],
            lambda tx=scenario["tx_id"]: release(tx),
        )

        if result.executed:
            verdict = "RELEASED"
        elif result.domain == "error":
            verdict = "BLOCKED:" + result.error.split(":", 1)[0]
        else:
            verdict = f"BLOCKED:{result.domain}"

        color = "\033[92m" if result.executed else "\033[91m"  # Green/Red
        reset = "\033[0m"
        print(f"    Verdict: {color}{verdict}{reset}")
        if result.decision_hash:
            print(f"    └─ decision_hash: {result.decision_hash[:16]}...")

        write_audit_record({
            "tick": tick,
            "scenario": scenario["name"],
            "wall_time_iso": datetime.now(timezone.utc).isoformat(),
            "tx_id": scenario["tx_id"],
            "condition": result.canonical_source,
            "verdict": verdict,
            "result_domain": result.domain,
            "value": result.value,
            "error": result.error,
            "steps": result.steps,
            "variables": result.variables,
            "hashes": {
                "context_hash": result.context_hash,
                "program_hash": result.program_hash,
                "decision_hash": result.decision_hash,
            },
        })
        actual_verdicts[tick] = verdict

    print(f"\n[*] Simulation Complete. Audit log written to {LOG_FILE}")
    print(f"    Released: {released}")

    golden_verdicts = {
        1: "BLOCKED:truth",
        2: "BLOCKED:truth",
        3: "RELEASED",
        4: "BLOCKED:already_executed",
        5: "BLOCKED:undefined",
        6: "BLOCKED:ERR_UNBALANCED_PARENTHESES",
        7: "RELEASED",
    }
    print("\n[*] Validating against golden verdict vector:")
    passed = True
    for t_id, expected in golden_verdicts.items():
        actual = actual_verdicts.get(t_id)
        if actual == expected:
            print(f"    Tick {t_id}: MATCH ({actual})")
        else:
            print(f"    Tick {t_id}: REGRESSION! Expected '{expected}', got '{actual}'")
            passed = False

    if not passed:
        sys.exit(1)
    print("    All ticks matched golden vector.")


if __name__ == "__main__":
    setup_logs()
    run_escrow_loop()
