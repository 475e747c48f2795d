"""
gate.py

Covenant Agreement Gate
-----------------------

The AgreementGate is the unified entrypoint for agreement conditions.

It connects:
    - ContextManager (snapshot + context hash)
    - tokenize / convert / encode (source -> Program, cached)
    - execute (stack VM)
    - verdict -> permit / deny
    - exactly-once guarded effects keyed by transaction id

Rules:
    - evaluate() never raises for a bad condition; failures come back as
      an error-domain GateResult carrying the error code.
    - An empty stack is "undefined" and never permits anything.
    - A guarded effect runs only for a "truth" result whose value is True,
      and at most once per transaction id.
"""

from __future__ import annotations

import hashlib
import sys
import threading
import traceback
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .array_storage import ArrayStorage, StagedArrays
from .canonical import canonicalize_source
from .context_manager import ContextManager, ContextSnapshot, ProgramContext
from .converter import convert
from .encoder import Program, disassemble, encode
from .errors import CovenantError
from .executor import default_budget, execute
from .provenance import compute_decision_hash, compute_program_hash
from .tokenize import tokenize

# Increment when the DSL grammar or the opcode layout changes.
GRAMMAR_VERSION = "1.0.0"
_GRAMMAR_HASH = hashlib.sha256(GRAMMAR_VERSION.encode()).hexdigest()[:8]

_PROGRAM_CACHE_MAX_SIZE = 1000

EffectHandler = Callable[[str], Any]


# -------------------------------------------------------------------------
# Gate Result Object
# -------------------------------------------------------------------------


@dataclass
class GateResult:
    """
    Public result returned by AgreementGate.evaluate(...) and
    AgreementGate.execute_guarded(...).

        - domain: truth | undefined | error | already_executed
        - value: True/False for truth, None otherwise
        - error: "ERR_CODE: message" for the error domain
        - context_hash: hash of the context snapshot the program ran against
        - program_hash / decision_hash: provenance of the decision
        - variables: variables the program wrote (never stored back)
        - executed: True when this call ran the guarded effect
    """
    domain: str
    value: Any
    error: Optional[str]
    context_hash: str
    snapshot_ts: int
    canonical_source: Optional[str] = None
    program_hash: Optional[str] = None
    decision_hash: Optional[str] = None
    stack_length: int = 0
    steps: int = 0
    variables: Dict[str, Any] = field(default_factory=dict)
    tx_id: Optional[str] = None
    executed: bool = False
    effect_result: Any = None
    disassembly: Optional[List[str]] = None
    program_context: Optional[ProgramContext] = None

    @property
    def permitted(self) -> bool:
        return self.domain == "truth" and self.value is True


# -------------------------------------------------------------------------
# Gate
# -------------------------------------------------------------------------


class AgreementGate:
    """
    Compiles and evaluates agreement conditions and guards their effects.

        gate = AgreementGate(context_manager=ContextManager(variables={"amount": 5}))
        gate.evaluate("(amount > 1) and (blockNumber >= 0)").permitted
        gate.execute_guarded("tx-1", "amount > 1", release_funds)

    The compile cache, the execution ledger and the array storage are shared
    by every call on this gate and are lock-protected.
    """

    def __init__(
        self,
        *,
        context_manager: Optional[ContextManager] = None,
        storage: Optional[ArrayStorage] = None,
        instruction_budget: Optional[int] = None,
        debug: bool = False,
        cache_size: int = _PROGRAM_CACHE_MAX_SIZE,
        effect_handler: Optional[EffectHandler] = None,
    ):
        self.cm = context_manager if context_manager is not None else ContextManager()
        self.storage = storage if storage is not None else ArrayStorage()
        self.instruction_budget = instruction_budget if instruction_budget is not None else default_budget()
        if self.instruction_budget <= 0:
            raise ValueError(f"instruction_budget must be positive, got {self.instruction_budget}")
        self.debug = debug
        self.effect_handler = effect_handler

        self._cache: "OrderedDict[str, Program]" = OrderedDict()
        self._cache_size = max(int(cache_size), 0)
        self._cache_lock = threading.Lock()

        self._ledger: Dict[str, GateResult] = {}
        self._pending = set()
        self._ledger_lock = threading.Lock()

        self.last_context: Optional[ProgramContext] = None

        if self.debug:
            sys.stderr.write(
                f"[AgreementGate] Initialized (budget={self.instruction_budget}, cache={self._cache_size})\n"
            )

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    def compile(self, source: str) -> Program:
        """
        Compile DSL source to a Program. Pure; results are cached by
        grammar version + canonical source.

        Raises:
            CompileError subclasses for malformed source.
        """
        canonical = canonicalize_source(source)
        cache_key = f"{_GRAMMAR_HASH}:{canonical}"

        with self._cache_lock:
            if cache_key in self._cache:
                self._cache.move_to_end(cache_key)
                return self._cache[cache_key]

        program = encode(convert(tokenize(canonical)))

        if self._cache_size:
            with self._cache_lock:
                self._cache[cache_key] = program
                self._cache.move_to_end(cache_key)
                while len(self._cache) > self._cache_size:
                    self._cache.popitem(last=False)
        return program

    def cache_info(self) -> Dict[str, int]:
        with self._cache_lock:
            return {"size": len(self._cache), "max_size": self._cache_size}

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _snapshot(self, context: Union[ContextSnapshot, ContextManager, None]) -> ContextSnapshot:
        if context is None:
            return self.cm.snapshot()
        if isinstance(context, ContextManager):
            return context.snapshot()
        if isinstance(context, ContextSnapshot):
            return context
        raise TypeError(f"context must be a ContextSnapshot or ContextManager, got {type(context).__name__}")

    def evaluate(
        self,
        source: str,
        *,
        context: Union[ContextSnapshot, ContextManager, None] = None,
        budget: Optional[int] = None,
    ) -> GateResult:
        """
        Compile and run one condition against a fresh ProgramContext.
        """
        snap: Optional[ContextSnapshot] = None
        canonical: Optional[str] = None

        try:
            canonical = canonicalize_source(source)
            snap = self._snapshot(context)
            program = self.compile(canonical)
            program_hash = compute_program_hash(program.code)

            staged = StagedArrays(self.storage)
            ctx = ProgramContext.from_snapshot(snap, staged)
            self.last_context = ctx
            verdict = execute(
                program,
                ctx,
                budget=budget if budget is not None else self.instruction_budget,
            )
            # Array writes land only once the run finished cleanly.
            staged.commit()

            decision_hash = compute_decision_hash(
                source=canonical,
                program_hash=program_hash,
                context_hash=snap.context_hash,
                verdict=verdict.to_json(),
            )
            if self.debug:
                sys.stderr.write(
                    f"[AgreementGate] {canonical!r} -> {verdict.value!r} "
                    f"(steps={verdict.steps}, depth={verdict.stack_length})\n"
                )

            return GateResult(
                domain="undefined" if verdict.is_empty else "truth",
                value=None if verdict.is_empty else verdict.satisfied,
                error=None,
                context_hash=snap.context_hash,
                snapshot_ts=snap.timestamp_ms,
                canonical_source=canonical,
                program_hash=program_hash,
                decision_hash=decision_hash,
                stack_length=verdict.stack_length,
                steps=verdict.steps,
                variables=ctx.exported_variables(),
                disassembly=disassemble(program) if self.debug else None,
                program_context=ctx if self.debug else None,
            )

        except CovenantError as e:
            if self.debug:
                sys.stderr.write(f"{type(e).__name__}: {e}\n")
            return self._error(f"{e.code}: {e}", snap, canonical_source=canonical)
        except Exception as e:
            # Catch-all: runtime-internal errors
            if self.debug:
                tb = traceback.format_exc()
                msg = f"ERR_RUNTIME_INTERNAL: {e}\n{tb}"
            else:
                msg = f"ERR_RUNTIME_INTERNAL: {e}"
            return self._error(msg, snap, canonical_source=canonical)

    # ------------------------------------------------------------------
    # Guarded execution
    # ------------------------------------------------------------------

    def execute_guarded(
        self,
        tx_id: str,
        source: str,
        effect: Optional[Callable[[], Any]] = None,
        *,
        context: Union[ContextSnapshot, ContextManager, None] = None,
        budget: Optional[int] = None,
    ) -> GateResult:
        """
        Run `effect` at most once for `tx_id`, and only when `source`
        evaluates to True.

        A denied or undefined decision leaves `tx_id` free, so the same
        transaction may be retried once its condition holds. If the effect
        raises, the reservation is released and the exception propagates.
        """
        if effect is None:
            if self.effect_handler is None:
                raise ValueError("execute_guarded needs an effect or a gate effect_handler")
            handler = self.effect_handler
            effect = lambda: handler(tx_id)  # noqa: E731

        with self._ledger_lock:
            if tx_id in self._ledger or tx_id in self._pending:
                return self._already_executed(tx_id)
            self._pending.add(tx_id)

        result: Optional[GateResult] = None
        try:
            result = self.evaluate(source, context=context, budget=budget)
            result.tx_id = tx_id
            if result.permitted:
                result.effect_result = effect()
                result.executed = True
        finally:
            with self._ledger_lock:
                self._pending.discard(tx_id)
                if result is not None and result.executed:
                    self._ledger[tx_id] = result

        if self.debug and result.executed:
            sys.stderr.write(f"[AgreementGate] executed {tx_id} ({result.decision_hash})\n")
        return result

    def has_executed(self, tx_id: str) -> bool:
        with self._ledger_lock:
            return tx_id in self._ledger

    def executed_ids(self) -> List[str]:
        with self._ledger_lock:
            return list(self._ledger)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _already_executed(self, tx_id: str) -> GateResult:
        prior = self._ledger.get(tx_id)
        return GateResult(
            domain="already_executed",
            value=None,
            error=None,
            context_hash=prior.context_hash if prior else "UNKNOWN",
            snapshot_ts=prior.snapshot_ts if prior else 0,
            canonical_source=prior.canonical_source if prior else None,
            program_hash=prior.program_hash if prior else None,
            decision_hash=prior.decision_hash if prior else None,
            tx_id=tx_id,
        )

    def _error(self, msg: str, snap: Optional[ContextSnapshot], canonical_source: Optional[str] = None) -> GateResult:
        """Return error-domain result."""
        return GateResult(
            domain="error",
            value=None,
            error=msg,
            context_hash=snap.context_hash if snap else "UNKNOWN",
            snapshot_ts=snap.timestamp_ms if snap else 0,
            canonical_source=canonical_source,
        )
