"""z3 translation of symbolic branch conditions."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import StrEnum

import z3

from .state import CONST, ENV, SymbolicValue

__all__ = ["ConditionSolver", "SolverOutcome"]

logger = logging.getLogger(__name__)

_WIDTH = 256
_MAX_DEPTH = 256


class SolverOutcome(StrEnum):
    SAT = "sat"
    UNSAT = "unsat"
    UNKNOWN = "unknown"


class ConditionSolver:
    """Decides satisfiability of branch conditions over 256-bit words.

    ``SLOAD(k)`` with a constant key becomes the variable ``slot_<k>``, so
    callers can pin storage to a snapshot. Environment reads share one
    variable per name; every other leaf is a fresh unconstrained word.
    Each instance owns a private z3 context and must stay on one thread.
    """

    def __init__(self, timeout_ms: int = 2000) -> None:
        self.ctx = z3.Context()
        self.timeout_ms = timeout_ms
        self._fresh = 0

    # -- translation --------------------------------------------------------------

    def _word(self, value: int) -> z3.BitVecRef:
        return z3.BitVecVal(value, _WIDTH, self.ctx)

    def _bool_word(self, cond: z3.BoolRef) -> z3.BitVecRef:
        return z3.If(cond, self._word(1), self._word(0), self.ctx)

    def _free(self, label: str) -> z3.BitVecRef:
        self._fresh += 1
        return z3.BitVec(f"{label}_{self._fresh}", _WIDTH, self.ctx)

    def slot_var(self, slot: int) -> z3.BitVecRef:
        return z3.BitVec(f"slot_{slot:#x}", _WIDTH, self.ctx)

    def translate(self, value: SymbolicValue) -> tuple[z3.BitVecRef, set[int]]:
        """Return the z3 term for *value* and the constant storage slots it reads."""
        slots: set[int] = set()
        memo: dict[int, z3.BitVecRef] = {}
        term = self._translate(value, slots, memo, 0)
        return term, slots

    def _translate(
        self,
        node: SymbolicValue,
        slots: set[int],
        memo: dict[int, z3.BitVecRef],
        depth: int,
    ) -> z3.BitVecRef:
        cached = memo.get(id(node))
        if cached is not None:
            return cached
        term = self._build(node, slots, memo, depth)
        memo[id(node)] = term
        return term

    def _build(
        self,
        node: SymbolicValue,
        slots: set[int],
        memo: dict[int, z3.BitVecRef],
        depth: int,
    ) -> z3.BitVecRef:
        if node.concrete is not None:
            return self._word(node.concrete)
        if node.op == CONST:
            return self._free("const")
        if node.op == ENV:
            return z3.BitVec(f"env_{node.name}", _WIDTH, self.ctx)
        if node.op == "SLOAD" and node.slot is not None:
            slots.add(node.slot)
            return self.slot_var(node.slot)
        if not node.args or depth >= _MAX_DEPTH:
            return self._free(node.op.lower())

        args = [self._translate(arg, slots, memo, depth + 1) for arg in node.args]
        op = node.op
        zero = self._word(0)

        if op == "ADD":
            return args[0] + args[1]
        if op == "SUB":
            return args[0] - args[1]
        if op == "MUL":
            return args[0] * args[1]
        if op == "DIV":
            return z3.If(args[1] == zero, zero, z3.UDiv(args[0], args[1]), self.ctx)
        if op == "MOD":
            return z3.If(args[1] == zero, zero, z3.URem(args[0], args[1]), self.ctx)
        if op == "SDIV":
            return z3.If(args[1] == zero, zero, args[0] / args[1], self.ctx)
        if op == "SMOD":
            return z3.If(args[1] == zero, zero, z3.SRem(args[0], args[1]), self.ctx)
        if op == "AND":
            return args[0] & args[1]
        if op == "OR":
            return args[0] | args[1]
        if op == "XOR":
            return args[0] ^ args[1]
        if op == "NOT":
            return ~args[0]
        if op == "SHL":
            return args[1] << args[0]
        if op == "SHR":
            return z3.LShR(args[1], args[0])
        if op == "SAR":
            return args[1] >> args[0]
        if op == "EQ":
            return self._bool_word(args[0] == args[1])
        if op == "LT":
            return self._bool_word(z3.ULT(args[0], args[1]))
        if op == "GT":
            return self._bool_word(z3.UGT(args[0], args[1]))
        if op == "SLT":
            return self._bool_word(args[0] < args[1])
        if op == "SGT":
            return self._bool_word(args[0] > args[1])
        if op == "ISZERO":
            return self._bool_word(args[0] == zero)
        return self._free(op.lower())

    # -- queries ------------------------------------------------------------------

    def check(
        self,
        condition: SymbolicValue,
        taken: bool,
        storage: Mapping[int, int] | None = None,
    ) -> SolverOutcome:
        """Is the branch (``condition != 0`` when *taken*) feasible?

        With *storage*, every slot the condition reads is pinned to its
        snapshot value; slots missing from the snapshot read as zero.
        """
        term, slots = self.translate(condition)
        solver = z3.Solver(ctx=self.ctx)
        solver.set("timeout", self.timeout_ms)
        zero = self._word(0)
        solver.add(term != zero if taken else term == zero)
        if storage is not None:
            for slot in sorted(slots):
                solver.add(self.slot_var(slot) == self._word(storage.get(slot, 0)))
        result = solver.check()
        if result == z3.sat:
            return SolverOutcome.SAT
        if result == z3.unsat:
            return SolverOutcome.UNSAT
        logger.debug("Solver returned unknown: %s", solver.reason_unknown())
        return SolverOutcome.UNKNOWN
