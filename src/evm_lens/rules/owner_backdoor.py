"""Branches that are dead under current storage but can be switched on."""
from __future__ import annotations

import logging

from ..cfg.graph import EdgeKind
from ..engine.solver import ConditionSolver, SolverOutcome
from .base import Finding, RuleContext, Severity, finding

__all__ = ["RULE_ID", "detect_owner_backdoor"]

logger = logging.getLogger(__name__)

RULE_ID = "UnreachableOwnerBackdoor"


def detect_owner_backdoor(context: RuleContext) -> list[Finding]:
    """Solve each storage-dependent branch against the observed snapshot.

    A branch is a backdoor when its condition is unsatisfiable with every
    slot it reads pinned to the snapshot (absent slots read as zero), but
    satisfiable once those slots are free, at least one of them is written
    somewhere in the contract, and the branch leads to a normal exit.
    """
    findings: list[Finding] = []
    if context.snapshot is None:
        logger.debug("%s skipped: no storage snapshot supplied", RULE_ID)
        return findings

    cfg = context.cfg
    reachable = cfg.reachable()
    written = context.storage.written_slots()
    has_unresolved = bool(cfg.unresolved_jumps())
    solver = ConditionSolver(timeout_ms=context.config.solver_timeout_ms)

    for block_id, condition in sorted(context.storage.conditions.items()):
        if block_id not in reachable:
            continue
        _, slots = solver.translate(condition.value)
        mutable = sorted(slots & written)
        if not mutable:
            continue

        for edge in cfg.block(block_id).successors:
            if edge.target is None or not edge.is_conditional:
                continue
            target = cfg.block(edge.target)
            if target.is_sink or not cfg.exits_from(target.id, limit=context.config.max_exit_search_blocks).has_normal_exit:
                continue
            # Another resolved way in keeps the block alive regardless of this branch.
            if any(src != block_id for src, _ in cfg.predecessors(target.id)):
                continue

            taken = edge.kind == EdgeKind.CONDITIONAL_TAKEN
            pinned = solver.check(condition.value, taken, context.snapshot)
            if pinned == SolverOutcome.SAT:
                continue
            write_offsets = [u.offset for u in context.storage.writes() if u.slot in mutable]
            evidence = [condition.jumpi_offset, target.start_offset, *write_offsets]
            slot_text = ", ".join(f"{slot:#x}" for slot in mutable)
            ref = condition.ref(edge.kind)

            free = solver.check(condition.value, taken) if pinned == SolverOutcome.UNSAT else SolverOutcome.UNKNOWN
            if free == SolverOutcome.UNSAT:
                continue
            if free == SolverOutcome.UNKNOWN:
                findings.append(
                    finding(
                        RULE_ID,
                        title="Storage-dependent branch could not be decided",
                        severity=Severity.INFO,
                        message=(
                            f"The solver could not decide whether block {target.id} (0x{target.start_offset:04X}) "
                            f"is reachable when {ref.describe()}; needs manual review."
                        ),
                        block=target.id,
                        offset=target.start_offset,
                        evidence=evidence,
                        confidence=0.3,
                        tags=("backdoor",),
                        review=True,
                    )
                )
                continue

            severity = Severity.CRITICAL
            review = False
            note = ""
            if target.is_jumpdest and has_unresolved:
                severity, review = Severity.INFO, True
                note = " An unresolved jump may also reach it; needs manual review."
            findings.append(
                finding(
                    RULE_ID,
                    title="Dormant storage-controlled branch",
                    severity=severity,
                    message=(
                        f"Block {target.id} (0x{target.start_offset:04X}) is unreachable with the observed "
                        f"storage because {ref.describe()} cannot hold, but becomes reachable if slot(s) "
                        f"{slot_text} change, and the contract writes them.{note}"
                    ),
                    block=target.id,
                    offset=target.start_offset,
                    evidence=evidence,
                    recommendation="Determine who can write these slots and what the dormant branch does.",
                    confidence=0.4 if review else 0.75,
                    tags=("backdoor", "storage-controlled"),
                    review=review,
                )
            )
    return findings
