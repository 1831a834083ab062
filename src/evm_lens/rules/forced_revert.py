"""Caller-conditioned dead ends (honeypot reverts)."""
from __future__ import annotations

from ..cfg.graph import BasicBlock, EdgeKind, ExitSummary
from ..storage.model import BranchCondition, ProvenanceKind
from .base import Finding, RuleContext, Severity, finding

__all__ = ["RULE_ID", "detect_forced_revert"]

RULE_ID = "ForcedRevertOnPath"


def _is_owner_gate(condition: BranchCondition, revert_branch: EdgeKind) -> bool:
    """``require(msg.sender == owner)``: the revert is on the side where the equality fails."""
    if condition.comparison != "EQ":
        return False
    if not any(op.kind == ProvenanceKind.SLOAD and op.slot is not None for op in condition.operands):
        return False
    return not condition.ref(revert_branch).asserted


def _branch_exits(context: RuleContext, block: BasicBlock) -> dict[EdgeKind, ExitSummary]:
    exits: dict[EdgeKind, ExitSummary] = {}
    for edge in block.successors:
        if edge.target is None or not edge.is_conditional:
            continue
        exits[edge.kind] = context.cfg.exits_from(edge.target, limit=context.config.max_exit_search_blocks)
    return exits


def detect_forced_revert(context: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    reachable = context.cfg.reachable(upper_bound=True)

    for block_id, condition in sorted(context.storage.conditions.items()):
        if block_id not in reachable:
            continue
        if not any(op.kind in (ProvenanceKind.CALLER, ProvenanceKind.ORIGIN) for op in condition.operands):
            continue
        block = context.cfg.block(block_id)
        exits = _branch_exits(context, block)
        if len(exits) != 2:
            findings.append(
                finding(
                    RULE_ID,
                    title="Caller-conditioned branch with unresolved target",
                    severity=Severity.INFO,
                    message=(
                        f"Branch at 0x{condition.jumpi_offset:04X} depends on the caller but one of its "
                        "targets could not be resolved; needs manual review."
                    ),
                    block=block_id,
                    offset=condition.jumpi_offset,
                    evidence=[condition.jumpi_offset],
                    confidence=0.4,
                    tags=("honeypot",),
                    review=True,
                )
            )
            continue

        for revert_branch, normal_branch in (
            (EdgeKind.CONDITIONAL_TAKEN, EdgeKind.CONDITIONAL_NOT_TAKEN),
            (EdgeKind.CONDITIONAL_NOT_TAKEN, EdgeKind.CONDITIONAL_TAKEN),
        ):
            failing, sibling = exits[revert_branch], exits[normal_branch]
            if not sibling.has_normal_exit:
                continue
            ref = condition.ref(revert_branch)
            evidence = [
                condition.jumpi_offset,
                *(op.offset for op in condition.operands if op.offset >= 0),
                *failing.failing_offsets,
            ]
            if failing.only_failing and _is_owner_gate(condition, revert_branch):
                owner = next(op for op in condition.operands if op.kind == ProvenanceKind.SLOAD)
                findings.append(
                    finding(
                        RULE_ID,
                        title="Owner gate reverts every other caller",
                        severity=Severity.INFO,
                        message=(
                            f"When {ref.describe()}, execution from block {block_id} can only revert: an owner "
                            f"gate on {owner.describe()} lets no other caller complete the call; needs manual "
                            "review if this entry point is meant to be public."
                        ),
                        block=block_id,
                        offset=condition.jumpi_offset,
                        evidence=evidence,
                        confidence=0.4,
                        tags=("honeypot", "caller-condition", "owner-gate"),
                        review=True,
                    )
                )
            elif failing.only_failing:
                uncertain = any(op.is_unknown for op in condition.operands)
                findings.append(
                    finding(
                        RULE_ID,
                        title="Forced revert on caller-conditioned path",
                        severity=Severity.INFO if uncertain else Severity.HIGH,
                        message=(
                            f"When {ref.describe()}, execution from block {block_id} can only revert, "
                            f"while the other branch reaches a normal exit."
                            + (" The compared value has unknown provenance; needs manual review." if uncertain else "")
                        ),
                        block=block_id,
                        offset=condition.jumpi_offset,
                        evidence=evidence,
                        recommendation="Check whether specific callers are blocked from completing this call.",
                        confidence=0.5 if uncertain else 0.85,
                        tags=("honeypot", "caller-condition"),
                        review=uncertain,
                    )
                )
            elif failing.failing_offsets and not failing.has_normal_exit and (failing.unresolved or failing.truncated):
                findings.append(
                    finding(
                        RULE_ID,
                        title="Possible forced revert on caller-conditioned path",
                        severity=Severity.INFO,
                        message=(
                            f"When {ref.describe()}, every exit found from block {block_id} reverts, but the "
                            "search hit an unresolved jump or its block limit; needs manual review."
                        ),
                        block=block_id,
                        offset=condition.jumpi_offset,
                        evidence=evidence,
                        confidence=0.4,
                        tags=("honeypot", "caller-condition"),
                        review=True,
                    )
                )
    return findings
