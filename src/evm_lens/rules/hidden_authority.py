"""Caller checks against a storage slot other than the declared owner."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from ..storage.model import AUTHORITY_KINDS, BranchCondition, Provenance, ProvenanceKind
from .base import Finding, RuleContext, Severity, finding

__all__ = ["RULE_ID", "canonical_owner_slots", "detect_hidden_authority"]

RULE_ID = "HiddenAuthoritySlot"


@dataclass(slots=True, frozen=True)
class _CallerCheck:
    condition: BranchCondition
    sload: Provenance


def _caller_checks(context: RuleContext) -> list[_CallerCheck]:
    reachable = context.cfg.reachable(upper_bound=True)
    checks: list[_CallerCheck] = []
    for block_id, condition in sorted(context.storage.conditions.items()):
        if block_id not in reachable or len(condition.operands) != 2:
            continue
        kinds = {op.kind for op in condition.operands}
        if not kinds & AUTHORITY_KINDS:
            continue
        for operand in condition.operands:
            if operand.kind == ProvenanceKind.SLOAD:
                checks.append(_CallerCheck(condition, operand))
    return checks


def canonical_owner_slots(context: RuleContext, checks: list[_CallerCheck] | None = None) -> set[int]:
    """Slots treated as the legitimate owner.

    A layout manifest naming an owner/admin variable wins. Otherwise the
    majority slot is canonical, where each SLOAD counts once for every
    caller-conditioned branch it feeds as a comparison operand. SLOADs that
    merely sit behind a caller check (balances, config reads) are not counted.
    On a tie the lowest slot number is chosen so the result does not depend
    on traversal order.
    """
    if context.layout is not None:
        declared = context.layout.authority_slots()
        if declared:
            return declared
    if checks is None:
        checks = _caller_checks(context)
    counts = Counter(check.sload.slot for check in checks if check.sload.slot is not None)
    if not counts:
        return set()
    best = max(counts.values())
    return {min(slot for slot, count in counts.items() if count == best)}


def detect_hidden_authority(context: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    checks = _caller_checks(context)
    if not checks:
        return findings
    canonical = canonical_owner_slots(context, checks)
    owner_text = ", ".join(f"{slot:#x}" for slot in sorted(canonical)) or "none"

    for check in checks:
        condition, sload = check.condition, check.sload
        evidence = [condition.jumpi_offset, *(op.offset for op in condition.operands if op.offset >= 0)]
        if sload.slot is None:
            findings.append(
                finding(
                    RULE_ID,
                    title="Caller compared with computed storage slot",
                    severity=Severity.INFO,
                    message=(
                        f"Branch at 0x{condition.jumpi_offset:04X} compares the caller with storage at a "
                        f"computed key ({sload.detail}); needs manual review."
                    ),
                    block=condition.block,
                    offset=condition.jumpi_offset,
                    evidence=evidence,
                    confidence=0.4,
                    tags=("authorization",),
                    review=True,
                )
            )
            continue
        if sload.slot in canonical:
            continue

        name = context.layout.name_of(sload.slot) if context.layout is not None else None
        if name is not None:
            slot_text = f"slot {sload.slot:#x} (declared as '{name}')"
        elif context.layout is not None:
            slot_text = f"undeclared slot {sload.slot:#x}"
        else:
            slot_text = f"slot {sload.slot:#x}"
        findings.append(
            finding(
                RULE_ID,
                title="Hidden authority slot",
                severity=Severity.CRITICAL,
                message=(
                    f"Branch at 0x{condition.jumpi_offset:04X} authorizes the caller against {slot_text}, "
                    f"not the canonical owner slot ({owner_text})."
                ),
                block=condition.block,
                offset=condition.jumpi_offset,
                evidence=evidence,
                recommendation="Identify who controls this slot; it grants privileges outside the visible owner.",
                confidence=0.8 if context.layout is not None else 0.65,
                tags=("authorization", "hidden-owner"),
            )
        )
    return findings
