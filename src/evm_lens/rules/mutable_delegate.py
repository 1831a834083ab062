"""Upgradeable delegate targets without a time-lock or multisig."""
from __future__ import annotations

from ..evm.opcodes import OpCode
from ..storage.model import ConditionRef, Guard, ProvenanceKind, StorageSlotUsage
from ..storage.provenance import provenance
from .base import Finding, RuleContext, Severity, finding

__all__ = ["RULE_ID", "detect_mutable_delegate"]

RULE_ID = "MutableDelegateTarget"

_THRESHOLD_COMPARISONS = frozenset({"LT", "GT", "SLT", "SGT"})
_THRESHOLD_SOURCES = frozenset({ProvenanceKind.SLOAD, ProvenanceKind.CONSTANT})


def _has_timelock(guard: Guard) -> bool:
    return any(cond.references(ProvenanceKind.TIME) for cond in guard.conditions)


def _is_threshold_check(cond: ConditionRef) -> bool:
    if cond.comparison not in _THRESHOLD_COMPARISONS or len(cond.operands) != 2:
        return False
    kinds = [op.kind for op in cond.operands]
    return ProvenanceKind.SLOAD in kinds and all(kind in _THRESHOLD_SOURCES for kind in kinds)


def _has_multisig(guard: Guard) -> bool:
    """An approval count in storage compared against a threshold somewhere on the path."""
    return any(_is_threshold_check(cond) for cond in guard.conditions)


def _classify(write: StorageSlotUsage) -> tuple[Severity, str] | None:
    """Severity and reason for one write of the delegate slot, or None when it is protected."""
    if not write.guard.is_known:
        return Severity.INFO, f"its guard could not be determined ({write.guard.status}); needs manual review"
    if not write.guard.authority_checks:
        return Severity.HIGH, "no caller check guards the write"
    if _has_timelock(write.guard) or _has_multisig(write.guard):
        return None
    checks = "; ".join(cond.describe() for cond in write.guard.authority_checks)
    return Severity.HIGH, f"the write is gated only by {checks} with no time-lock or multisig"


def detect_mutable_delegate(context: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    reachable = context.cfg.reachable(upper_bound=True)
    symbolic_writes = [u for u in context.storage.writes() if u.slot is None]

    for block_id, trace in sorted(context.storage.traces.items()):
        if block_id not in reachable:
            continue
        for effect in trace.effects_of(OpCode.DELEGATECALL):
            if effect.instruction.is_unknown or len(effect.operands) < 2:
                continue
            target = provenance(effect.operands[1], context.config.max_peel_depth)
            if target.kind == ProvenanceKind.UNKNOWN or (target.kind == ProvenanceKind.SLOAD and target.slot is None):
                findings.append(
                    finding(
                        RULE_ID,
                        title="Delegate call target of unknown origin",
                        severity=Severity.INFO,
                        message=(
                            f"DELEGATECALL at 0x{effect.offset:04X} uses target {target.describe()}, whose "
                            "source could not be resolved; needs manual review."
                        ),
                        block=block_id,
                        offset=effect.offset,
                        evidence=[effect.offset],
                        confidence=0.4,
                        tags=("delegatecall",),
                        review=True,
                    )
                )
                continue
            if target.kind != ProvenanceKind.SLOAD or target.slot is None:
                continue

            slot = target.slot
            writes = context.storage.writes(slot)
            if not writes:
                if symbolic_writes:
                    findings.append(
                        finding(
                            RULE_ID,
                            title="Delegate target slot may be written through a computed key",
                            severity=Severity.INFO,
                            message=(
                                f"DELEGATECALL at 0x{effect.offset:04X} loads its target from slot {slot:#x}; "
                                "no direct write exists but computed-key writes may alias it; needs manual review."
                            ),
                            block=block_id,
                            offset=effect.offset,
                            evidence=[effect.offset, target.offset, *(u.offset for u in symbolic_writes)],
                            confidence=0.3,
                            tags=("delegatecall", "upgradeability"),
                            review=True,
                        )
                    )
                continue

            verdicts = [(write, _classify(write)) for write in writes]
            flagged = [(write, verdict) for write, verdict in verdicts if verdict is not None]
            if not flagged:
                continue
            worst_write, (severity, reason) = max(
                flagged, key=lambda item: (item[1][0] != Severity.INFO, -item[0].offset)
            )
            review = severity == Severity.INFO
            findings.append(
                finding(
                    RULE_ID,
                    title="Mutable delegate call target",
                    severity=severity,
                    message=(
                        f"DELEGATECALL at 0x{effect.offset:04X} executes code at the address stored in slot "
                        f"{slot:#x}, which is written at 0x{worst_write.offset:04X}; {reason}."
                    ),
                    block=block_id,
                    offset=effect.offset,
                    evidence=[effect.offset, target.offset, *(write.offset for write, _ in flagged)],
                    recommendation="Put implementation upgrades behind a time-lock or multi-signature approval.",
                    confidence=0.4 if review else 0.8,
                    tags=("delegatecall", "upgradeability"),
                    review=review,
                )
            )
    return findings
