"""Findings raised from the shape of the bytecode itself."""
from __future__ import annotations

from ..cfg.graph import Confidence
from ..evm.decoder import WarningKind, decode_warnings
from .base import Finding, RuleContext, Severity, finding

__all__ = [
    "DECODE_ANOMALY",
    "INVALID_JUMP_TARGET",
    "UNRESOLVED_JUMP",
    "detect_decode_anomalies",
    "detect_invalid_jump_targets",
    "detect_unresolved_jumps",
]

INVALID_JUMP_TARGET = "InvalidJumpTargetAtDesignTime"
UNRESOLVED_JUMP = "UnresolvedIndirectJump"
DECODE_ANOMALY = "DecodeAnomaly"


def detect_invalid_jump_targets(context: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    reachable = context.cfg.reachable(upper_bound=True)
    for violation in context.cfg.violations:
        live = violation.block in reachable
        findings.append(
            finding(
                INVALID_JUMP_TARGET,
                title="Jump to a non-JUMPDEST target",
                severity=Severity.HIGH if live else Severity.INFO,
                message=(
                    f"{violation.confidence} jump at 0x{violation.jump_offset:04X}: {violation.reason}."
                    + ("" if live else " The jump sits in code not reachable from the entry.")
                ),
                block=violation.block,
                offset=violation.jump_offset,
                evidence=[violation.jump_offset],
                recommendation="Treat the contract as malformed or deliberately obfuscated.",
                confidence=0.95 if violation.confidence == Confidence.EXACT else 0.8,
                tags=("structure",),
            )
        )
    return findings


def detect_unresolved_jumps(context: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    reachable = context.cfg.reachable(upper_bound=True)
    for block_id, edge in context.cfg.unresolved_jumps():
        if block_id not in reachable:
            continue
        jump = context.cfg.block(block_id).last
        offset = jump.offset if jump is not None else -1
        findings.append(
            finding(
                UNRESOLVED_JUMP,
                title="Unresolved computed jump",
                severity=Severity.INFO,
                message=(
                    f"{edge.kind} at 0x{offset:04X} has a target the bounded stack simulation could not derive; "
                    "flow facts past it are an upper bound."
                ),
                block=block_id,
                offset=offset,
                evidence=[offset],
                confidence=0.5,
                tags=("structure",),
                review=True,
            )
        )
    return findings


def detect_decode_anomalies(context: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    reachable = context.cfg.reachable()
    for warning in decode_warnings(context.instructions):
        block = context.cfg.block_containing(warning.offset)
        if block is None or block.id not in reachable:
            continue
        title = "Truncated PUSH" if warning.kind == WarningKind.TRUNCATED_PUSH else "Unknown opcode"
        findings.append(
            finding(
                DECODE_ANOMALY,
                title=title,
                severity=Severity.LOW,
                message=f"{warning.kind} at 0x{warning.offset:04X} in reachable code: {warning.detail}.",
                block=block.id,
                offset=warning.offset,
                evidence=[warning.offset],
                confidence=0.9,
                tags=("structure", "decode"),
            )
        )
    return findings
