"""Transfer amounts scaled by undisclosed storage values."""
from __future__ import annotations

from ..engine.state import SymbolicValue
from ..evm.opcodes import OpCode
from .base import Finding, RuleContext, Severity, finding

__all__ = ["RULE_ID", "detect_dynamic_fee"]

RULE_ID = "DynamicFeeMultiplier"

_WALK_LIMIT = 512

# Opcode -> index of the operand carrying the transferred amount.
_AMOUNT_SINKS: dict[OpCode, int] = {
    OpCode.SSTORE: 1,
    OpCode.MSTORE: 1,
    OpCode.CALL: 2,
    OpCode.CALLCODE: 2,
}


def _slots_in(value: SymbolicValue) -> set[int]:
    return {node.slot for node in value.walk(_WALK_LIMIT) if node.is_sload and node.slot is not None}


def _combinations(amount: SymbolicValue) -> list[tuple[SymbolicValue, int, int]]:
    """MUL/ADD nodes inside *amount* whose two sides read different constant slots."""
    found: list[tuple[SymbolicValue, int, int]] = []
    for node in amount.walk(_WALK_LIMIT):
        if node.op not in ("MUL", "ADD") or len(node.args) != 2:
            continue
        left, right = _slots_in(node.args[0]), _slots_in(node.args[1])
        pairs = sorted((a, b) for a in left for b in right if a != b)
        if pairs:
            found.append((node, *pairs[0]))
    return found


def detect_dynamic_fee(context: RuleContext) -> list[Finding]:
    findings: list[Finding] = []
    reachable = context.cfg.reachable(upper_bound=True)
    public = set(context.storage.getters)
    if context.layout is not None:
        public |= context.layout.public_slots()
    getter_info = context.layout is not None or context.storage.dispatcher_found
    written = context.storage.written_slots()
    seen: set[tuple[int, int]] = set()

    for block_id, trace in sorted(context.storage.traces.items()):
        if block_id not in reachable:
            continue
        for effect in trace.effects:
            index = _AMOUNT_SINKS.get(effect.opcode)
            if index is None or effect.instruction.is_unknown or len(effect.operands) <= index:
                continue
            for node, first, second in _combinations(effect.operands[index]):
                key = (block_id, node.offset)
                if key in seen:
                    continue
                seen.add(key)
                hidden = sorted(slot for slot in (first, second) if slot not in public)
                evidence = [effect.offset, *(n.offset for n in node.walk(_WALK_LIMIT) if n.is_sload and n.offset >= 0)]
                if node.offset >= 0:
                    evidence.append(node.offset)
                mutable = sorted(slot for slot in (first, second) if slot in written)
                mutable_text = (
                    f" Slot(s) {', '.join(f'{s:#x}' for s in mutable)} are writable at runtime." if mutable else ""
                )
                if not getter_info:
                    findings.append(
                        finding(
                            RULE_ID,
                            title="Storage-derived amount without getter information",
                            severity=Severity.INFO,
                            message=(
                                f"{node.op} of slots {first:#x} and {second:#x} feeds the {effect.opcode.name} at "
                                f"0x{effect.offset:04X}, but no layout or dispatcher was found to tell which "
                                f"slots are public; needs manual review.{mutable_text}"
                            ),
                            block=block_id,
                            offset=node.offset,
                            evidence=evidence,
                            confidence=0.4,
                            tags=("fee",),
                            review=True,
                        )
                    )
                elif hidden:
                    findings.append(
                        finding(
                            RULE_ID,
                            title="Dynamic fee multiplier",
                            severity=Severity.MEDIUM,
                            message=(
                                f"{node.op} of slots {first:#x} and {second:#x} feeds the {effect.opcode.name} at "
                                f"0x{effect.offset:04X}; slot(s) {', '.join(f'{s:#x}' for s in hidden)} have no "
                                f"public getter.{mutable_text}"
                            ),
                            block=block_id,
                            offset=node.offset,
                            evidence=evidence,
                            recommendation="Expose every parameter that scales transfer amounts through a getter.",
                            confidence=0.7 if mutable else 0.6,
                            tags=("fee", "hidden-parameter"),
                        )
                    )
    return findings
