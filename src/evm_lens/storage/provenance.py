"""Operand provenance: where a compared or stored value comes from."""
from __future__ import annotations

from ..engine.state import CONST, ENTRY, ENV, UNKNOWN, SymbolicValue
from .model import Provenance, ProvenanceKind

__all__ = ["peel", "provenance", "split_condition"]

_COMPARISONS = frozenset({"EQ", "LT", "GT", "SLT", "SGT"})
_TIME_SOURCES = frozenset({"TIMESTAMP", "NUMBER"})
_MAX_NEGATIONS = 8


def peel(value: SymbolicValue, max_depth: int = 4) -> SymbolicValue:
    """Strip masks and constant shifts the compiler wraps around addresses and packed fields."""
    current = value
    for _ in range(max_depth):
        if current.concrete is not None or len(current.args) != 2:
            break
        left, right = current.args
        if current.op in ("AND", "OR") and (left.concrete is not None) != (right.concrete is not None):
            current = right if left.concrete is not None else left
        elif current.op == "DIV" and right.concrete is not None and left.concrete is None:
            current = left
        elif current.op in ("SHR", "SHL") and left.concrete is not None and right.concrete is None:
            current = right
        elif current.op == "SIGNEXTEND" and left.concrete is not None:
            current = right
        else:
            break
    return current


def provenance(value: SymbolicValue, max_depth: int = 4) -> Provenance:
    node = peel(value, max_depth)
    if node.concrete is not None:
        return Provenance(ProvenanceKind.CONSTANT, value=node.concrete, offset=node.offset)
    if node.op == ENV:
        name = node.name or ""
        if name == "CALLER":
            return Provenance(ProvenanceKind.CALLER, offset=node.offset)
        if name == "ORIGIN":
            return Provenance(ProvenanceKind.ORIGIN, offset=node.offset)
        if name == "CALLVALUE":
            return Provenance(ProvenanceKind.CALLVALUE, offset=node.offset)
        if name in _TIME_SOURCES:
            return Provenance(ProvenanceKind.TIME, detail=name, offset=node.offset)
        return Provenance(ProvenanceKind.ENVIRONMENT, detail=name, offset=node.offset)
    if node.op == "SLOAD":
        return Provenance(ProvenanceKind.SLOAD, slot=node.slot, detail=node.args[0].render(), offset=node.offset)
    if node.op == "CALLDATALOAD":
        return Provenance(ProvenanceKind.CALLDATA, detail=node.render(), offset=node.offset)
    if node.op in (ENTRY, UNKNOWN, CONST, "MLOAD"):
        return Provenance(ProvenanceKind.UNKNOWN, detail=node.render(), offset=node.offset)
    return Provenance(ProvenanceKind.COMPUTED, detail=node.render(), offset=node.offset)


def split_condition(value: SymbolicValue, max_depth: int = 4) -> tuple[str, tuple[Provenance, ...], int]:
    """Decompose a JUMPI condition into ``(comparison, operand provenances, ISZERO count)``."""
    negations = 0
    node = value
    while node.op == "ISZERO" and node.args and negations < _MAX_NEGATIONS:
        node = node.args[0]
        negations += 1
    if node.op in _COMPARISONS and len(node.args) == 2:
        operands = (provenance(node.args[0], max_depth), provenance(node.args[1], max_depth))
        return node.op, operands, negations
    return "NONZERO", (provenance(node, max_depth),), negations
