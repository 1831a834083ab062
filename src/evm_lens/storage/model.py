"""Storage access and branch-condition models."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from ..cfg.graph import EdgeKind
from ..engine.state import BlockTrace, SymbolicValue

__all__ = [
    "AccessKind",
    "BranchCondition",
    "ConditionRef",
    "Guard",
    "GuardStatus",
    "Provenance",
    "ProvenanceKind",
    "StorageAnalysis",
    "StorageSlotUsage",
]


class AccessKind(StrEnum):
    READ = "Read"
    WRITE = "Write"


class ProvenanceKind(StrEnum):
    CALLER = "CALLER"
    ORIGIN = "ORIGIN"
    SLOAD = "SLOAD"
    CONSTANT = "CONSTANT"
    CALLDATA = "CALLDATA"
    CALLVALUE = "CALLVALUE"
    TIME = "TIME"
    ENVIRONMENT = "ENVIRONMENT"
    COMPUTED = "COMPUTED"
    UNKNOWN = "UNKNOWN"


AUTHORITY_KINDS = frozenset({ProvenanceKind.CALLER, ProvenanceKind.ORIGIN})


@dataclass(slots=True, frozen=True)
class Provenance:
    kind: ProvenanceKind
    slot: int | None = None
    value: int | None = None
    detail: str = ""
    offset: int = -1

    @property
    def is_unknown(self) -> bool:
        return self.kind == ProvenanceKind.UNKNOWN or (self.kind == ProvenanceKind.SLOAD and self.slot is None)

    def describe(self) -> str:
        if self.kind == ProvenanceKind.SLOAD:
            return f"SLOAD(slot {self.slot:#x})" if self.slot is not None else f"SLOAD({self.detail})"
        if self.kind == ProvenanceKind.CONSTANT:
            return hex(self.value) if self.value is not None else "constant"
        if self.kind in (ProvenanceKind.COMPUTED, ProvenanceKind.UNKNOWN, ProvenanceKind.ENVIRONMENT, ProvenanceKind.TIME):
            return self.detail or self.kind.value
        return self.kind.value


@dataclass(slots=True, frozen=True)
class ConditionRef:
    """One branch decision on the way to a block.

    ``asserted`` is True when the comparison itself holds on this branch,
    after undoing any ISZERO wrappers around it.
    """

    block: int
    jumpi_offset: int
    branch: EdgeKind
    comparison: str
    operands: tuple[Provenance, ...]
    asserted: bool

    def references(self, *kinds: ProvenanceKind) -> bool:
        wanted = set(kinds)
        return any(operand.kind in wanted for operand in self.operands)

    @property
    def references_authority(self) -> bool:
        return self.references(*AUTHORITY_KINDS)

    @property
    def is_unknown(self) -> bool:
        return all(operand.is_unknown for operand in self.operands)

    def describe(self) -> str:
        if self.comparison == "NONZERO":
            text = f"{self.operands[0].describe()} != 0"
        elif len(self.operands) == 2:
            symbol = {"EQ": "==", "LT": "<", "GT": ">", "SLT": "<s", "SGT": ">s"}.get(self.comparison, self.comparison)
            text = f"{self.operands[0].describe()} {symbol} {self.operands[1].describe()}"
        else:
            text = self.comparison
        return text if self.asserted else f"!({text})"


@dataclass(slots=True, frozen=True)
class BranchCondition:
    """The decoded condition of the JUMPI ending ``block``."""

    block: int
    jumpi_offset: int
    value: SymbolicValue
    comparison: str
    operands: tuple[Provenance, ...]
    negations: int

    def ref(self, branch: EdgeKind) -> ConditionRef:
        taken = branch == EdgeKind.CONDITIONAL_TAKEN
        asserted = taken if self.negations % 2 == 0 else not taken
        return ConditionRef(
            block=self.block,
            jumpi_offset=self.jumpi_offset,
            branch=branch,
            comparison=self.comparison,
            operands=self.operands,
            asserted=asserted,
        )


class GuardStatus(StrEnum):
    KNOWN = "Known"
    TOO_MANY_PATHS = "Unknown(tooManyPaths)"
    UNREACHED = "Unknown(unreached)"


@dataclass(slots=True, frozen=True)
class Guard:
    status: GuardStatus
    conditions: tuple[ConditionRef, ...] = ()

    @property
    def is_known(self) -> bool:
        return self.status == GuardStatus.KNOWN

    @property
    def authority_checks(self) -> tuple[ConditionRef, ...]:
        return tuple(cond for cond in self.conditions if cond.references_authority)


@dataclass(slots=True, frozen=True)
class StorageSlotUsage:
    slot: int | None
    key: SymbolicValue
    block: int
    offset: int
    access: AccessKind
    guard: Guard
    value: SymbolicValue | None = None

    @property
    def guarding_conditions(self) -> tuple[ConditionRef, ...] | None:
        """Conditions on the recorded shortest path, or None when the guard is unknown."""
        return self.guard.conditions if self.guard.is_known else None

    @property
    def is_symbolic(self) -> bool:
        return self.slot is None

    @property
    def is_caller_gated(self) -> bool:
        return self.guard.is_known and bool(self.guard.authority_checks)


@dataclass(slots=True)
class StorageAnalysis:
    """Slot-usage map plus the per-block facts it was derived from."""

    usages: list[StorageSlotUsage] = field(default_factory=list)
    conditions: dict[int, BranchCondition] = field(default_factory=dict)
    guards: dict[int, Guard] = field(default_factory=dict)
    traces: dict[int, BlockTrace] = field(default_factory=dict)
    getters: dict[int, list[int]] = field(default_factory=dict)
    dispatcher_found: bool = False

    def reads(self, slot: int | None = None) -> list[StorageSlotUsage]:
        return [u for u in self.usages if u.access == AccessKind.READ and (slot is None or u.slot == slot)]

    def writes(self, slot: int | None = None) -> list[StorageSlotUsage]:
        return [u for u in self.usages if u.access == AccessKind.WRITE and (slot is None or u.slot == slot)]

    def written_slots(self) -> set[int]:
        return {u.slot for u in self.usages if u.access == AccessKind.WRITE and u.slot is not None}

    def in_block(self, block_id: int) -> list[StorageSlotUsage]:
        return [u for u in self.usages if u.block == block_id]

    def guard(self, block_id: int) -> Guard:
        return self.guards.get(block_id, Guard(GuardStatus.UNREACHED))

    def has_getter(self, slot: int) -> bool:
        return slot in self.getters
