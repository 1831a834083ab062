"""Control-flow graph model.

Blocks live in an arena and refer to each other by integer id, so loops and
self-jumps are plain edges.
"""
from __future__ import annotations

from bisect import bisect_right
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..evm.decoder import Instruction
from ..evm.opcodes import FAILING_EXITS, NORMAL_EXITS, OpCode

__all__ = [
    "BasicBlock",
    "BlockEdge",
    "Confidence",
    "ControlFlowGraph",
    "EdgeKind",
    "ExitSummary",
    "JumpViolation",
    "SinkKind",
]


class EdgeKind(StrEnum):
    FALLTHROUGH = "Fallthrough"
    CONDITIONAL_TAKEN = "ConditionalTaken"
    CONDITIONAL_NOT_TAKEN = "ConditionalNotTaken"
    UNCONDITIONAL_JUMP = "UnconditionalJump"
    INDIRECT_JUMP = "IndirectJump"


class Confidence(StrEnum):
    EXACT = "Exact"
    DERIVED = "Derived"
    UNRESOLVED = "Unresolved"


class SinkKind(StrEnum):
    INVALID_JUMP_TARGET = "InvalidJumpTarget"
    CODE_END = "CodeEnd"


JUMP_KINDS = frozenset({EdgeKind.CONDITIONAL_TAKEN, EdgeKind.UNCONDITIONAL_JUMP, EdgeKind.INDIRECT_JUMP})


@dataclass(slots=True, frozen=True)
class BlockEdge:
    kind: EdgeKind
    target: int | None
    confidence: Confidence = Confidence.EXACT
    target_offset: int | None = None

    @property
    def is_resolved(self) -> bool:
        return self.target is not None

    @property
    def is_jump(self) -> bool:
        return self.kind in JUMP_KINDS

    @property
    def is_conditional(self) -> bool:
        return self.kind in (EdgeKind.CONDITIONAL_TAKEN, EdgeKind.CONDITIONAL_NOT_TAKEN)


@dataclass(slots=True)
class BasicBlock:
    id: int
    start_offset: int
    end_offset: int
    instructions: list[Instruction] = field(default_factory=list)
    successors: list[BlockEdge] = field(default_factory=list)
    sink: SinkKind | None = None

    @property
    def is_sink(self) -> bool:
        return self.sink is not None

    @property
    def first(self) -> Instruction | None:
        return self.instructions[0] if self.instructions else None

    @property
    def last(self) -> Instruction | None:
        return self.instructions[-1] if self.instructions else None

    @property
    def is_jumpdest(self) -> bool:
        first = self.first
        return first is not None and first.opcode == OpCode.JUMPDEST and not first.is_unknown

    @property
    def exit_opcode(self) -> OpCode | None:
        """Halting opcode that ends this block, if any."""
        last = self.last
        if last is None:
            return OpCode.STOP if self.sink == SinkKind.CODE_END else None
        if last.opcode in NORMAL_EXITS or last.opcode in FAILING_EXITS:
            return last.opcode
        return None

    def contains(self, *opcodes: OpCode) -> bool:
        wanted = set(opcodes)
        return any(instr.opcode in wanted and not instr.is_unknown for instr in self.instructions)

    def __repr__(self) -> str:
        label = f"sink:{self.sink}" if self.sink else f"0x{self.start_offset:04X}-0x{self.end_offset:04X}"
        return f"BasicBlock(id={self.id}, {label}, {len(self.successors)} edges)"


@dataclass(slots=True, frozen=True)
class JumpViolation:
    block: int
    jump_offset: int
    target_offset: int
    confidence: Confidence
    reason: str


@dataclass(slots=True)
class ExitSummary:
    """Ways execution can leave the program starting from one block."""

    normal_offsets: list[int] = field(default_factory=list)
    failing_offsets: list[int] = field(default_factory=list)
    invalid_jumps: int = 0
    unresolved: bool = False
    truncated: bool = False

    @property
    def has_normal_exit(self) -> bool:
        return bool(self.normal_offsets)

    @property
    def only_failing(self) -> bool:
        """Every exit is a revert, an INVALID or an invalid jump, and the search was exhaustive."""
        failing = bool(self.failing_offsets) or self.invalid_jumps > 0
        return failing and not self.normal_offsets and not self.unresolved and not self.truncated


@dataclass(slots=True)
class ControlFlowGraph:
    blocks: list[BasicBlock]
    jumpdests: frozenset[int]
    code_size: int
    violations: list[JumpViolation] = field(default_factory=list)

    _by_offset: dict[int, int] = field(init=False, repr=False)
    _preds: dict[int, list[tuple[int, BlockEdge]]] = field(init=False, repr=False)
    _jumpdest_ids: list[int] = field(init=False, repr=False)
    _starts: list[int] = field(init=False, repr=False)
    _reachable: dict[bool, frozenset[int]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._by_offset = {block.start_offset: block.id for block in self.blocks if not block.is_sink}
        self._jumpdest_ids = [block.id for block in self.blocks if not block.is_sink and block.is_jumpdest]
        self._starts = [block.start_offset for block in self.blocks if not block.is_sink]
        self._reachable = {}
        self._preds = {block.id: [] for block in self.blocks}
        for block in self.blocks:
            for edge in block.successors:
                if edge.target is not None:
                    self._preds[edge.target].append((block.id, edge))

    @property
    def entry(self) -> BasicBlock | None:
        block_id = self._by_offset.get(0)
        return self.blocks[block_id] if block_id is not None else None

    def block(self, block_id: int) -> BasicBlock:
        return self.blocks[block_id]

    def block_at(self, offset: int) -> BasicBlock | None:
        block_id = self._by_offset.get(offset)
        return self.blocks[block_id] if block_id is not None else None

    def block_containing(self, offset: int) -> BasicBlock | None:
        # Code blocks are numbered in offset order, so block ids index _starts.
        index = bisect_right(self._starts, offset) - 1
        if index < 0:
            return None
        block = self.blocks[index]
        return block if offset <= block.end_offset else None

    def code_blocks(self) -> list[BasicBlock]:
        return [block for block in self.blocks if not block.is_sink]

    def sink(self, kind: SinkKind) -> BasicBlock | None:
        for block in self.blocks:
            if block.sink == kind:
                return block
        return None

    def predecessors(self, block_id: int) -> list[tuple[int, BlockEdge]]:
        """Resolved incoming edges as ``(source block id, edge)`` pairs."""
        return list(self._preds.get(block_id, ()))

    def edges(self) -> list[tuple[int, BlockEdge]]:
        return [(block.id, edge) for block in self.blocks for edge in block.successors]

    def unresolved_jumps(self) -> list[tuple[int, BlockEdge]]:
        return [(block_id, edge) for block_id, edge in self.edges() if edge.confidence == Confidence.UNRESOLVED]

    def jumpdest_blocks(self) -> list[int]:
        return list(self._jumpdest_ids)

    def reachable(self, *, upper_bound: bool = False) -> frozenset[int]:
        """Block ids reachable from the entry block, computed once per mode.

        Without *upper_bound* only resolved edges are followed, which is an
        under-approximation when unresolved jumps exist. With it, unresolved
        jumps are assumed to reach every JUMPDEST block; those are enqueued
        together the first time an unresolved edge is met.
        """
        cached = self._reachable.get(upper_bound)
        if cached is not None:
            return cached
        entry = self.entry
        if entry is None:
            self._reachable[upper_bound] = frozenset()
            return self._reachable[upper_bound]
        seen = {entry.id}
        queue = deque([entry.id])
        jumpdests_added = False
        while queue:
            current = queue.popleft()
            for edge in self.blocks[current].successors:
                if edge.target is not None:
                    targets: list[int] = [edge.target]
                elif upper_bound and not jumpdests_added:
                    jumpdests_added = True
                    targets = self._jumpdest_ids
                else:
                    continue
                for target in targets:
                    if target not in seen:
                        seen.add(target)
                        queue.append(target)
        self._reachable[upper_bound] = frozenset(seen)
        return self._reachable[upper_bound]

    def exits_from(self, block_id: int, *, limit: int = 256) -> ExitSummary:
        """Collect the halting exits reachable from *block_id* through resolved edges."""
        summary = ExitSummary()
        seen = {block_id}
        queue = deque([block_id])
        visited = 0
        while queue:
            if visited >= limit:
                summary.truncated = True
                break
            current = self.blocks[queue.popleft()]
            visited += 1

            if current.sink == SinkKind.INVALID_JUMP_TARGET:
                summary.invalid_jumps += 1
                continue
            exit_opcode = current.exit_opcode
            if exit_opcode is not None:
                offset = current.last.offset if current.last is not None else self.code_size
                if exit_opcode in NORMAL_EXITS:
                    summary.normal_offsets.append(offset)
                else:
                    summary.failing_offsets.append(offset)
                continue

            for edge in current.successors:
                if edge.target is None:
                    summary.unresolved = True
                    continue
                if edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return summary

    def summary(self) -> dict[str, Any]:
        return {
            "block_count": len(self.code_blocks()),
            "edge_count": len(self.edges()),
            "unresolved_jump_count": len(self.unresolved_jumps()),
        }
