"""Control-flow graph construction."""
from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence

from ..config import DEFAULT_CONFIG, AnalysisConfig
from ..engine.symbolic import interpret
from ..evm.decoder import Instruction
from ..evm.opcodes import HALTING, TERMINATORS, OpCode, is_push
from .graph import BasicBlock, BlockEdge, Confidence, ControlFlowGraph, EdgeKind, JumpViolation, SinkKind

__all__ = ["build_cfg", "check_jump_validity", "resolve_jump_target"]

logger = logging.getLogger(__name__)


def _partition(instructions: Sequence[Instruction]) -> list[BasicBlock]:
    blocks: list[BasicBlock] = []
    current: list[Instruction] = []

    def close() -> None:
        if current:
            blocks.append(
                BasicBlock(
                    id=len(blocks),
                    start_offset=current[0].offset,
                    end_offset=current[-1].offset,
                    instructions=list(current),
                )
            )
            current.clear()

    for instr in instructions:
        if instr.opcode == OpCode.JUMPDEST and not instr.is_unknown:
            close()
        current.append(instr)
        if instr.opcode in TERMINATORS:
            close()
    close()
    return blocks


def resolve_jump_target(
    block_instructions: Sequence[Instruction],
    config: AnalysisConfig = DEFAULT_CONFIG,
) -> tuple[int | None, Confidence]:
    """Resolve the destination of the JUMP/JUMPI that ends *block_instructions*.

    A push immediately before the jump is ``Exact``. Otherwise the last
    ``config.jump_window`` instructions are interpreted over a shadow stack;
    a constant destination is ``Derived`` and anything else ``Unresolved``.
    """
    jump = block_instructions[-1]
    if len(block_instructions) >= 2:
        previous = block_instructions[-2]
        if is_push(previous.opcode) and not previous.is_unknown:
            return previous.value, Confidence.EXACT

    window = list(block_instructions[-config.jump_window :])
    trace = interpret(window, max_steps=config.jump_window, max_stack_depth=config.max_stack_depth)
    last = trace.last
    if last is None or last.instruction is not jump or not last.operands:
        return None, Confidence.UNRESOLVED
    target = last.operands[0]
    if target.concrete is None:
        return None, Confidence.UNRESOLVED
    return target.concrete, Confidence.DERIVED


class _Builder:
    def __init__(self, instructions: Sequence[Instruction], config: AnalysisConfig) -> None:
        self.config = config
        self.instructions = instructions
        self.blocks = _partition(instructions)
        self.jumpdests = frozenset(
            instr.offset for instr in instructions if instr.opcode == OpCode.JUMPDEST and not instr.is_unknown
        )
        self.by_offset = {block.start_offset: block.id for block in self.blocks}
        self.code_size = instructions[-1].next_offset if instructions else 0
        self._sinks: dict[SinkKind, int] = {}

    def sink_id(self, kind: SinkKind) -> int:
        block_id = self._sinks.get(kind)
        if block_id is None:
            block_id = len(self.blocks)
            self.blocks.append(BasicBlock(id=block_id, start_offset=-1, end_offset=-1, sink=kind))
            self._sinks[kind] = block_id
        return block_id

    def fallthrough_id(self, block: BasicBlock) -> int:
        next_offset = block.last.next_offset
        block_id = self.by_offset.get(next_offset)
        return block_id if block_id is not None else self.sink_id(SinkKind.CODE_END)

    def jump_edge(self, block: BasicBlock, kind: EdgeKind) -> BlockEdge:
        target_offset, confidence = resolve_jump_target(block.instructions, self.config)
        if kind == EdgeKind.UNCONDITIONAL_JUMP and confidence != Confidence.EXACT:
            kind = EdgeKind.INDIRECT_JUMP
        if target_offset is None:
            return BlockEdge(kind=kind, target=None, confidence=confidence)
        if target_offset in self.jumpdests:
            target = self.by_offset[target_offset]
        else:
            target = self.sink_id(SinkKind.INVALID_JUMP_TARGET)
        return BlockEdge(kind=kind, target=target, confidence=confidence, target_offset=target_offset)

    def resolve(self, block: BasicBlock) -> None:
        last = block.last
        if last.opcode == OpCode.JUMP and not last.is_unknown:
            block.successors = [self.jump_edge(block, EdgeKind.UNCONDITIONAL_JUMP)]
        elif last.opcode == OpCode.JUMPI and not last.is_unknown:
            block.successors = [
                self.jump_edge(block, EdgeKind.CONDITIONAL_TAKEN),
                BlockEdge(kind=EdgeKind.CONDITIONAL_NOT_TAKEN, target=self.fallthrough_id(block)),
            ]
        elif last.opcode in HALTING:
            block.successors = []
        else:
            block.successors = [BlockEdge(kind=EdgeKind.FALLTHROUGH, target=self.fallthrough_id(block))]

    def run(self) -> ControlFlowGraph:
        code_block_count = len(self.blocks)
        visited: set[int] = set()
        worklist: deque[int] = deque()
        if 0 in self.by_offset:
            worklist.append(0)

        # Blocks reachable from the entry first, then everything left, in offset order.
        remaining = iter(sorted(self.by_offset))
        while True:
            if not worklist:
                offset = next((o for o in remaining if o not in visited), None)
                if offset is None:
                    break
                worklist.append(offset)
            offset = worklist.popleft()
            if offset in visited:
                continue
            visited.add(offset)
            block = self.blocks[self.by_offset[offset]]
            self.resolve(block)
            for edge in block.successors:
                if edge.target is not None and edge.target < code_block_count:
                    target_offset = self.blocks[edge.target].start_offset
                    if target_offset not in visited:
                        worklist.append(target_offset)

        cfg = ControlFlowGraph(blocks=self.blocks, jumpdests=self.jumpdests, code_size=self.code_size)
        cfg.violations = check_jump_validity(cfg)
        summary = cfg.summary()
        logger.debug(
            "CFG built: %d blocks, %d edges, %d unresolved jumps, %d invalid targets",
            summary["block_count"],
            summary["edge_count"],
            summary["unresolved_jump_count"],
            len(cfg.violations),
        )
        return cfg


def check_jump_validity(cfg: ControlFlowGraph) -> list[JumpViolation]:
    """Every Exact/Derived jump edge must land on a JUMPDEST-headed block."""
    violations: list[JumpViolation] = []
    for block in cfg.blocks:
        for edge in block.successors:
            if not edge.is_jump or edge.confidence == Confidence.UNRESOLVED or edge.target is None:
                continue
            target = cfg.block(edge.target)
            if target.is_jumpdest:
                continue
            target_offset = edge.target_offset if edge.target_offset is not None else target.start_offset
            if target_offset >= cfg.code_size:
                reason = f"target 0x{target_offset:X} is outside the code"
            else:
                reason = f"target 0x{target_offset:X} is not a JUMPDEST"
            violations.append(
                JumpViolation(
                    block=block.id,
                    jump_offset=block.last.offset,
                    target_offset=target_offset,
                    confidence=edge.confidence,
                    reason=reason,
                )
            )
    return violations


def build_cfg(instructions: Sequence[Instruction], config: AnalysisConfig = DEFAULT_CONFIG) -> ControlFlowGraph:
    """Partition *instructions* into basic blocks and resolve their edges."""
    return _Builder(instructions, config).run()
