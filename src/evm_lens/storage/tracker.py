"""Storage access tracking over a control-flow graph."""
from __future__ import annotations

import logging
from collections import deque

from ..cfg.graph import BasicBlock, ControlFlowGraph, EdgeKind
from ..config import DEFAULT_CONFIG, AnalysisConfig
from ..engine.state import BlockTrace, SymbolicValue
from ..engine.symbolic import interpret
from ..evm.opcodes import EXTERNAL_CALLS, OpCode
from .model import (
    AccessKind,
    BranchCondition,
    ConditionRef,
    Guard,
    GuardStatus,
    Provenance,
    ProvenanceKind,
    StorageAnalysis,
    StorageSlotUsage,
)
from .provenance import split_condition

__all__ = ["StorageTracker", "track_storage"]

logger = logging.getLogger(__name__)

_SELECTOR_LIMIT = 1 << 32
_SIDE_EFFECTS = frozenset(
    {
        OpCode.SSTORE,
        OpCode.LOG0,
        OpCode.LOG1,
        OpCode.LOG2,
        OpCode.LOG3,
        OpCode.LOG4,
        OpCode.CREATE,
        OpCode.CREATE2,
        OpCode.SELFDESTRUCT,
        *EXTERNAL_CALLS,
    }
)


class StorageTracker:
    """Builds the slot-usage map for one CFG.

    Each block is interpreted once with its entry stack seeded from a unique
    predecessor (when there is one) so that values computed just before a
    jump stay visible on the other side.
    """

    def __init__(self, cfg: ControlFlowGraph, config: AnalysisConfig = DEFAULT_CONFIG) -> None:
        self.cfg = cfg
        self.config = config
        self._trace_memo: dict[tuple[int, int], BlockTrace] = {}
        self._has_unresolved = bool(cfg.unresolved_jumps())

    def run(self) -> StorageAnalysis:
        analysis = StorageAnalysis()
        for block in self.cfg.code_blocks():
            analysis.traces[block.id] = self.trace(block.id)
        for block in self.cfg.code_blocks():
            condition = self._branch_condition(block, analysis.traces[block.id])
            if condition is not None:
                analysis.conditions[block.id] = condition
        analysis.guards = self._guards(analysis.conditions)
        analysis.usages = self._usages(analysis)
        analysis.dispatcher_found, analysis.getters = self._getters(analysis)
        logger.debug(
            "Storage tracking: %d usages, %d branch conditions, %d getter slots",
            len(analysis.usages),
            len(analysis.conditions),
            len(analysis.getters),
        )
        return analysis

    # -- per-block interpretation -------------------------------------------------

    def _unique_predecessor(self, block: BasicBlock) -> int | None:
        preds = self.cfg.predecessors(block.id)
        if len(preds) != 1:
            return None
        # An unresolved jump elsewhere may also land on a JUMPDEST.
        if block.is_jumpdest and self._has_unresolved:
            return None
        return preds[0][0]

    def trace(self, block_id: int, depth: int | None = None) -> BlockTrace:
        depth = self.config.max_context_blocks if depth is None else depth
        key = (block_id, depth)
        cached = self._trace_memo.get(key)
        if cached is not None:
            return cached

        block = self.cfg.block(block_id)
        entry_stack: list[SymbolicValue] | None = None
        if depth > 0:
            pred = self._unique_predecessor(block)
            if pred is not None and pred != block_id:
                entry_stack = list(self.trace(pred, depth - 1).exit_stack)

        trace = interpret(
            block.instructions,
            entry_stack=entry_stack,
            max_steps=self.config.max_block_steps,
            max_stack_depth=self.config.max_stack_depth,
        )
        self._trace_memo[key] = trace
        return trace

    def _branch_condition(self, block: BasicBlock, trace: BlockTrace) -> BranchCondition | None:
        last = trace.last
        if last is None or last.opcode != OpCode.JUMPI or last.instruction.is_unknown or len(last.operands) < 2:
            return None
        value = last.operands[1]
        comparison, operands, negations = split_condition(value, self.config.max_peel_depth)
        return BranchCondition(
            block=block.id,
            jumpi_offset=last.offset,
            value=value,
            comparison=comparison,
            operands=operands,
            negations=negations,
        )

    # -- guarding paths -----------------------------------------------------------

    def _guards(self, conditions: dict[int, BranchCondition]) -> dict[int, Guard]:
        """Shortest-path guards from the entry block over resolved edges."""
        entry = self.cfg.entry
        if entry is None:
            return {}

        cap = self.config.max_guard_paths
        dist: dict[int, int] = {entry.id: 0}
        count: dict[int, int] = {entry.id: 1}
        parent: dict[int, tuple[int, EdgeKind]] = {}
        queue = deque([entry.id])
        steps = 0
        exhausted = False

        while queue:
            current = queue.popleft()
            for edge in self.cfg.block(current).successors:
                if edge.target is None:
                    continue
                steps += 1
                if steps > self.config.max_path_steps:
                    exhausted = True
                    break
                target = edge.target
                if target not in dist:
                    dist[target] = dist[current] + 1
                    count[target] = count[current]
                    parent[target] = (current, edge.kind)
                    queue.append(target)
                elif dist[target] == dist[current] + 1:
                    count[target] = min(cap + 1, count[target] + count[current])
            if exhausted:
                logger.debug("Guard enumeration hit the %d step ceiling", self.config.max_path_steps)
                break

        # Counts past the frontier are incomplete once the ceiling is hit.
        frontier = min((dist[block_id] for block_id in queue), default=None) if exhausted else None
        guards: dict[int, Guard] = {}
        for block in self.cfg.blocks:
            if block.id not in dist:
                guards[block.id] = Guard(GuardStatus.TOO_MANY_PATHS if exhausted else GuardStatus.UNREACHED)
            elif count[block.id] > cap or (frontier is not None and dist[block.id] >= frontier):
                guards[block.id] = Guard(GuardStatus.TOO_MANY_PATHS)
            else:
                guards[block.id] = Guard(GuardStatus.KNOWN, self._path_conditions(block.id, parent, conditions))
        return guards

    @staticmethod
    def _path_conditions(
        block_id: int,
        parent: dict[int, tuple[int, EdgeKind]],
        conditions: dict[int, BranchCondition],
    ) -> tuple[ConditionRef, ...]:
        collected: list[ConditionRef] = []
        current = block_id
        while current in parent:
            source, kind = parent[current]
            if kind in (EdgeKind.CONDITIONAL_TAKEN, EdgeKind.CONDITIONAL_NOT_TAKEN):
                condition = conditions.get(source)
                if condition is not None:
                    collected.append(condition.ref(kind))
                else:
                    collected.append(
                        ConditionRef(
                            block=source,
                            jumpi_offset=-1,
                            branch=kind,
                            comparison="UNKNOWN",
                            operands=(Provenance(ProvenanceKind.UNKNOWN, detail="condition not decoded"),),
                            asserted=kind == EdgeKind.CONDITIONAL_TAKEN,
                        )
                    )
            current = source
        collected.reverse()
        return tuple(collected)

    # -- usages -------------------------------------------------------------------

    def _usages(self, analysis: StorageAnalysis) -> list[StorageSlotUsage]:
        usages: list[StorageSlotUsage] = []
        for block_id, trace in analysis.traces.items():
            guard = analysis.guard(block_id)
            for effect in trace.effects:
                if effect.instruction.is_unknown or not effect.operands:
                    continue
                if effect.opcode == OpCode.SLOAD:
                    key = effect.operands[0]
                    usages.append(
                        StorageSlotUsage(
                            slot=key.concrete,
                            key=key,
                            block=block_id,
                            offset=effect.offset,
                            access=AccessKind.READ,
                            guard=guard,
                            value=effect.result,
                        )
                    )
                elif effect.opcode == OpCode.SSTORE:
                    key = effect.operands[0]
                    usages.append(
                        StorageSlotUsage(
                            slot=key.concrete,
                            key=key,
                            block=block_id,
                            offset=effect.offset,
                            access=AccessKind.WRITE,
                            guard=guard,
                            value=effect.operands[1],
                        )
                    )
        usages.sort(key=lambda usage: (usage.offset, usage.access))
        return usages

    # -- public getters -----------------------------------------------------------

    def _getters(self, analysis: StorageAnalysis) -> tuple[bool, dict[int, list[int]]]:
        """Find dispatcher entries whose bodies only read storage.

        A dispatcher entry is a branch comparing a 4-byte constant with a
        value extracted from calldata. Reaching a read-only body from it marks
        every constant slot the body reads as publicly readable.
        """
        getters: dict[int, list[int]] = {}
        dispatcher_found = False
        for condition in analysis.conditions.values():
            selector = self._selector(condition)
            if selector is None:
                continue
            dispatcher_found = True
            # The function body is on the branch where the selector comparison holds.
            kind = EdgeKind.CONDITIONAL_TAKEN if condition.negations % 2 == 0 else EdgeKind.CONDITIONAL_NOT_TAKEN
            edge = next((e for e in self.cfg.block(condition.block).successors if e.kind == kind), None)
            if edge is None or edge.target is None:
                continue
            read_slots = self._read_only_slots(edge.target, analysis)
            for slot in read_slots:
                getters.setdefault(slot, []).append(selector)
        return dispatcher_found, {slot: sorted(set(selectors)) for slot, selectors in sorted(getters.items())}

    @staticmethod
    def _selector(condition: BranchCondition) -> int | None:
        if condition.comparison != "EQ" or len(condition.operands) != 2:
            return None
        left, right = condition.operands
        for constant, other in ((left, right), (right, left)):
            if (
                constant.kind == ProvenanceKind.CONSTANT
                and constant.value is not None
                and constant.value < _SELECTOR_LIMIT
                and (other.kind == ProvenanceKind.CALLDATA or "CALLDATALOAD" in other.detail)
            ):
                return constant.value
        return None

    def _read_only_slots(self, start: int, analysis: StorageAnalysis) -> set[int]:
        seen = {start}
        queue = deque([start])
        slots: set[int] = set()
        visited = 0
        while queue and visited < self.config.max_exit_search_blocks:
            current = self.cfg.block(queue.popleft())
            visited += 1
            if current.is_sink:
                continue
            # Another selector comparison means we walked back into the dispatcher.
            condition = analysis.conditions.get(current.id)
            if condition is not None and self._selector(condition) is not None:
                continue
            if current.contains(*_SIDE_EFFECTS):
                return set()
            trace = analysis.traces.get(current.id)
            if trace is not None:
                for effect in trace.effects_of(OpCode.SLOAD):
                    if effect.operands and effect.operands[0].concrete is not None:
                        slots.add(effect.operands[0].concrete)
            for edge in current.successors:
                if edge.target is not None and edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return slots


def track_storage(cfg: ControlFlowGraph, config: AnalysisConfig = DEFAULT_CONFIG) -> StorageAnalysis:
    """Record every SLOAD/SSTORE with its guarding branch conditions."""
    return StorageTracker(cfg, config).run()
