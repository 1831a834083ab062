"""Abstract interpretation state models."""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field

from ..evm.decoder import Instruction
from ..evm.opcodes import OpCode

__all__ = ["BlockTrace", "Effect", "ShadowStack", "StackLimitExceeded", "SymbolicValue"]

WORD_MASK = (1 << 256) - 1

CONST = "const"
ENTRY = "entry"
ENV = "env"
UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True, eq=False)
class SymbolicValue:
    """A node in a value-provenance tree.

    Leaves are constants, entry-stack placeholders, environment reads
    (CALLER, TIMESTAMP, ...) and unknowns; inner nodes are named after the
    opcode that produced them and keep their operands in pop order.
    """

    op: str
    args: tuple[SymbolicValue, ...] = ()
    concrete: int | None = None
    name: str | None = None
    offset: int = -1

    @classmethod
    def const(cls, value: int, offset: int = -1) -> SymbolicValue:
        return cls(op=CONST, concrete=value & WORD_MASK, offset=offset)

    @classmethod
    def entry(cls, index: int) -> SymbolicValue:
        return cls(op=ENTRY, name=f"stack[{index}]")

    @classmethod
    def env(cls, name: str, offset: int = -1) -> SymbolicValue:
        return cls(op=ENV, name=name, offset=offset)

    @classmethod
    def unknown(cls, reason: str, offset: int = -1) -> SymbolicValue:
        return cls(op=UNKNOWN, name=reason, offset=offset)

    def is_concrete(self) -> bool:
        return self.concrete is not None

    @property
    def is_leaf(self) -> bool:
        return not self.args

    @property
    def is_sload(self) -> bool:
        return self.op == "SLOAD"

    @property
    def slot(self) -> int | None:
        """Concrete storage key for an SLOAD node."""
        if self.op != "SLOAD" or not self.args:
            return None
        return self.args[0].concrete

    def walk(self, limit: int = 4096) -> Iterator[SymbolicValue]:
        """Yield every node of the tree once, depth-first, at most *limit* nodes."""
        seen: set[int] = set()
        stack: list[SymbolicValue] = [self]
        produced = 0
        while stack and produced < limit:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            produced += 1
            yield node
            stack.extend(reversed(node.args))

    def depends_on(self, *ops: str) -> bool:
        wanted = set(ops)
        return any(node.op in wanted or (node.op == ENV and node.name in wanted) for node in self.walk())

    def render(self, depth: int = 4) -> str:
        if self.op == CONST:
            return hex(self.concrete) if self.concrete is not None and self.concrete > 9 else str(self.concrete)
        if self.op in (ENTRY, ENV):
            return str(self.name)
        if self.op == UNKNOWN:
            return f"?{self.name}"
        if depth <= 0:
            return f"{self.op}(...)"
        inner = ", ".join(arg.render(depth - 1) for arg in self.args)
        return f"{self.op}({inner})"

    def __repr__(self) -> str:
        return f"SymbolicValue({self.render()})"


@dataclass(slots=True)
class Effect:
    """One interpreted instruction with its popped operands and pushed result."""

    instruction: Instruction
    operands: tuple[SymbolicValue, ...]
    result: SymbolicValue | None = None

    @property
    def opcode(self) -> OpCode:
        return self.instruction.opcode

    @property
    def offset(self) -> int:
        return self.instruction.offset


@dataclass(slots=True)
class BlockTrace:
    effects: list[Effect] = field(default_factory=list)
    exit_stack: list[SymbolicValue] = field(default_factory=list)
    complete: bool = True
    stop_reason: str | None = None

    def effects_of(self, *opcodes: OpCode) -> list[Effect]:
        wanted = set(opcodes)
        return [effect for effect in self.effects if effect.opcode in wanted]

    @property
    def last(self) -> Effect | None:
        return self.effects[-1] if self.effects else None


class StackLimitExceeded(Exception):
    pass


class ShadowStack:
    """Operand stack whose unseen lower part is filled lazily from the entry stack."""

    def __init__(self, entry: list[SymbolicValue] | None = None, max_depth: int = 1024) -> None:
        self._items: list[SymbolicValue] = []
        self._entry = list(entry) if entry else []
        self._drawn = 0
        self.max_depth = max_depth

    def _draw(self) -> SymbolicValue:
        index = self._drawn
        self._drawn += 1
        if self._entry:
            return self._entry.pop()
        return SymbolicValue.entry(index)

    def _ensure(self, count: int) -> None:
        while len(self._items) < count:
            self._items.insert(0, self._draw())

    def push(self, value: SymbolicValue) -> None:
        if len(self._items) >= self.max_depth:
            raise StackLimitExceeded(f"shadow stack exceeds {self.max_depth} entries")
        self._items.append(value)

    def pop(self) -> SymbolicValue:
        self._ensure(1)
        return self._items.pop()

    def pop_many(self, count: int) -> tuple[SymbolicValue, ...]:
        return tuple(self.pop() for _ in range(count))

    def dup(self, depth: int) -> None:
        self._ensure(depth)
        self.push(self._items[-depth])

    def swap(self, depth: int) -> None:
        self._ensure(depth + 1)
        self._items[-1], self._items[-1 - depth] = self._items[-1 - depth], self._items[-1]

    def snapshot(self) -> list[SymbolicValue]:
        """Visible stack, bottom first, with any unread entry values underneath."""
        return [*self._entry, *self._items] if self._entry else list(self._items)
