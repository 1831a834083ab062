"""Bounded abstract interpreter for straight-line EVM code."""
from __future__ import annotations

import logging
from collections.abc import Sequence

from ..evm.decoder import Instruction
from ..evm.opcodes import OPCODE_TABLE, HALTING, OpCode, is_dup, is_push, is_swap
from .state import WORD_MASK, BlockTrace, Effect, ShadowStack, StackLimitExceeded, SymbolicValue

__all__ = ["fold", "interpret"]

logger = logging.getLogger(__name__)

_SIGN_BIT = 1 << 255

_ENVIRONMENT: frozenset[OpCode] = frozenset(
    {
        OpCode.ADDRESS,
        OpCode.ORIGIN,
        OpCode.CALLER,
        OpCode.CALLVALUE,
        OpCode.CALLDATASIZE,
        OpCode.CODESIZE,
        OpCode.GASPRICE,
        OpCode.RETURNDATASIZE,
        OpCode.COINBASE,
        OpCode.TIMESTAMP,
        OpCode.NUMBER,
        OpCode.PREVRANDAO,
        OpCode.GASLIMIT,
        OpCode.CHAINID,
        OpCode.SELFBALANCE,
        OpCode.BASEFEE,
        OpCode.BLOBBASEFEE,
        OpCode.MSIZE,
        OpCode.GAS,
    }
)


def _signed(value: int) -> int:
    return value - (1 << 256) if value & _SIGN_BIT else value


def fold(opcode: OpCode, values: Sequence[int]) -> int | None:
    """Evaluate *opcode* on concrete operands given in pop order, or return None."""
    if opcode == OpCode.ADD:
        return (values[0] + values[1]) & WORD_MASK
    if opcode == OpCode.MUL:
        return (values[0] * values[1]) & WORD_MASK
    if opcode == OpCode.SUB:
        return (values[0] - values[1]) & WORD_MASK
    if opcode == OpCode.DIV:
        return 0 if values[1] == 0 else values[0] // values[1]
    if opcode == OpCode.SDIV:
        a, b = _signed(values[0]), _signed(values[1])
        if b == 0:
            return 0
        quotient = abs(a) // abs(b)
        return (-quotient if (a < 0) != (b < 0) else quotient) & WORD_MASK
    if opcode == OpCode.MOD:
        return 0 if values[1] == 0 else values[0] % values[1]
    if opcode == OpCode.SMOD:
        a, b = _signed(values[0]), _signed(values[1])
        if b == 0:
            return 0
        remainder = abs(a) % abs(b)
        return (-remainder if a < 0 else remainder) & WORD_MASK
    if opcode == OpCode.ADDMOD:
        return 0 if values[2] == 0 else (values[0] + values[1]) % values[2]
    if opcode == OpCode.MULMOD:
        return 0 if values[2] == 0 else (values[0] * values[1]) % values[2]
    if opcode == OpCode.EXP:
        return pow(values[0], values[1], 1 << 256)
    if opcode == OpCode.SIGNEXTEND:
        size, value = values
        if size >= 31:
            return value
        bits = 8 * (size + 1)
        sign = 1 << (bits - 1)
        low = value & ((1 << bits) - 1)
        return (low | (WORD_MASK ^ ((1 << bits) - 1))) if low & sign else low
    if opcode == OpCode.LT:
        return int(values[0] < values[1])
    if opcode == OpCode.GT:
        return int(values[0] > values[1])
    if opcode == OpCode.SLT:
        return int(_signed(values[0]) < _signed(values[1]))
    if opcode == OpCode.SGT:
        return int(_signed(values[0]) > _signed(values[1]))
    if opcode == OpCode.EQ:
        return int(values[0] == values[1])
    if opcode == OpCode.ISZERO:
        return int(values[0] == 0)
    if opcode == OpCode.AND:
        return values[0] & values[1]
    if opcode == OpCode.OR:
        return values[0] | values[1]
    if opcode == OpCode.XOR:
        return values[0] ^ values[1]
    if opcode == OpCode.NOT:
        return WORD_MASK ^ values[0]
    if opcode == OpCode.BYTE:
        index, value = values
        return 0 if index >= 32 else (value >> (248 - index * 8)) & 0xFF
    if opcode == OpCode.SHL:
        shift, value = values
        return 0 if shift >= 256 else (value << shift) & WORD_MASK
    if opcode == OpCode.SHR:
        shift, value = values
        return 0 if shift >= 256 else value >> shift
    if opcode == OpCode.SAR:
        shift, value = values
        signed = _signed(value)
        if shift >= 256:
            return WORD_MASK if signed < 0 else 0
        return (signed >> shift) & WORD_MASK
    return None


class _Memory:
    """Word-granular memory for constant offsets inside one trace."""

    def __init__(self) -> None:
        self._words: dict[int, SymbolicValue] = {}

    def store(self, offset: SymbolicValue, value: SymbolicValue) -> None:
        if offset.concrete is None:
            # A store to an unknown address may alias anything we remember.
            self._words.clear()
            return
        start = offset.concrete
        for known in [key for key in self._words if abs(key - start) < 32 and key != start]:
            del self._words[known]
        self._words[start] = value

    def load(self, offset: SymbolicValue) -> SymbolicValue | None:
        if offset.concrete is None:
            return None
        return self._words.get(offset.concrete)

    def words(self, offset: SymbolicValue, length: SymbolicValue) -> tuple[SymbolicValue, ...] | None:
        if offset.concrete is None or length.concrete is None or length.concrete % 32:
            return None
        count = length.concrete // 32
        if count > 8:
            return None
        collected: list[SymbolicValue] = []
        for index in range(count):
            word = self._words.get(offset.concrete + 32 * index)
            if word is None:
                return None
            collected.append(word)
        return tuple(collected)


def interpret(
    instructions: Sequence[Instruction],
    *,
    entry_stack: list[SymbolicValue] | None = None,
    max_steps: int = 4096,
    max_stack_depth: int = 1024,
) -> BlockTrace:
    """Run *instructions* over a shadow stack and record each instruction's effect.

    Interpretation stops at the first halting or jumping instruction, after
    *max_steps* instructions, or when the shadow stack would exceed
    *max_stack_depth*; the last two leave ``complete`` False.
    """
    stack = ShadowStack(entry_stack, max_depth=max_stack_depth)
    memory = _Memory()
    trace = BlockTrace()

    for step, instr in enumerate(instructions):
        if step >= max_steps:
            trace.complete = False
            trace.stop_reason = f"step ceiling {max_steps} reached"
            logger.debug("Interpretation stopped at 0x%04X: %s", instr.offset, trace.stop_reason)
            break
        try:
            effect = _step(instr, stack, memory)
        except StackLimitExceeded as exc:
            trace.complete = False
            trace.stop_reason = str(exc)
            logger.debug("Interpretation stopped at 0x%04X: %s", instr.offset, exc)
            break
        trace.effects.append(effect)
        if instr.opcode in HALTING or instr.opcode in (OpCode.JUMP, OpCode.JUMPI):
            break

    trace.exit_stack = stack.snapshot()
    return trace


def _step(instr: Instruction, stack: ShadowStack, memory: _Memory) -> Effect:
    opcode = instr.opcode
    offset = instr.offset

    if instr.is_unknown:
        return Effect(instr, ())

    if is_push(opcode):
        result = SymbolicValue.const(instr.value or 0, offset)
        stack.push(result)
        return Effect(instr, (), result)

    if is_dup(opcode):
        stack.dup(opcode - OpCode.DUP1 + 1)
        return Effect(instr, ())

    if is_swap(opcode):
        stack.swap(opcode - OpCode.SWAP1 + 1)
        return Effect(instr, ())

    if opcode in _ENVIRONMENT:
        result = SymbolicValue.env(opcode.name, offset)
        stack.push(result)
        return Effect(instr, (), result)

    if opcode == OpCode.PC:
        result = SymbolicValue.const(offset, offset)
        stack.push(result)
        return Effect(instr, (), result)

    info = OPCODE_TABLE[int(opcode)]
    operands = stack.pop_many(info.pops)

    if opcode == OpCode.MSTORE:
        memory.store(operands[0], operands[1])
        return Effect(instr, operands)

    if opcode in (OpCode.MSTORE8, OpCode.CALLDATACOPY, OpCode.CODECOPY, OpCode.RETURNDATACOPY, OpCode.MCOPY):
        # Partial or bulk writes invalidate the word model.
        memory.store(SymbolicValue.unknown("memory"), SymbolicValue.unknown("memory"))
        return Effect(instr, operands)

    if info.pushes == 0:
        return Effect(instr, operands)

    if opcode == OpCode.MLOAD:
        result = memory.load(operands[0]) or SymbolicValue(op="MLOAD", args=operands, offset=offset)
    elif opcode == OpCode.KECCAK256:
        words = memory.words(operands[0], operands[1])
        result = SymbolicValue(op="KECCAK256", args=words if words is not None else operands, offset=offset)
    else:
        concrete = None
        if all(operand.concrete is not None for operand in operands):
            concrete = fold(opcode, [operand.concrete for operand in operands])  # type: ignore[misc]
        result = SymbolicValue(op=opcode.name, args=operands, concrete=concrete, offset=offset)

    if opcode in (OpCode.CALL, OpCode.CALLCODE, OpCode.DELEGATECALL, OpCode.STATICCALL, OpCode.CREATE, OpCode.CREATE2):
        # Calls may write memory through their return buffer.
        memory.store(SymbolicValue.unknown("memory"), SymbolicValue.unknown("memory"))

    stack.push(result)
    return Effect(instr, operands, result)
