"""EVM opcode definitions and per-opcode metadata.

Covers the Cancun instruction set. The tables below are built once at import
time and never mutated afterwards.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class OpCode(IntEnum):
    STOP = 0x00
    ADD = 0x01
    MUL = 0x02
    SUB = 0x03
    DIV = 0x04
    SDIV = 0x05
    MOD = 0x06
    SMOD = 0x07
    ADDMOD = 0x08
    MULMOD = 0x09
    EXP = 0x0A
    SIGNEXTEND = 0x0B
    LT = 0x10
    GT = 0x11
    SLT = 0x12
    SGT = 0x13
    EQ = 0x14
    ISZERO = 0x15
    AND = 0x16
    OR = 0x17
    XOR = 0x18
    NOT = 0x19
    BYTE = 0x1A
    SHL = 0x1B
    SHR = 0x1C
    SAR = 0x1D
    KECCAK256 = 0x20
    ADDRESS = 0x30
    BALANCE = 0x31
    ORIGIN = 0x32
    CALLER = 0x33
    CALLVALUE = 0x34
    CALLDATALOAD = 0x35
    CALLDATASIZE = 0x36
    CALLDATACOPY = 0x37
    CODESIZE = 0x38
    CODECOPY = 0x39
    GASPRICE = 0x3A
    EXTCODESIZE = 0x3B
    EXTCODECOPY = 0x3C
    RETURNDATASIZE = 0x3D
    RETURNDATACOPY = 0x3E
    EXTCODEHASH = 0x3F
    BLOCKHASH = 0x40
    COINBASE = 0x41
    TIMESTAMP = 0x42
    NUMBER = 0x43
    PREVRANDAO = 0x44
    GASLIMIT = 0x45
    CHAINID = 0x46
    SELFBALANCE = 0x47
    BASEFEE = 0x48
    BLOBHASH = 0x49
    BLOBBASEFEE = 0x4A
    POP = 0x50
    MLOAD = 0x51
    MSTORE = 0x52
    MSTORE8 = 0x53
    SLOAD = 0x54
    SSTORE = 0x55
    JUMP = 0x56
    JUMPI = 0x57
    PC = 0x58
    MSIZE = 0x59
    GAS = 0x5A
    JUMPDEST = 0x5B
    TLOAD = 0x5C
    TSTORE = 0x5D
    MCOPY = 0x5E
    PUSH0 = 0x5F
    PUSH1 = 0x60
    PUSH2 = 0x61
    PUSH3 = 0x62
    PUSH4 = 0x63
    PUSH5 = 0x64
    PUSH6 = 0x65
    PUSH7 = 0x66
    PUSH8 = 0x67
    PUSH9 = 0x68
    PUSH10 = 0x69
    PUSH11 = 0x6A
    PUSH12 = 0x6B
    PUSH13 = 0x6C
    PUSH14 = 0x6D
    PUSH15 = 0x6E
    PUSH16 = 0x6F
    PUSH17 = 0x70
    PUSH18 = 0x71
    PUSH19 = 0x72
    PUSH20 = 0x73
    PUSH21 = 0x74
    PUSH22 = 0x75
    PUSH23 = 0x76
    PUSH24 = 0x77
    PUSH25 = 0x78
    PUSH26 = 0x79
    PUSH27 = 0x7A
    PUSH28 = 0x7B
    PUSH29 = 0x7C
    PUSH30 = 0x7D
    PUSH31 = 0x7E
    PUSH32 = 0x7F
    DUP1 = 0x80
    DUP2 = 0x81
    DUP3 = 0x82
    DUP4 = 0x83
    DUP5 = 0x84
    DUP6 = 0x85
    DUP7 = 0x86
    DUP8 = 0x87
    DUP9 = 0x88
    DUP10 = 0x89
    DUP11 = 0x8A
    DUP12 = 0x8B
    DUP13 = 0x8C
    DUP14 = 0x8D
    DUP15 = 0x8E
    DUP16 = 0x8F
    SWAP1 = 0x90
    SWAP2 = 0x91
    SWAP3 = 0x92
    SWAP4 = 0x93
    SWAP5 = 0x94
    SWAP6 = 0x95
    SWAP7 = 0x96
    SWAP8 = 0x97
    SWAP9 = 0x98
    SWAP10 = 0x99
    SWAP11 = 0x9A
    SWAP12 = 0x9B
    SWAP13 = 0x9C
    SWAP14 = 0x9D
    SWAP15 = 0x9E
    SWAP16 = 0x9F
    LOG0 = 0xA0
    LOG1 = 0xA1
    LOG2 = 0xA2
    LOG3 = 0xA3
    LOG4 = 0xA4
    CREATE = 0xF0
    CALL = 0xF1
    CALLCODE = 0xF2
    RETURN = 0xF3
    DELEGATECALL = 0xF4
    CREATE2 = 0xF5
    STATICCALL = 0xFA
    REVERT = 0xFD
    INVALID = 0xFE
    SELFDESTRUCT = 0xFF


@dataclass(frozen=True, slots=True)
class OpInfo:
    opcode: OpCode
    immediate_size: int
    pops: int
    pushes: int

    @property
    def name(self) -> str:
        return self.opcode.name


# (pops, pushes) for every opcode whose effect is not derivable from its family.
_STACK_EFFECTS: dict[OpCode, tuple[int, int]] = {
    OpCode.STOP: (0, 0),
    OpCode.ADD: (2, 1),
    OpCode.MUL: (2, 1),
    OpCode.SUB: (2, 1),
    OpCode.DIV: (2, 1),
    OpCode.SDIV: (2, 1),
    OpCode.MOD: (2, 1),
    OpCode.SMOD: (2, 1),
    OpCode.ADDMOD: (3, 1),
    OpCode.MULMOD: (3, 1),
    OpCode.EXP: (2, 1),
    OpCode.SIGNEXTEND: (2, 1),
    OpCode.LT: (2, 1),
    OpCode.GT: (2, 1),
    OpCode.SLT: (2, 1),
    OpCode.SGT: (2, 1),
    OpCode.EQ: (2, 1),
    OpCode.ISZERO: (1, 1),
    OpCode.AND: (2, 1),
    OpCode.OR: (2, 1),
    OpCode.XOR: (2, 1),
    OpCode.NOT: (1, 1),
    OpCode.BYTE: (2, 1),
    OpCode.SHL: (2, 1),
    OpCode.SHR: (2, 1),
    OpCode.SAR: (2, 1),
    OpCode.KECCAK256: (2, 1),
    OpCode.ADDRESS: (0, 1),
    OpCode.BALANCE: (1, 1),
    OpCode.ORIGIN: (0, 1),
    OpCode.CALLER: (0, 1),
    OpCode.CALLVALUE: (0, 1),
    OpCode.CALLDATALOAD: (1, 1),
    OpCode.CALLDATASIZE: (0, 1),
    OpCode.CALLDATACOPY: (3, 0),
    OpCode.CODESIZE: (0, 1),
    OpCode.CODECOPY: (3, 0),
    OpCode.GASPRICE: (0, 1),
    OpCode.EXTCODESIZE: (1, 1),
    OpCode.EXTCODECOPY: (4, 0),
    OpCode.RETURNDATASIZE: (0, 1),
    OpCode.RETURNDATACOPY: (3, 0),
    OpCode.EXTCODEHASH: (1, 1),
    OpCode.BLOCKHASH: (1, 1),
    OpCode.COINBASE: (0, 1),
    OpCode.TIMESTAMP: (0, 1),
    OpCode.NUMBER: (0, 1),
    OpCode.PREVRANDAO: (0, 1),
    OpCode.GASLIMIT: (0, 1),
    OpCode.CHAINID: (0, 1),
    OpCode.SELFBALANCE: (0, 1),
    OpCode.BASEFEE: (0, 1),
    OpCode.BLOBHASH: (1, 1),
    OpCode.BLOBBASEFEE: (0, 1),
    OpCode.POP: (1, 0),
    OpCode.MLOAD: (1, 1),
    OpCode.MSTORE: (2, 0),
    OpCode.MSTORE8: (2, 0),
    OpCode.SLOAD: (1, 1),
    OpCode.SSTORE: (2, 0),
    OpCode.JUMP: (1, 0),
    OpCode.JUMPI: (2, 0),
    OpCode.PC: (0, 1),
    OpCode.MSIZE: (0, 1),
    OpCode.GAS: (0, 1),
    OpCode.JUMPDEST: (0, 0),
    OpCode.TLOAD: (1, 1),
    OpCode.TSTORE: (2, 0),
    OpCode.MCOPY: (3, 0),
    OpCode.CREATE: (3, 1),
    OpCode.CALL: (7, 1),
    OpCode.CALLCODE: (7, 1),
    OpCode.RETURN: (2, 0),
    OpCode.DELEGATECALL: (6, 1),
    OpCode.CREATE2: (4, 1),
    OpCode.STATICCALL: (6, 1),
    OpCode.REVERT: (2, 0),
    OpCode.INVALID: (0, 0),
    OpCode.SELFDESTRUCT: (1, 0),
}


def _build_table() -> dict[int, OpInfo]:
    table: dict[int, OpInfo] = {}
    for opcode in OpCode:
        value = int(opcode)
        if OpCode.PUSH0 <= value <= OpCode.PUSH32:
            table[value] = OpInfo(opcode, value - OpCode.PUSH0, 0, 1)
        elif OpCode.DUP1 <= value <= OpCode.DUP16:
            depth = value - OpCode.DUP1 + 1
            table[value] = OpInfo(opcode, 0, depth, depth + 1)
        elif OpCode.SWAP1 <= value <= OpCode.SWAP16:
            depth = value - OpCode.SWAP1 + 2
            table[value] = OpInfo(opcode, 0, depth, depth)
        elif OpCode.LOG0 <= value <= OpCode.LOG4:
            table[value] = OpInfo(opcode, 0, value - OpCode.LOG0 + 2, 0)
        else:
            pops, pushes = _STACK_EFFECTS[opcode]
            table[value] = OpInfo(opcode, 0, pops, pushes)
    return table


OPCODE_TABLE: dict[int, OpInfo] = _build_table()

TERMINATORS: frozenset[OpCode] = frozenset(
    {
        OpCode.STOP,
        OpCode.JUMP,
        OpCode.JUMPI,
        OpCode.RETURN,
        OpCode.REVERT,
        OpCode.INVALID,
        OpCode.SELFDESTRUCT,
    }
)

HALTING: frozenset[OpCode] = frozenset(
    {OpCode.STOP, OpCode.RETURN, OpCode.REVERT, OpCode.INVALID, OpCode.SELFDESTRUCT}
)

# Exits that end execution without rolling back state.
NORMAL_EXITS: frozenset[OpCode] = frozenset({OpCode.STOP, OpCode.RETURN, OpCode.SELFDESTRUCT})

FAILING_EXITS: frozenset[OpCode] = frozenset({OpCode.REVERT, OpCode.INVALID})

EXTERNAL_CALLS: frozenset[OpCode] = frozenset(
    {OpCode.CALL, OpCode.CALLCODE, OpCode.DELEGATECALL, OpCode.STATICCALL}
)


def is_push(opcode: int) -> bool:
    return OpCode.PUSH0 <= opcode <= OpCode.PUSH32


def is_dup(opcode: int) -> bool:
    return OpCode.DUP1 <= opcode <= OpCode.DUP16


def is_swap(opcode: int) -> bool:
    return OpCode.SWAP1 <= opcode <= OpCode.SWAP16


def lookup(raw: int) -> OpInfo | None:
    """Return metadata for a raw opcode byte, or *None* if the byte is undefined."""
    return OPCODE_TABLE.get(raw)
