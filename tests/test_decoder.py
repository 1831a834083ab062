"""Tests for the EVM decoder."""
from __future__ import annotations

import pytest

from evm_lens.errors import FatalInputError
from evm_lens.evm.decoder import WarningKind, decode, decode_hex, decode_warnings, encode, parse_hex
from evm_lens.evm.opcodes import OPCODE_TABLE, OpCode, lookup


def test_decode_push_immediates_and_offsets():
    code = bytes([OpCode.PUSH1, 0x02, OpCode.PUSH2, 0x01, 0x00, OpCode.ADD, OpCode.STOP])
    instructions = decode(code)

    assert [i.offset for i in instructions] == [0, 2, 5, 6]
    assert [i.opcode for i in instructions] == [OpCode.PUSH1, OpCode.PUSH2, OpCode.ADD, OpCode.STOP]
    assert instructions[0].value == 2
    assert instructions[1].value == 0x100
    assert instructions[1].size == 3
    assert instructions[2].immediate is None


def test_push0_has_value_zero_without_immediate():
    (instr,) = decode(bytes([OpCode.PUSH0]))

    assert instr.immediate is None
    assert instr.value == 0
    assert instr.size == 1


def test_truncated_push_is_zero_padded_and_flagged():
    instructions = decode(bytes([OpCode.CALLER, OpCode.PUSH4, 0xAA, 0xBB]))

    push = instructions[-1]
    assert push.truncated
    assert push.immediate == b"\xaa\xbb\x00\x00"
    assert push.value == 0xAABB0000
    warnings = decode_warnings(instructions)
    assert [w.kind for w in warnings] == [WarningKind.TRUNCATED_PUSH]
    assert warnings[0].offset == 1


def test_unknown_byte_becomes_synthetic_invalid_and_decoding_continues():
    instructions = decode(bytes([0x0C, OpCode.PUSH1, 0x01, 0xEF, OpCode.STOP]))

    assert [i.offset for i in instructions] == [0, 1, 3, 4]
    first = instructions[0]
    assert first.opcode == OpCode.INVALID
    assert first.is_unknown
    assert first.raw == 0x0C
    assert first.mnemonic == "UNKNOWN_0x0C"
    assert not instructions[3].is_unknown
    kinds = [w.kind for w in decode_warnings(instructions)]
    assert kinds == [WarningKind.UNKNOWN_OPCODE, WarningKind.UNKNOWN_OPCODE]


def test_designated_invalid_opcode_is_not_unknown():
    (instr,) = decode(bytes([OpCode.INVALID]))

    assert not instr.is_unknown
    assert decode_warnings([instr]) == []


def test_round_trip_reproduces_offsets_and_opcodes():
    code = bytes(
        [
            OpCode.PUSH1, 0x80, OpCode.PUSH1, 0x40, OpCode.MSTORE,
            OpCode.PUSH32, *range(32),
            OpCode.DUP1, OpCode.SWAP2, 0x21, OpCode.JUMPDEST, OpCode.LOG2, OpCode.STOP,
        ]
    )
    first = decode(code)
    second = decode(encode(first))

    assert encode(first) == code
    assert [(i.offset, i.opcode, i.raw) for i in second] == [(i.offset, i.opcode, i.raw) for i in first]


@pytest.mark.parametrize("text", ["0x60025f03", "0X60025F03", "  60025f03\n", "0x6002 5f03"])
def test_parse_hex_accepts_prefix_case_and_whitespace(text):
    assert parse_hex(text) == bytes([0x60, 0x02, 0x5F, 0x03])


@pytest.mark.parametrize("text", ["", "0x", "   ", "0x123", "0xzz"])
def test_parse_hex_rejects_bad_input(text):
    with pytest.raises(FatalInputError):
        parse_hex(text)


def test_decode_rejects_empty_bytes():
    with pytest.raises(FatalInputError):
        decode(b"")


def test_decode_hex_matches_decode():
    assert [str(i) for i in decode_hex("0x60025f03f3")] == [
        "0x0000 PUSH1 0x02",
        "0x0002 PUSH0",
        "0x0003 SUB",
        "0x0004 RETURN",
    ]


def test_opcode_table_stack_effects():
    assert OPCODE_TABLE[OpCode.PUSH32].immediate_size == 32
    assert (OPCODE_TABLE[OpCode.DUP3].pops, OPCODE_TABLE[OpCode.DUP3].pushes) == (3, 4)
    assert (OPCODE_TABLE[OpCode.SWAP1].pops, OPCODE_TABLE[OpCode.SWAP1].pushes) == (2, 2)
    assert (OPCODE_TABLE[OpCode.LOG4].pops, OPCODE_TABLE[OpCode.LOG4].pushes) == (6, 0)
    assert (OPCODE_TABLE[OpCode.DELEGATECALL].pops, OPCODE_TABLE[OpCode.DELEGATECALL].pushes) == (6, 1)
    assert lookup(0x0C) is None
    assert lookup(OpCode.TSTORE).name == "TSTORE"
