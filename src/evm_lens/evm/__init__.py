"""EVM bytecode decoding and input collaborators."""

from __future__ import annotations

from .decoder import (
    DecodeWarning,
    Instruction,
    WarningKind,
    decode,
    decode_hex,
    decode_warnings,
    encode,
    parse_hex,
)
from .layout import StorageLayout, StorageVariable, parse_layout, parse_snapshot
from .opcodes import OPCODE_TABLE, OpCode, OpInfo
from .sources import BytecodeSource, DirectorySource

__all__ = [
    "OPCODE_TABLE",
    "BytecodeSource",
    "DecodeWarning",
    "DirectorySource",
    "Instruction",
    "OpCode",
    "OpInfo",
    "StorageLayout",
    "StorageVariable",
    "WarningKind",
    "decode",
    "decode_hex",
    "decode_warnings",
    "encode",
    "parse_hex",
    "parse_layout",
    "parse_snapshot",
]
