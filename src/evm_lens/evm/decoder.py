"""EVM bytecode decoder."""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from ..errors import FatalInputError
from .opcodes import OpCode, lookup

__all__ = [
    "DecodeWarning",
    "Instruction",
    "WarningKind",
    "decode",
    "decode_hex",
    "decode_warnings",
    "encode",
    "parse_hex",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Instruction:
    offset: int
    opcode: OpCode
    immediate: bytes | None = None
    size: int = 1
    raw: int = -1
    truncated: bool = False

    def __post_init__(self) -> None:
        if self.raw < 0:
            object.__setattr__(self, "raw", int(self.opcode))

    @property
    def is_unknown(self) -> bool:
        """True for bytes outside the opcode table, decoded as synthetic INVALID."""
        return self.raw != int(self.opcode)

    @property
    def mnemonic(self) -> str:
        if self.is_unknown:
            return f"UNKNOWN_0x{self.raw:02X}"
        return self.opcode.name

    @property
    def value(self) -> int | None:
        """Integer value of a push immediate (PUSH0 pushes zero)."""
        if self.opcode == OpCode.PUSH0:
            return 0
        if self.immediate is None:
            return None
        return int.from_bytes(self.immediate, "big")

    @property
    def next_offset(self) -> int:
        return self.offset + self.size

    def __str__(self) -> str:
        if self.immediate:
            return f"0x{self.offset:04X} {self.mnemonic} 0x{self.immediate.hex()}"
        return f"0x{self.offset:04X} {self.mnemonic}"


class WarningKind(StrEnum):
    TRUNCATED_PUSH = "TruncatedPush"
    UNKNOWN_OPCODE = "UnknownOpcode"


@dataclass(frozen=True, slots=True)
class DecodeWarning:
    kind: WarningKind
    offset: int
    detail: str


def decode(data: bytes) -> list[Instruction]:
    """Decode raw bytecode into instructions.

    Never fails on content: undefined bytes become size-1 ``INVALID``
    instructions and a truncated trailing push is zero-padded on the right,
    which is what the EVM itself does when it reads past the end of code.
    """
    if not data:
        raise FatalInputError("Empty bytecode")

    instructions: list[Instruction] = []
    i = 0
    length = len(data)

    while i < length:
        raw = data[i]
        info = lookup(raw)
        if info is None:
            instructions.append(Instruction(offset=i, opcode=OpCode.INVALID, raw=raw))
            i += 1
            continue

        width = info.immediate_size
        if width == 0:
            instructions.append(Instruction(offset=i, opcode=info.opcode))
            i += 1
            continue

        immediate = data[i + 1 : i + 1 + width]
        truncated = len(immediate) < width
        if truncated:
            logger.debug("Truncated %s at offset %d: %d of %d bytes", info.name, i, len(immediate), width)
            immediate = immediate + b"\x00" * (width - len(immediate))
        instructions.append(
            Instruction(
                offset=i,
                opcode=info.opcode,
                immediate=bytes(immediate),
                size=1 + width,
                truncated=truncated,
            )
        )
        i += 1 + width

    return instructions


def parse_hex(text: str) -> bytes:
    """Turn a ``0x``-prefixed hex string into bytes."""
    cleaned = "".join(text.split())
    if cleaned.startswith(("0x", "0X")):
        cleaned = cleaned[2:]
    if not cleaned:
        raise FatalInputError("Empty bytecode")
    if len(cleaned) % 2:
        raise FatalInputError("Hex bytecode has an odd number of digits")
    try:
        return bytes.fromhex(cleaned)
    except ValueError as exc:
        raise FatalInputError(f"Malformed hex bytecode: {exc}") from exc


def decode_hex(text: str) -> list[Instruction]:
    return decode(parse_hex(text))


def encode(instructions: Iterable[Instruction]) -> bytes:
    """Re-assemble instructions into bytecode."""
    out = bytearray()
    for instr in instructions:
        out.append(instr.raw)
        if instr.immediate:
            out.extend(instr.immediate)
    return bytes(out)


def decode_warnings(instructions: Iterable[Instruction]) -> list[DecodeWarning]:
    warnings: list[DecodeWarning] = []
    for instr in instructions:
        if instr.truncated:
            warnings.append(
                DecodeWarning(
                    kind=WarningKind.TRUNCATED_PUSH,
                    offset=instr.offset,
                    detail=f"{instr.opcode.name} immediate runs past the end of code and is zero-padded",
                )
            )
        elif instr.is_unknown:
            warnings.append(
                DecodeWarning(
                    kind=WarningKind.UNKNOWN_OPCODE,
                    offset=instr.offset,
                    detail=f"Byte 0x{instr.raw:02X} is not a defined opcode",
                )
            )
    return warnings
