"""Control-flow graph package."""

from __future__ import annotations

from .builder import build_cfg, check_jump_validity, resolve_jump_target
from .graph import (
    BasicBlock,
    BlockEdge,
    Confidence,
    ControlFlowGraph,
    EdgeKind,
    ExitSummary,
    JumpViolation,
    SinkKind,
)

__all__ = [
    "BasicBlock",
    "BlockEdge",
    "Confidence",
    "ControlFlowGraph",
    "EdgeKind",
    "ExitSummary",
    "JumpViolation",
    "SinkKind",
    "build_cfg",
    "check_jump_validity",
    "resolve_jump_target",
]
