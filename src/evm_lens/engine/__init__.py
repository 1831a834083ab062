"""Abstract interpretation package."""

from __future__ import annotations

from .state import BlockTrace, Effect, ShadowStack, SymbolicValue
from .symbolic import fold, interpret

__all__ = [
    "BlockTrace",
    "Effect",
    "ShadowStack",
    "SymbolicValue",
    "fold",
    "interpret",
]
