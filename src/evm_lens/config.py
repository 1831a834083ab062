"""Analysis ceilings.

Every search the engine performs is bounded by one of these values; when a
ceiling is hit the affected fact degrades to ``Unresolved`` or ``Unknown``.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any

__all__ = ["AnalysisConfig", "DEFAULT_CONFIG"]


@dataclass(slots=True, frozen=True)
class AnalysisConfig:
    jump_window: int = 32
    max_stack_depth: int = 1024
    max_block_steps: int = 4096
    max_context_blocks: int = 4
    max_guard_paths: int = 64
    max_path_steps: int = 100_000
    max_exit_search_blocks: int = 256
    max_peel_depth: int = 4
    solver_timeout_ms: int = 2000

    def __post_init__(self) -> None:
        for item in dataclasses.fields(self):
            value = getattr(self, item.name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{item.name} must be an integer")
            minimum = 0 if item.name == "max_context_blocks" else 1
            if value < minimum:
                raise ValueError(f"{item.name} must be >= {minimum}, got {value}")

    def replace(self, **overrides: Any) -> AnalysisConfig:
        """Return a copy with *overrides* applied; ``None`` values are ignored."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)


DEFAULT_CONFIG = AnalysisConfig()
