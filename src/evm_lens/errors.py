"""Request-level errors raised before or outside the analysis pipeline."""
from __future__ import annotations

__all__ = ["FatalInputError", "LayoutError", "SnapshotError"]


class FatalInputError(ValueError):
    """The bytecode is empty, malformed hex, or could not be fetched."""


class LayoutError(ValueError):
    """A storage layout manifest could not be parsed."""


class SnapshotError(ValueError):
    """An observed-storage snapshot could not be parsed."""
