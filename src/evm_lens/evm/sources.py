"""Read interfaces for bytecode and layout collaborators.

Fetching happens before an analysis starts; the pipeline itself never
touches the network or the disk.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..errors import FatalInputError, LayoutError
from .decoder import parse_hex
from .layout import StorageLayout, parse_layout

__all__ = ["BytecodeSource", "DirectorySource"]

logger = logging.getLogger(__name__)


@runtime_checkable
class BytecodeSource(Protocol):
    def fetch(self, address: str) -> bytes: ...

    def fetch_layout(self, address: str) -> StorageLayout | None: ...


class DirectorySource:
    """Serve ``<address>.hex`` and optional ``<address>.layout.json`` files from a directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def addresses(self) -> list[str]:
        return sorted(path.stem for path in self.root.glob("*.hex"))

    def fetch(self, address: str) -> bytes:
        path = self.root / f"{address}.hex"
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise FatalInputError(f"Cannot read bytecode for {address}: {exc}") from exc
        return parse_hex(text)

    def fetch_layout(self, address: str) -> StorageLayout | None:
        path = self.root / f"{address}.layout.json"
        if not path.exists():
            return None
        try:
            return parse_layout(path.read_text(encoding="utf-8"))
        except (OSError, LayoutError) as exc:
            # A broken manifest degrades to the heuristic path instead of failing the request.
            logger.warning("Ignoring layout for %s: %s", address, exc)
            return None
